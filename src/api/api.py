import logging
from contextlib import asynccontextmanager
from time import perf_counter
from typing import Annotated, AsyncGenerator, Awaitable, Callable

from fastapi import Depends, FastAPI, HTTPException, Query, Request, Response
from pydantic import BaseModel
from sqlalchemy.orm import sessionmaker

from api.dependencies import get_audit_repository, get_known_address_repository, get_transaction_repository
from config import config
from db.db import create_db_engine
from db.repositories import AuditRepository, KnownAddressRepository, TransactionRepository
from domain.audit import AuditId, AuditRecord, AuditResult, AuditStatus
from domain.ledger import KnownAddress, Provenance, Transaction

logger = logging.getLogger(__name__)


class AuditStatusResponse(BaseModel):
    audit_id: AuditId
    status: AuditStatus
    progress: int
    error_message: str | None = None
    attestation_ref: str | None = None

    @classmethod
    def from_record(cls, record: AuditRecord) -> "AuditStatusResponse":
        return cls(
            audit_id=record.audit_id,
            status=record.status,
            progress=record.progress,
            error_message=record.error_message,
            attestation_ref=record.attestation_ref,
        )


@asynccontextmanager
async def lifespan(fastapi_app: FastAPI) -> AsyncGenerator[None, None]:
    engine = create_db_engine(db_file=config().db_file)
    fastapi_app.state.sessionmaker = sessionmaker(engine)
    yield
    engine.dispose()


app = FastAPI(lifespan=lifespan)


@app.middleware("http")
async def log_process_time(request: Request, call_next: Callable[[Request], Awaitable[Response]]) -> Response:
    start_time = perf_counter()
    response = await call_next(request)
    process_time = perf_counter() - start_time
    logger.info("Request time: %s %s: %.4fs", request.method, request.url, process_time)
    return response


@app.get("/audits")
def list_audits(ar: Annotated[AuditRepository, Depends(get_audit_repository)]) -> list[AuditStatusResponse]:
    return [AuditStatusResponse.from_record(record) for record in ar.list()]


@app.get("/audits/{audit_id}")
def get_audit(audit_id: str, ar: Annotated[AuditRepository, Depends(get_audit_repository)]) -> AuditStatusResponse:
    record = ar.get(AuditId(audit_id))
    if record is None:
        raise HTTPException(status_code=404, detail=f"Unknown audit {audit_id}")
    return AuditStatusResponse.from_record(record)


@app.get("/audits/{audit_id}/result")
def get_audit_result(audit_id: str, ar: Annotated[AuditRepository, Depends(get_audit_repository)]) -> AuditResult:
    result = ar.get_result(AuditId(audit_id))
    if result is None:
        raise HTTPException(status_code=404, detail=f"No result for audit {audit_id}")
    return result


@app.get("/transactions")
def get_transactions(
    tr: Annotated[TransactionRepository, Depends(get_transaction_repository)],
    provenance: Provenance | None = None,
    unlinked_only: bool = False,
    limit: Annotated[int | None, Query(ge=1, le=10_000)] = None,
) -> list[Transaction]:
    return tr.list(provenance=provenance, unlinked_only=unlinked_only, limit=limit)


@app.get("/known-addresses")
def get_known_addresses(
    kr: Annotated[KnownAddressRepository, Depends(get_known_address_repository)],
) -> list[KnownAddress]:
    return kr.list()

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import Sequence

from config import config
from db.db import create_session_factory
from db.repositories import AuditRepository, KnownAddressRepository, TransactionRepository
from domain.audit import AuditJob, AuditStatus
from domain.errors import AuditError
from domain.ledger import Transaction
from domain.lots import CostBasisMethod
from importers.record_loader import load_records
from services.attestation import LoggingAttestationPublisher
from services.audit_orchestrator import AuditOrchestrator
from services.audit_queue import AuditQueue
from services.linker import CrossSourceLinker, LinkTolerances
from utils.formatting import render_audit_status, render_audit_summary

logger = logging.getLogger(__name__)


def _parse_wallet_addresses(pairs: Sequence[str]) -> dict[str, str]:
    mapping: dict[str, str] = {}
    for pair in pairs:
        wallet_id, sep, address = pair.partition("=")
        if not sep or not wallet_id or not address:
            raise argparse.ArgumentTypeError(f"Expected WALLET=ADDRESS, got {pair!r}")
        mapping[wallet_id] = address
    return mapping


def _scope(transactions: Sequence[Transaction]) -> tuple[list[str], list[str]]:
    wallet_ids = sorted({tx.wallet_id for tx in transactions if tx.wallet_id})
    connection_ids = sorted({tx.exchange_connection_id for tx in transactions if tx.exchange_connection_id})
    return wallet_ids, connection_ids


def run(
    record_files: Sequence[Path],
    *,
    audit_id: str,
    jurisdiction: str,
    tax_year: int,
    method: CostBasisMethod,
    currency: str,
    wallet_ids: Sequence[str],
    connection_ids: Sequence[str],
    wallet_addresses: dict[str, str],
    db_file: Path,
    reset: bool,
) -> bool:
    settings = config()
    session_factory = create_session_factory(db_file=db_file, reset=reset)

    transactions: list[Transaction] = []
    for path in record_files:
        transactions.extend(load_records(path))

    with session_factory() as session:
        transaction_repository = TransactionRepository(session)
        inserted = transaction_repository.create_many(transactions)
        print(f"Imported {len(inserted)} new transactions from {len(record_files)} file(s)")

        linker = CrossSourceLinker(
            transaction_repository,
            KnownAddressRepository(session),
            tolerances=LinkTolerances.from_settings(settings),
            wallet_addresses=wallet_addresses,
        )
        summary = linker.run(wallet_ids=wallet_ids or None)
        print(f"Linked {len(summary.linked)} transfer pairs, {len(summary.offramp_candidates)} off-ramp candidates")

    if not wallet_ids and not connection_ids:
        wallet_ids, connection_ids = _scope(transactions)

    job = AuditJob.parse(
        {
            "audit_id": audit_id,
            "wallet_ids": list(wallet_ids),
            "exchange_connection_ids": list(connection_ids),
            "jurisdiction": jurisdiction,
            "tax_year": tax_year,
            "options": {"cost_basis_method": method, "currency": currency},
        }
    )
    orchestrator = AuditOrchestrator(session_factory, settings=settings, publisher=LoggingAttestationPublisher())
    queue = AuditQueue(
        orchestrator,
        session_factory,
        max_attempts=settings.queue_max_attempts,
        backoff_base=settings.queue_backoff_seconds,
    )
    queue.submit(job)
    record = queue.process_next()
    if record is None:
        return False

    render_audit_status(record)
    if record.status != AuditStatus.COMPLETED:
        return False
    with session_factory() as session:
        result = AuditRepository(session).get_result(record.audit_id)
    if result is not None:
        render_audit_summary(result)
    return True


def main(argv: Sequence[str] | None = None) -> None:
    settings = config()
    logging.basicConfig(level=settings.log_level, format="%(asctime)s %(levelname)s %(name)s %(message)s")
    parser = argparse.ArgumentParser(description="Import JSONL records, link sources and run a tax audit.")
    parser.add_argument("records", type=Path, nargs="+", help="JSONL files of on-chain and exchange records")
    parser.add_argument("--audit-id", required=True)
    parser.add_argument("--jurisdiction", default="US")
    parser.add_argument("--tax-year", type=int, required=True)
    parser.add_argument("--method", type=CostBasisMethod, choices=list(CostBasisMethod), default=CostBasisMethod.FIFO)
    parser.add_argument("--currency", default=settings.default_currency)
    parser.add_argument("--wallet", dest="wallet_ids", action="append", default=[])
    parser.add_argument("--exchange-connection", dest="connection_ids", action="append", default=[])
    parser.add_argument(
        "--wallet-address", dest="wallet_addresses", action="append", default=[], metavar="WALLET=ADDRESS"
    )
    parser.add_argument("--db-file", type=Path, default=settings.db_file)
    parser.add_argument("--reset", action="store_true", help="Delete the database before importing")
    args = parser.parse_args(argv)

    try:
        ok = run(
            args.records,
            audit_id=args.audit_id,
            jurisdiction=args.jurisdiction,
            tax_year=args.tax_year,
            method=args.method,
            currency=args.currency,
            wallet_ids=args.wallet_ids,
            connection_ids=args.connection_ids,
            wallet_addresses=_parse_wallet_addresses(args.wallet_addresses),
            db_file=args.db_file,
            reset=args.reset,
        )
    except (AuditError, argparse.ArgumentTypeError) as e:
        logger.error("%s", e)
        sys.exit(1)
    if not ok:
        sys.exit(1)


if __name__ == "__main__":
    main()

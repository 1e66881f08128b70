from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterable

from pydantic import TypeAdapter, ValidationError

from domain.errors import NormalizationError
from domain.ledger import Transaction

from .exchange_importer import ExchangeImporter
from .onchain_importer import OnChainImporter
from .records import ExchangeRecord, OnChainRecord, RawRecord

logger = logging.getLogger(__name__)

_RECORD_ADAPTER: TypeAdapter[OnChainRecord | ExchangeRecord] = TypeAdapter(RawRecord)


def parse_records(lines: Iterable[str], *, origin: str = "<records>") -> list[OnChainRecord | ExchangeRecord]:
    records: list[OnChainRecord | ExchangeRecord] = []
    for line_no, line in enumerate(lines, start=1):
        if not line.strip():
            continue
        try:
            records.append(_RECORD_ADAPTER.validate_json(line))
        except ValidationError as e:
            raise NormalizationError(f"{origin}:{line_no}", e) from e
    return records


def normalize_records(records: Iterable[OnChainRecord | ExchangeRecord]) -> list[Transaction]:
    onchain = OnChainImporter()
    exchange = ExchangeImporter()
    transactions: list[Transaction] = []
    for record in records:
        if isinstance(record, OnChainRecord):
            transactions.append(onchain.normalize(record))
        else:
            transactions.append(exchange.normalize(record))
    transactions.sort(key=lambda tx: tx.timestamp)
    return transactions


def load_records(path: Path) -> list[Transaction]:
    """Read a JSONL file of raw on-chain and exchange records and normalize it."""
    with path.open(encoding="utf-8") as handle:
        records = parse_records(handle, origin=str(path))
    transactions = normalize_records(records)
    logger.info("Loaded %d transactions from %s", len(transactions), path)
    return transactions

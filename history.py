"""
History aggregation - outgoing and incoming transfers for one address, fetched
concurrently from the ledger index and merged newest-block first.
"""

import asyncio
import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Tuple

from blockchain_api import HISTORY_CATEGORIES, normalize_address, run_io
from wallet_errors import HistoryUnavailableError, NetworkError, ValidationError

logger = logging.getLogger(__name__)

SENT, RECEIVED = "sent", "received"


@dataclass(frozen=True)
class TransactionRecord:
    direction: str
    amount: str
    counterparty: str
    hash: str
    block_number: int
    asset: str


@dataclass(frozen=True)
class HistoryResult:
    address: str
    records: Tuple[TransactionRecord, ...] = ()
    # directions whose query failed; non-empty means a partial result
    failed: Tuple[str, ...] = ()

    @property
    def degraded(self):
        return bool(self.failed)

    def __iter__(self):
        return iter(self.records)

    def __len__(self):
        return len(self.records)


def _amount(value):
    if value is None: return "0"
    try:
        return format(Decimal(str(value)), "f")
    except InvalidOperation:
        return "0"


def _block(num):
    if isinstance(num, int): return num
    s = str(num)
    return int(s, 16) if s.lower().startswith("0x") else int(s)


def to_record(raw, direction):
    return TransactionRecord(
        direction=direction,
        amount=_amount(raw.get("value")),
        counterparty=raw.get("to") if direction == SENT else raw.get("from"),
        hash=raw["hash"],
        block_number=_block(raw["blockNum"]),
        asset=raw.get("asset") or "ETH",
    )


def merge_transfers(sent, received, dedupe=True):
    """Map both sides, drop repeated (direction, transfer id) pairs, sort by block descending.

    The sort is stable, so records within one block keep query order (sent first).
    A self-transfer shows up once per direction.
    """
    records, seen = [], set()
    for direction, transfers in ((SENT, sent), (RECEIVED, received)):
        for raw in transfers:
            key = (direction, raw.get("uniqueId") or raw.get("hash"))
            if dedupe and key in seen: continue
            seen.add(key)
            try:
                records.append(to_record(raw, direction))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning("skipping malformed %s transfer %s: %r", direction, raw.get("hash"), e)
    return sorted(records, key=lambda r: r.block_number, reverse=True)


class HistoryAggregator:
    def __init__(self, api, categories=HISTORY_CATEGORIES, timeout=None, dedupe=True):
        self.api = api
        self.categories = tuple(categories)
        self.timeout = timeout
        self.dedupe = dedupe

    @classmethod
    def from_config(cls, api, config):
        # two paginated full-range scans; give them a multiple of the per-request timeout
        t = config.get("request_timeout", 15)
        return cls(api, config.get("history_categories", HISTORY_CATEGORIES), timeout=t * 4 if t else None)

    async def fetch_history(self, address):
        addr = normalize_address(address)
        if not addr:
            raise ValidationError(f"invalid address: {address!r}", operation="fetch_history")
        q = self.api.get_asset_transfers
        sent, received = await asyncio.gather(
            run_io(q, from_address=addr, categories=self.categories, timeout=self.timeout),
            run_io(q, to_address=addr, categories=self.categories, timeout=self.timeout),
            return_exceptions=True)

        failed = []
        for direction, res in ((SENT, sent), (RECEIVED, received)):
            if isinstance(res, NetworkError):
                failed.append(direction)
                logger.warning("%s history for %s unavailable: %s", direction, addr, res)
            elif isinstance(res, BaseException):
                raise res
        if len(failed) == 2:
            raise HistoryUnavailableError("transfer history unavailable", operation="fetch_history",
                                          address=addr) from sent
        records = merge_transfers([] if SENT in failed else sent,
                                  [] if RECEIVED in failed else received, self.dedupe)
        return HistoryResult(addr, tuple(records), tuple(failed))

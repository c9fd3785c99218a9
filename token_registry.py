"""
Token registry - per-account ERC-20 watch list with cached balances.
Metadata and balance reads are best-effort per call: one broken contract never
blanks out the rest of the list.
"""

import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional

from blockchain_api import format_units, normalize_address, run_io
from wallet_errors import DuplicateTokenError, InvalidTokenAddressError, NetworkError, ValidationError

logger = logging.getLogger(__name__)

PLACEHOLDER = {"name": "Unknown Token", "symbol": "UNK", "decimals": 18}


def _now():
    return datetime.now(timezone.utc).isoformat()


@dataclass
class Token:
    address: str
    name: str = PLACEHOLDER["name"]
    symbol: str = PLACEHOLDER["symbol"]
    decimals: int = PLACEHOLDER["decimals"]
    added_at: str = field(default_factory=_now)

    def to_record(self):
        return {"address": self.address, "name": self.name, "symbol": self.symbol,
                "decimals": self.decimals, "addedAt": self.added_at}

    @classmethod
    def from_record(cls, rec):
        return cls(address=rec["address"], name=rec.get("name", PLACEHOLDER["name"]),
                   symbol=rec.get("symbol", PLACEHOLDER["symbol"]),
                   decimals=int(rec.get("decimals", PLACEHOLDER["decimals"])),
                   added_at=rec.get("addedAt") or _now())


class TokenRegistry:
    def __init__(self, owner, api, storage=None, max_concurrency=4, timeout=15):
        self.owner = normalize_address(owner) or owner
        self.api = api
        self.storage = storage
        self.max_concurrency = max(1, int(max_concurrency))
        self.timeout = timeout
        self.tokens: List[Token] = []
        self.balances: Dict[str, str] = {}
        if storage is not None:
            self.tokens = [Token.from_record(r) for r in storage.load_tokens(self.owner)]

    @classmethod
    def from_config(cls, owner, api, storage, config):
        return cls(owner, api, storage, max_concurrency=config.get("max_concurrency", 4),
                   timeout=config.get("request_timeout", 15))

    def get(self, address) -> Optional[Token]:
        a = str(address).strip().lower()
        return next((t for t in self.tokens if t.address.lower() == a), None)

    def _save(self, tokens):
        if self.storage is not None:
            self.storage.save_tokens(self.owner, [t.to_record() for t in tokens])
        self.tokens = tokens

    async def _metadata(self, address):
        calls = (self.api.erc20_name, self.api.erc20_symbol, self.api.erc20_decimals)
        results = await asyncio.gather(*(run_io(fn, address, timeout=self.timeout) for fn in calls),
                                       return_exceptions=True)
        meta = {}
        for key, res in zip(("name", "symbol", "decimals"), results):
            if isinstance(res, NetworkError):
                logger.warning("token %s: %s() unavailable, using %r: %s", address, key, PLACEHOLDER[key], res)
                meta[key] = PLACEHOLDER[key]
            elif isinstance(res, BaseException):
                raise res
            else:
                meta[key] = res
        meta["decimals"] = int(meta["decimals"])
        return meta

    async def _balance(self, token, owner, executor=None):
        try:
            raw = await run_io(self.api.erc20_balance_of, token.address, owner, timeout=self.timeout,
                               executor=executor)
        except NetworkError as e:
            logger.warning("balance of %s (%s) failed: %s", token.symbol, token.address, e)
            return "0"
        return format_units(raw, token.decimals)

    async def add_token(self, address):
        addr = normalize_address(address)
        if not addr:
            raise InvalidTokenAddressError(f"invalid token address: {address!r}", operation="add_token")
        if self.get(addr):
            raise DuplicateTokenError("token already in list", operation="add_token", address=addr)
        meta = await self._metadata(addr)
        # another add may have landed while the metadata reads were in flight
        if self.get(addr):
            raise DuplicateTokenError("token already in list", operation="add_token", address=addr)
        token = Token(addr, **meta)
        self._save(self.tokens + [token])
        logger.info("added token %s (%s) for %s", token.symbol, addr, self.owner)
        self.balances[addr] = await self._balance(token, self.owner)
        return token

    def remove_token(self, address):
        tok = self.get(address)
        if tok is None: return None
        self._save([t for t in self.tokens if t is not tok])
        self.balances.pop(tok.address, None)
        logger.info("removed token %s for %s", tok.address, self.owner)
        return tok

    async def refresh_balances(self, account_address=None):
        """token address -> decimal string; a failed read gives "0" for that token only."""
        owner = normalize_address(account_address) if account_address else self.owner
        if not owner:
            raise ValidationError(f"invalid account address: {account_address!r}", operation="refresh_balances")
        sem = asyncio.Semaphore(self.max_concurrency)
        tokens = list(self.tokens)
        # timed-out reads keep their thread; the pool size caps requests in flight
        pool = ThreadPoolExecutor(max_workers=self.max_concurrency, thread_name_prefix="token-balance")

        async def one(tok):
            async with sem:
                return tok.address, await self._balance(tok, owner, pool)

        try:
            balances = dict(await asyncio.gather(*(one(t) for t in tokens)))
        finally:
            pool.shutdown(wait=False)
        if owner == self.owner: self.balances = balances
        return balances

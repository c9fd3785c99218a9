"""
Test-token faucet - reads the faucet contract and requests a drip for the
active account through the transaction engine.
"""

import asyncio
import logging
import math
import time
from dataclasses import dataclass
from typing import Optional

from blockchain_api import decode_address, decode_uint, encode_call, format_units, normalize_address, run_io
from token_registry import PLACEHOLDER
from wallet_errors import FaucetCooldownError, NetworkError, ValidationError

logger = logging.getLogger(__name__)


@dataclass
class FaucetInfo:
    faucet: str
    token: Optional[str]
    symbol: str
    decimals: int
    balance: Optional[str]
    withdrawal_amount: Optional[str]
    lock_time: Optional[int]


class FaucetClient:
    def __init__(self, api, engine, faucet_address, timeout=15, clock=time.time):
        self.address = normalize_address(faucet_address)
        if not self.address:
            raise ValidationError(f"invalid faucet address: {faucet_address!r}", operation="faucet")
        self.api = api
        self.engine = engine
        self.timeout = timeout
        self.clock = clock

    async def _read(self, signature, types=(), values=()):
        return await run_io(self.api.call, self.address, encode_call(signature, types, values),
                            timeout=self.timeout)

    async def _uint(self, signature, types=(), values=()):
        return decode_uint(await self._read(signature, types, values), signature)

    async def info(self):
        """Faucet state; fields that could not be read are None."""
        token = symbol = None; decimals = PLACEHOLDER["decimals"]
        try:
            token = decode_address(await self._read("token()"), "token()")
            symbol = await run_io(self.api.erc20_symbol, token, timeout=self.timeout)
            decimals = await run_io(self.api.erc20_decimals, token, timeout=self.timeout)
        except NetworkError as e:
            logger.warning("faucet token metadata unavailable: %s", e)
        bal, amt, lock = await asyncio.gather(self._uint("getBalance()"), self._uint("withdrawalAmount()"),
                                              self._uint("lockTime()"), return_exceptions=True)
        vals = []
        for name, v in (("getBalance", bal), ("withdrawalAmount", amt), ("lockTime", lock)):
            if isinstance(v, NetworkError):
                logger.warning("faucet %s() unavailable: %s", name, v); v = None
            elif isinstance(v, BaseException):
                raise v
            vals.append(v)
        bal, amt, lock = vals
        return FaucetInfo(self.address, token, symbol or PLACEHOLDER["symbol"], decimals,
                          None if bal is None else format_units(bal, decimals),
                          None if amt is None else format_units(amt, decimals), lock)

    async def next_access_time(self, address):
        """Unix time of the next allowed request; 0 when it cannot be read."""
        try:
            return await self._uint("nextAccessTime(address)", ["address"], [address])
        except NetworkError as e:
            logger.warning("faucet cooldown check failed for %s: %s", address, e)
            return 0

    async def request_tokens(self):
        address = self.engine.store.active_account.address
        left = await self.next_access_time(address) - self.clock()
        if left > 0:
            mins = math.ceil(left / 60)
            raise FaucetCooldownError(f"wait {mins} minute{'s' if mins != 1 else ''} before requesting again",
                                      operation="request_tokens", address=address, seconds_left=int(left))
        res = await self.engine.call_contract(self.address, encode_call("requestTokens()"))
        logger.info("faucet request %s submitted for %s", res.tx_hash, address)
        return res

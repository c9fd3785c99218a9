"""
Blockchain API - JSON-RPC client for an EVM chain plus the ledger-indexing
(asset transfer) endpoint, ERC-20 read calls and a price oracle.
All methods here are blocking; coroutines reach them through run_io().
"""

import asyncio
import functools
import itertools
import logging
import threading
import time
from decimal import Decimal, localcontext

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry
from eth_abi import decode as abi_decode, encode as abi_encode
from eth_abi.exceptions import DecodingError
from eth_utils import function_signature_to_4byte_selector, is_address, to_checksum_address

from wallet_errors import ProviderError

logger = logging.getLogger(__name__)

HISTORY_CATEGORIES = ("external", "internal", "erc20", "erc721", "erc1155")
_RETRY_STATUS = (429, 502, 503, 504)


class Cache:
    def __init__(self, ttl=90):
        self.ttl = ttl; self.data = {}; self.lock = threading.Lock()
    def get(self, k):
        with self.lock:
            if k in self.data:
                v, t = self.data[k]
                if time.time() - t < self.ttl: return v
                del self.data[k]
        return None
    def set(self, k, v):
        with self.lock: self.data[k] = (v, time.time())


# ── Helpers ───────────────────────────────────────────────────

def normalize_address(address):
    """Return the EIP-55 form of a 20-byte hex address, or None if malformed."""
    if not isinstance(address, str): return None
    a = address.strip()
    if not is_address(a): return None
    return to_checksum_address(a)


def format_units(value, decimals=18):
    """Integer base units -> plain decimal string ("1.5", "0.0")."""
    with localcontext() as ctx:
        ctx.prec = 100
        s = format(Decimal(int(value)).scaleb(-int(decimals)), "f")
    if "." not in s: return s + ".0"
    s = s.rstrip("0")
    return s + "0" if s.endswith(".") else s


def to_decimal(value, decimals=18):
    with localcontext() as ctx:
        ctx.prec = 100
        return Decimal(int(value)).scaleb(-int(decimals))


def encode_call(signature, types=(), values=()):
    data = function_signature_to_4byte_selector(signature)
    if types: data += abi_encode(list(types), list(values))
    return "0x" + data.hex()


def _return_bytes(raw, what):
    if not raw or raw == "0x":
        raise ProviderError(f"{what}: empty return data", operation="eth_call")
    return bytes.fromhex(raw[2:] if raw.startswith("0x") else raw)


def decode_string(raw, what="string"):
    b = _return_bytes(raw, what)
    try:
        return abi_decode(["string"], b)[0]
    except (DecodingError, UnicodeDecodeError, OverflowError):
        pass
    # Some older tokens return bytes32 instead of string
    if len(b) == 32:
        try: return b.rstrip(b"\x00").decode("utf-8")
        except UnicodeDecodeError: pass
    raise ProviderError(f"{what}: undecodable return data", operation="eth_call")


def decode_uint(raw, what="uint256"):
    b = _return_bytes(raw, what)
    try:
        return abi_decode(["uint256"], b[:32])[0]
    except DecodingError as e:
        raise ProviderError(f"{what}: undecodable return data", operation="eth_call") from e


def decode_address(raw, what="address"):
    b = _return_bytes(raw, what)
    try:
        return to_checksum_address(abi_decode(["address"], b[:32])[0])
    except DecodingError as e:
        raise ProviderError(f"{what}: undecodable return data", operation="eth_call") from e


async def run_io(fn, *args, timeout=None, executor=None, **kw):
    """Run a blocking provider call off the event loop, bounded by timeout.

    A timed-out call keeps its worker thread until the request returns; pass a
    bounded executor to cap how many such threads can pile up.
    """
    if executor is None:
        call = asyncio.to_thread(fn, *args, **kw)
    else:
        call = asyncio.get_running_loop().run_in_executor(executor, functools.partial(fn, *args, **kw))
    if timeout is None: return await call
    try:
        return await asyncio.wait_for(call, timeout)
    except asyncio.TimeoutError as e:
        name = getattr(fn, "__name__", "call")
        raise ProviderError(f"{name} timed out after {timeout}s", operation=name) from e


# ── JSON-RPC client ───────────────────────────────────────────

def _session(retry):
    s = requests.Session()
    adapter = HTTPAdapter(max_retries=retry)
    s.mount("http://", adapter)
    s.mount("https://", adapter)
    return s


class BlockchainAPI:
    """Reads go through a session whose adapter retries transport errors and
    429/5xx answers; broadcasts use a second session with retries disabled."""

    def __init__(self, rpc_url, timeout=10, read_retries=2, retry_backoff=0.5, session=None, broadcast_session=None):
        self.rpc_url = rpc_url
        self.timeout = timeout
        self.s = session or _session(Retry(total=read_retries, backoff_factor=retry_backoff,
                                           status_forcelist=_RETRY_STATUS, allowed_methods=None,
                                           raise_on_status=False))
        self.tx_s = broadcast_session or _session(0)
        for s in (self.s, self.tx_s):
            s.headers.update({"User-Agent": "NimbusWallet/1.0", "Accept": "application/json"})
        self.meta_cache = Cache(3600)
        self._ids = itertools.count(1)

    @classmethod
    def from_config(cls, config):
        return cls(config["rpc_url"], timeout=config.get("request_timeout", 10),
                   read_retries=config.get("read_retries", 2))

    def _post(self, payload, write=False):
        method = payload["method"]
        try:
            return (self.tx_s if write else self.s).post(self.rpc_url, json=payload, timeout=self.timeout)
        except (requests.exceptions.Timeout, requests.exceptions.ConnectionError) as e:
            raise ProviderError(f"{method}: provider unreachable ({e.__class__.__name__})", operation=method) from e
        except requests.exceptions.RequestException as e:
            raise ProviderError(f"{method}: {e}", operation=method) from e

    def _rpc(self, method, params, write=False):
        """JSON-RPC 2.0 call. Pass write=True for calls that must not be resent."""
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        logger.debug("rpc -> %s", method)
        r = self._post(payload, write)
        try:
            resp = r.json()
        except ValueError as e:
            raise ProviderError(f"{method}: HTTP {r.status_code}, non-JSON response", operation=method) from e
        if not isinstance(resp, dict):
            raise ProviderError(f"{method}: malformed response", operation=method)
        if "error" in resp:
            err = resp["error"]
            msg = err.get("message", str(err)) if isinstance(err, dict) else str(err)
            code = err.get("code") if isinstance(err, dict) else None
            raise ProviderError(f"{method}: {msg}", operation=method, code=code)
        if "result" not in resp:
            raise ProviderError(f"{method}: response has no result", operation=method)
        return resp["result"]

    # ── Chain state ───────────────────────────────────────────

    def get_balance(self, address):
        """Native balance in wei."""
        return int(self._rpc("eth_getBalance", [address, "latest"]), 16)

    def get_transaction_count(self, address, block="pending"):
        return int(self._rpc("eth_getTransactionCount", [address, block]), 16)

    def gas_price(self):
        return int(self._rpc("eth_gasPrice", []), 16)

    def max_priority_fee(self):
        return int(self._rpc("eth_maxPriorityFeePerGas", []), 16)

    def chain_id(self):
        return int(self._rpc("eth_chainId", []), 16)

    def get_block(self, block="latest"):
        return self._rpc("eth_getBlockByNumber", [block, False]) or {}

    def estimate_gas(self, tx):
        return int(self._rpc("eth_estimateGas", [tx]), 16)

    def send_raw_transaction(self, raw_hex):
        """Broadcast once. Never retried: a resend could double-submit."""
        return self._rpc("eth_sendRawTransaction", [raw_hex], write=True)

    # ── Contract reads ────────────────────────────────────────

    def call(self, to, data, block="latest"):
        return self._rpc("eth_call", [{"to": to, "data": data}, block])

    def _meta(self, token, sig, decode):
        """Token metadata never changes; successful reads are cached per token."""
        k = f"{token.lower()}_{sig}"
        v = self.meta_cache.get(k)
        if v is None:
            v = decode(self.call(token, encode_call(sig)), sig)
            self.meta_cache.set(k, v)
        return v

    def erc20_name(self, token):
        return self._meta(token, "name()", decode_string)

    def erc20_symbol(self, token):
        return self._meta(token, "symbol()", decode_string)

    def erc20_decimals(self, token):
        d = self._meta(token, "decimals()", decode_uint)
        if d > 255:
            raise ProviderError(f"decimals() out of uint8 range: {d}", operation="eth_call", address=token)
        return d

    def erc20_balance_of(self, token, owner):
        data = encode_call("balanceOf(address)", ["address"], [owner])
        return decode_uint(self.call(token, data), "balanceOf(address)")

    # ── Ledger index ──────────────────────────────────────────

    def get_asset_transfers(self, from_address=None, to_address=None, categories=HISTORY_CATEGORIES,
                            from_block="0x0", to_block="latest", max_pages=20):
        """Transfers touching an address, following pageKey until exhausted."""
        params = {"fromBlock": from_block, "toBlock": to_block, "category": list(categories)}
        if from_address: params["fromAddress"] = from_address
        if to_address: params["toAddress"] = to_address
        transfers = []
        for _ in range(max_pages):
            res = self._rpc("alchemy_getAssetTransfers", [params]) or {}
            transfers.extend(res.get("transfers") or [])
            page_key = res.get("pageKey")
            if not page_key: break
            params = dict(params, pageKey=page_key)
        else:
            logger.warning("asset transfers truncated after %d pages", max_pages)
        return transfers


# ── Prices ────────────────────────────────────────────────────

CG_IDS = {"ETH": "ethereum"}


class PriceOracle:
    """Fiat price lookup. price() returns None when no quote is available."""

    def __init__(self, currency="usd", session=None, timeout=10):
        self.currency = currency.lower()
        self.timeout = timeout
        self.pcache = Cache(120)
        self.s = session or requests.Session()
        self.s.headers.update({"User-Agent": "NimbusWallet/1.0", "Accept": "application/json"})

    def price(self, sym="ETH"):
        c = self.pcache.get(f"p_{sym}")
        if c is not None: return c
        cid = CG_IDS.get(sym.upper())
        if not cid: return None
        try:
            r = self.s.get("https://api.coingecko.com/api/v3/simple/price",
                           params={"ids": cid, "vs_currencies": self.currency}, timeout=self.timeout)
            if r.status_code != 200: return None
            p = r.json().get(cid, {}).get(self.currency)
        except (requests.exceptions.RequestException, ValueError) as e:
            logger.debug("price lookup for %s failed: %s", sym, e)
            return None
        if not p: return None
        p = Decimal(str(p)); self.pcache.set(f"p_{sym}", p)
        return p

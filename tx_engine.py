"""
Transaction Engine - validates, signs and broadcasts value transfers for the
active account. Returns once the provider accepts the transaction into its
pending pool; confirmation tracking is not done here. Nothing on this path is retried.
"""

import logging
from decimal import Decimal, InvalidOperation, localcontext

from eth_utils import to_hex

from blockchain_api import format_units, normalize_address, run_io, to_decimal
from wallet_errors import (
    BroadcastError, InsufficientBalanceError, InvalidAmountError, InvalidRecipientError,
    NetworkError, ProviderError, SigningFailureError, StateError,
)

logger = logging.getLogger(__name__)

GAS_TRANSFER = 21000
GAS_CONTRACT_DEFAULT = 100000
DEFAULT_PRIORITY_FEE = 1_500_000_000
FEE_MULT = {"low": 0.8, "medium": 1.0, "high": 1.5}


class TxResult:
    __slots__ = ("tx_hash", "fee", "explorer_url", "nonce")
    def __init__(self, tx_hash, fee=Decimal(0), explorer_url="", nonce=None):
        self.tx_hash = tx_hash
        self.fee = fee
        self.explorer_url = explorer_url
        self.nonce = nonce

    def __repr__(self):
        return f"TxResult(tx_hash={self.tx_hash!r}, fee={self.fee}, nonce={self.nonce})"


def parse_amount(amount):
    """Positive ETH amount -> wei. Raises InvalidAmountError."""
    try:
        value = Decimal(str(amount).strip())
    except (InvalidOperation, ValueError) as e:
        raise InvalidAmountError(f"amount {amount!r} is not a number", operation="send") from e
    if not value.is_finite() or value <= 0:
        raise InvalidAmountError("amount must be greater than zero", operation="send")
    if value.as_tuple().exponent < -18:
        raise InvalidAmountError("amount has more than 18 decimal places", operation="send")
    with localcontext() as ctx:
        ctx.prec = 100
        return int(value.scaleb(18))


class TransactionEngine:
    def __init__(self, store, api, balance_source=None, config=None):
        self.store = store
        self.api = api
        # last known native balance in wei (None = never fetched); not re-read before send
        self.balance_source = balance_source or (lambda: None)
        self.config = config or {}
        self.timeout = self.config.get("request_timeout", 15)

    def _explorer_url(self, tx_hash):
        tpl = self.config.get("explorer", "")
        return tpl.replace("{}", tx_hash) if tpl else ""

    def _fallback_fee(self):
        return Decimal(str(self.config.get("fee_fallback", "0.001")))

    # ── FEE ESTIMATION ────────────────────────────────────────
    async def estimate_fee(self, gas_limit=GAS_TRANSFER, fee_level="medium"):
        """Returns (fee in ETH, display). Static fallback when the network does not answer in time."""
        try:
            gp = await run_io(self.api.gas_price, timeout=self.timeout)
        except NetworkError as e:
            fb = self._fallback_fee()
            logger.warning("fee estimate unavailable, using fallback %s ETH: %s", fb, e)
            return fb, f"~{fb} ETH (estimate)"
        gp = int(gp * FEE_MULT.get(fee_level, 1.0))
        fee = to_decimal(gp * gas_limit)
        return fee, f"{format_units(gp * gas_limit)} ETH ({gp / 1e9:.2f} Gwei)"

    # ── VALIDATION ────────────────────────────────────────────
    def validate(self, recipient, amount):
        """Returns (checksummed recipient, wei). No network access.

        An empty store fails with SigningFailureError before the balance check.
        """
        to = normalize_address(recipient)
        if not to:
            raise InvalidRecipientError(f"invalid recipient address: {recipient!r}", operation="send")
        value = parse_amount(amount)
        if not self.store.initialized:
            raise SigningFailureError("no active account to sign with", operation="send")
        balance = self.balance_source()
        if balance is None or value > balance:
            have = "unknown" if balance is None else f"{format_units(balance)} ETH"
            raise InsufficientBalanceError(f"amount {format_units(value)} ETH exceeds balance ({have})",
                                           operation="send", address=self._sender())
        return to, value

    def _sender(self):
        return self.store.active_account.address if self.store.initialized else None

    def _signer(self, op):
        try:
            return self.store.current_signer()
        except StateError as e:
            raise SigningFailureError("no active account to sign with", operation=op) from e

    # ── MAIN SEND ─────────────────────────────────────────────
    async def send(self, recipient, amount, fee_level="medium"):
        to, value = self.validate(recipient, amount)
        signer = self._signer("send")
        tx = await self._build(signer.address, to, value, GAS_TRANSFER, fee_level)
        return await self._sign_and_broadcast(signer, tx, "send")

    async def call_contract(self, contract, data, value=0, fee_level="medium"):
        """State-changing contract call from the active account (no balance pre-check)."""
        to = normalize_address(contract)
        if not to:
            raise InvalidRecipientError(f"invalid contract address: {contract!r}", operation="call_contract")
        signer = self._signer("call_contract")
        try:
            est = await run_io(self.api.estimate_gas, {"from": signer.address, "to": to, "data": data},
                               timeout=self.timeout)
            gas = max(int(est * 1.3), 60000)
        except ProviderError as e:
            if "revert" in str(e.message).lower():
                raise BroadcastError(f"transaction would revert: {e.message}", operation="call_contract",
                                     address=signer.address) from e
            gas = GAS_CONTRACT_DEFAULT
        tx = await self._build(signer.address, to, value, gas, fee_level, data=data)
        return await self._sign_and_broadcast(signer, tx, "call_contract")

    async def _build(self, sender, to, value, gas, fee_level, data=None):
        mult = FEE_MULT.get(fee_level, 1.0)
        t = self.timeout
        try:
            nonce = await run_io(self.api.get_transaction_count, sender, "pending", timeout=t)
            chain_id = self.config.get("chain_id") or await run_io(self.api.chain_id, timeout=t)
            blk = await run_io(self.api.get_block, "latest", timeout=t)
            bf = int(blk.get("baseFeePerGas", "0x0"), 16) if blk else 0
            if bf > 0:
                try:
                    prio = await run_io(self.api.max_priority_fee, timeout=t)
                except ProviderError:
                    prio = DEFAULT_PRIORITY_FEE
                prio = int(prio * mult)
                tx = {"type": 2, "chainId": chain_id, "nonce": nonce, "to": to, "value": value,
                      "gas": gas, "maxFeePerGas": bf * 2 + prio, "maxPriorityFeePerGas": prio}
            else:
                gp = int(await run_io(self.api.gas_price, timeout=t) * mult)
                tx = {"chainId": chain_id, "nonce": nonce, "to": to, "value": value, "gas": gas, "gasPrice": gp}
        except NetworkError as e:
            raise BroadcastError(f"could not prepare transaction: {e.message}", operation="send",
                                 address=sender) from e
        if data: tx["data"] = data
        return tx

    async def _sign_and_broadcast(self, signer, tx, op):
        try:
            signed = signer.sign_transaction(tx)
        except Exception as e:
            # only the exception type: the message may echo signer internals
            raise SigningFailureError(f"signing failed ({e.__class__.__name__})", operation=op,
                                      address=signer.address) from e
        try:
            txh = await run_io(self.api.send_raw_transaction, to_hex(signed.raw_transaction), timeout=self.timeout)
        except NetworkError as e:
            raise BroadcastError(f"broadcast failed, check pending transactions before resending: {e.message}",
                                 operation=op, address=signer.address) from e
        if not txh:
            raise BroadcastError("provider returned an empty transaction hash", operation=op, address=signer.address)
        fee = to_decimal(tx["gas"] * tx.get("maxFeePerGas", tx.get("gasPrice", 0)))
        logger.info("broadcast %s from %s (nonce %d)", txh, signer.address, tx["nonce"])
        return TxResult(txh, fee=fee, explorer_url=self._explorer_url(txh), nonce=tx["nonce"])

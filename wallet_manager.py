"""
Wallet manager - the single command path over the account store, plus the
views (balance, tokens, history) of the active account. Every read captures the
store epoch first and is dropped if the active account changed before it returned.
"""

import logging
from decimal import Decimal

from blockchain_api import BlockchainAPI, format_units, run_io
from faucet import FaucetClient
from history import HistoryAggregator
from token_registry import TokenRegistry
from tx_engine import TransactionEngine
from wallet_core import AccountStore, JsonFileStore, WalletStorage
from wallet_errors import NetworkError, WalletError

logger = logging.getLogger(__name__)


class WalletManager:
    def __init__(self, base_dir=None, passphrase=None, kv=None, api=None, price_oracle=None, config=None):
        self.storage = WalletStorage(kv if kv is not None else JsonFileStore(base_dir), passphrase)
        self.config = config or self.storage.load_config()
        self.storage.iterations = self.config.get("kdf_iterations") or self.storage.iterations
        self.api = api or BlockchainAPI.from_config(self.config)
        self.prices = price_oracle
        self.timeout = self.config.get("request_timeout", 15)
        self.store = AccountStore(self.storage)
        self.engine = TransactionEngine(self.store, self.api, balance_source=lambda: self.balance, config=self.config)
        self.history = HistoryAggregator.from_config(self.api, self.config)
        self.balance = None        # wei, active account
        self.transactions = None   # HistoryResult, active account
        self._registry = None
        self._view_epoch = self.store.epoch

    def open(self):
        self.store.load()
        self._sync_views()
        return self

    # ── Views ─────────────────────────────────────────────────

    def _sync_views(self):
        if self.store.epoch != self._view_epoch:
            self.balance = None; self.transactions = None; self._registry = None
            self._view_epoch = self.store.epoch

    def _is_current(self, epoch):
        return epoch == self.store.epoch

    def _stale(self, epoch, what, owner, error=None):
        if self._is_current(epoch): return False
        logger.info("discarding stale %s for %s%s", what, owner, f" ({error.__class__.__name__})" if error else "")
        return True

    @property
    def accounts(self):
        return self.store.accounts

    @property
    def active_account(self):
        return self.store.active_account

    @property
    def tokens(self) -> TokenRegistry:
        self._sync_views()
        if self._registry is None:
            self._registry = TokenRegistry.from_config(self.active_account.address, self.api,
                                                       self.storage, self.config)
        return self._registry

    @property
    def balance_eth(self):
        return None if self.balance is None else format_units(self.balance)

    # ── Commands ──────────────────────────────────────────────

    def create_account(self, name=None):
        acct = self.store.create_account(name)
        self._sync_views()
        return acct

    def import_account(self, name, source, method=None):
        acct = self.store.import_account(name, source, method)
        self._sync_views()
        return acct

    def switch_account(self, index):
        self.store.switch_active(index)
        self._sync_views()
        return self.active_account

    def delete_account(self, index):
        removed = self.store.delete_account(index)
        self._sync_views()
        return removed

    # ── Reads (epoch guarded) ─────────────────────────────────

    async def refresh_balance(self):
        epoch, addr = self.store.epoch, self.active_account.address
        try:
            wei = await run_io(self.api.get_balance, addr, timeout=self.timeout)
        except NetworkError as e:
            logger.warning("balance of %s unavailable: %s", addr, e)
            return None
        if self._stale(epoch, "balance", addr): return None
        self.balance = wei
        return wei

    async def refresh_history(self):
        epoch, addr = self.store.epoch, self.active_account.address
        try:
            result = await self.history.fetch_history(addr)
        except WalletError as e:
            if self._stale(epoch, "history", addr, e): return None
            raise
        if self._stale(epoch, "history", addr): return None
        self.transactions = result
        return result

    async def refresh_tokens(self):
        registry, epoch = self.tokens, self.store.epoch
        try:
            balances = await registry.refresh_balances()
        except WalletError as e:
            if self._stale(epoch, "token balances", registry.owner, e): return None
            raise
        if self._stale(epoch, "token balances", registry.owner): return None
        return balances

    async def add_token(self, address):
        return await self.tokens.add_token(address)

    def remove_token(self, address):
        return self.tokens.remove_token(address)

    async def fiat_value(self, amount_eth):
        """Fiat value of an ETH amount, or None when no price is available."""
        if self.prices is None or amount_eth is None: return None
        try:
            p = await run_io(self.prices.price, "ETH", timeout=self.timeout)
        except NetworkError:
            return None
        return None if p is None else p * Decimal(str(amount_eth))

    # ── Writes ────────────────────────────────────────────────

    async def estimate_fee(self, fee_level="medium"):
        return await self.engine.estimate_fee(fee_level=fee_level)

    async def send(self, recipient, amount, fee_level="medium"):
        return await self.engine.send(recipient, amount, fee_level)

    def faucet(self):
        return FaucetClient(self.api, self.engine, self.config["faucet_address"], timeout=self.timeout)

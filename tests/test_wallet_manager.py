"""
Wallet manager: epoch-guarded views, account commands, cascade on delete.
"""

import asyncio
import threading
from decimal import Decimal

import pytest

from conftest import HARDHAT_ADDRESS_0, HARDHAT_ADDRESS_1, HARDHAT_KEY_0, HARDHAT_KEY_1, RECIPIENT, TOKEN_A
from wallet_core import DEFAULT_CONFIG
from wallet_errors import (
    HistoryUnavailableError, InsufficientBalanceError, SigningFailureError, UninitializedStoreError,
)
from wallet_manager import WalletManager


class FixedPrice:
    def __init__(self, price): self.value = price
    def price(self, sym="ETH"): return self.value


@pytest.fixture
def wm(api, kv):
    config = dict(DEFAULT_CONFIG, rpc_url="http://rpc.test", kdf_iterations=1000, request_timeout=5)
    m = WalletManager(kv=kv, passphrase="pw", api=api, config=config, price_oracle=FixedPrice(Decimal("2000")))
    m.open()
    m.import_account("A", HARDHAT_KEY_0)
    m.import_account("B", HARDHAT_KEY_1)
    m.switch_account(0)
    api.balances = {HARDHAT_ADDRESS_0: 2 * 10 ** 18, HARDHAT_ADDRESS_1: 10 ** 17}
    api.tokens[TOKEN_A] = {"name": "Uniswap", "symbol": "UNI", "decimals": 18,
                           "balances": {HARDHAT_ADDRESS_0: 10 ** 18}}
    return m


def test_empty_wallet_has_no_active_account(api, kv):
    m = WalletManager(kv=kv, passphrase="pw", api=api, config=dict(DEFAULT_CONFIG, kdf_iterations=1000)).open()
    assert m.accounts == []
    with pytest.raises(UninitializedStoreError):
        m.active_account


def test_balance_refresh(wm):
    assert asyncio.run(wm.refresh_balance()) == 2 * 10 ** 18
    assert wm.balance_eth == "2.0"


def test_balance_unavailable_keeps_none(wm, api):
    api.fail.add("get_balance")
    assert asyncio.run(wm.refresh_balance()) is None
    assert wm.balance is None


def test_stale_balance_is_discarded(wm, api):
    api.gate = threading.Event()

    async def scenario():
        task = asyncio.create_task(wm.refresh_balance())
        await asyncio.to_thread(api.started.wait, 5)
        wm.switch_account(1)
        api.gate.set()
        return await task

    assert asyncio.run(scenario()) is None
    assert wm.balance is None
    assert wm.active_account.address == HARDHAT_ADDRESS_1


def test_switch_resets_views(wm):
    asyncio.run(wm.refresh_balance())
    asyncio.run(wm.refresh_history())
    registry = wm.tokens
    wm.switch_account(1)
    assert wm.balance is None
    assert wm.transactions is None
    assert wm.tokens is not registry
    assert wm.tokens.owner == HARDHAT_ADDRESS_1


def test_send_uses_last_known_balance(wm, api):
    with pytest.raises(InsufficientBalanceError):
        asyncio.run(wm.send(RECIPIENT, "0.1"))
    asyncio.run(wm.refresh_balance())
    res = asyncio.run(wm.send(RECIPIENT, "0.1"))
    assert res.tx_hash
    assert len(api.sent) == 1


def test_tokens_follow_account(wm):
    asyncio.run(wm.add_token(TOKEN_A))
    assert wm.tokens.balances[TOKEN_A] == "1.0"
    wm.switch_account(1)
    assert wm.tokens.tokens == []
    wm.switch_account(0)
    assert [t.address for t in wm.tokens.tokens] == [TOKEN_A]
    assert asyncio.run(wm.refresh_tokens()) == {TOKEN_A: "1.0"}


def test_delete_purges_token_list(wm, kv):
    asyncio.run(wm.add_token(TOKEN_A))
    removed = wm.delete_account(0)
    assert removed.address == HARDHAT_ADDRESS_0
    assert kv.get(f"tokens_{HARDHAT_ADDRESS_0}") is None
    assert wm.active_account.address == HARDHAT_ADDRESS_1


def test_remove_token(wm):
    asyncio.run(wm.add_token(TOKEN_A))
    assert wm.remove_token(TOKEN_A.lower()).address == TOKEN_A
    assert wm.remove_token(TOKEN_A) is None


def test_fiat_value(wm):
    assert asyncio.run(wm.fiat_value("1.5")) == Decimal("3000")
    wm.prices = FixedPrice(None)
    assert asyncio.run(wm.fiat_value("1.5")) is None


def test_reopen_restores_state(wm, api, kv):
    wm.switch_account(1)
    again = WalletManager(kv=kv, passphrase="pw", api=api, config=wm.config).open()
    assert [a.name for a in again.accounts] == ["A", "B"]
    assert again.active_account.address == HARDHAT_ADDRESS_1


def test_send_on_empty_wallet_is_signing_failure(api, kv):
    m = WalletManager(kv=kv, passphrase="pw", api=api, config=dict(DEFAULT_CONFIG, kdf_iterations=1000)).open()
    with pytest.raises(SigningFailureError):
        asyncio.run(m.send(RECIPIENT, "0.1"))
    assert api.calls == []


def _switch_while_in_flight(wm, api, read, fail=()):
    """Start `read`, switch account once the provider call is in flight, then release it."""
    api.started.clear()
    api.gate = threading.Event()

    async def scenario():
        task = asyncio.create_task(read())
        await asyncio.to_thread(api.started.wait, 5)
        wm.switch_account(1)
        api.fail.update(fail)
        api.gate.set()
        return await task

    return asyncio.run(scenario())


@pytest.mark.parametrize("fail", [(), ("transfers_from", "transfers_to")])
def test_stale_history_is_discarded(wm, api, fail):
    api.transfers["from"] = [{"hash": "0x1", "blockNum": "0x5", "from": HARDHAT_ADDRESS_0,
                              "to": RECIPIENT, "value": 1, "asset": "ETH"}]
    assert _switch_while_in_flight(wm, api, wm.refresh_history, fail) is None
    assert wm.transactions is None


def test_current_history_failure_still_raises(wm, api):
    api.fail.update({"transfers_from", "transfers_to"})
    with pytest.raises(HistoryUnavailableError):
        asyncio.run(wm.refresh_history())


@pytest.mark.parametrize("fail", [(), ("erc20_balance_of",)])
def test_stale_token_balances_are_discarded(wm, api, fail):
    asyncio.run(wm.add_token(TOKEN_A))
    assert _switch_while_in_flight(wm, api, wm.refresh_tokens, fail) is None
    assert wm.tokens.owner == HARDHAT_ADDRESS_1
    assert wm.tokens.balances == {}

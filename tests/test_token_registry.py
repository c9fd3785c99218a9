"""
Token registry: address normalisation, duplicates, placeholder metadata,
isolated balance failures, bounded concurrency, persistence.
"""

import asyncio
import threading
import time

import pytest

from conftest import HARDHAT_ADDRESS_0, HARDHAT_ADDRESS_1, TOKEN_A, TOKEN_B, FakeAPI
from token_registry import PLACEHOLDER, Token, TokenRegistry
from wallet_errors import DuplicateTokenError, InvalidTokenAddressError, ValidationError

OWNER = HARDHAT_ADDRESS_0


def _token(name, symbol, decimals=18, balance=0):
    return {"name": name, "symbol": symbol, "decimals": decimals, "balances": {OWNER: balance}}


@pytest.fixture
def chain(api):
    api.tokens[TOKEN_A] = _token("Uniswap", "UNI", 18, 15 * 10 ** 17)
    api.tokens[TOKEN_B] = _token("Dai Stablecoin", "DAI", 18, 3 * 10 ** 18)
    return api


class TestAdd:
    def test_add_normalises_and_reads_metadata(self, chain, storage):
        reg = TokenRegistry(OWNER, chain, storage)
        tok = asyncio.run(reg.add_token(TOKEN_A.lower()))
        assert tok.address == TOKEN_A
        assert (tok.name, tok.symbol, tok.decimals) == ("Uniswap", "UNI", 18)
        assert reg.balances[TOKEN_A] == "1.5"

    def test_invalid_address(self, chain):
        reg = TokenRegistry(OWNER, chain)
        for bad in ("0x123", "hello", "", None):
            with pytest.raises(InvalidTokenAddressError):
                asyncio.run(reg.add_token(bad))
        assert reg.tokens == []

    def test_duplicate_any_case(self, chain):
        reg = TokenRegistry(OWNER, chain)
        asyncio.run(reg.add_token(TOKEN_A))
        before = list(reg.tokens)
        with pytest.raises(DuplicateTokenError):
            asyncio.run(reg.add_token(TOKEN_A.upper().replace("0X", "0x")))
        assert reg.tokens == before

    def test_concurrent_adds_of_same_token(self, chain):
        reg = TokenRegistry(OWNER, chain)

        async def both():
            return await asyncio.gather(reg.add_token(TOKEN_A), reg.add_token(TOKEN_A.lower()),
                                        return_exceptions=True)

        results = asyncio.run(both())
        assert sum(isinstance(r, DuplicateTokenError) for r in results) == 1
        assert len(reg.tokens) == 1

    def test_failed_metadata_uses_placeholders(self, chain):
        chain.fail.update({("erc20_name", TOKEN_A), ("erc20_decimals", TOKEN_A)})
        reg = TokenRegistry(OWNER, chain)
        tok = asyncio.run(reg.add_token(TOKEN_A))
        assert tok.name == PLACEHOLDER["name"]
        assert tok.symbol == "UNI"
        assert tok.decimals == 18

    def test_failed_balance_on_add_is_zero(self, chain):
        chain.fail.add(("erc20_balance_of", TOKEN_A))
        reg = TokenRegistry(OWNER, chain)
        asyncio.run(reg.add_token(TOKEN_A))
        assert reg.balances[TOKEN_A] == "0"
        assert len(reg.tokens) == 1


class TestRemove:
    def test_remove_case_insensitive(self, chain, storage):
        reg = TokenRegistry(OWNER, chain, storage)
        asyncio.run(reg.add_token(TOKEN_A))
        removed = reg.remove_token(TOKEN_A.lower())
        assert removed.address == TOKEN_A
        assert reg.tokens == []
        assert TOKEN_A not in reg.balances
        assert storage.load_tokens(OWNER) == []

    def test_remove_absent_is_noop(self, chain):
        reg = TokenRegistry(OWNER, chain)
        asyncio.run(reg.add_token(TOKEN_A))
        assert reg.remove_token(TOKEN_B) is None
        assert len(reg.tokens) == 1


class SlowAPI(FakeAPI):
    """Counts how many balance reads run at once."""

    def __init__(self, delay):
        super().__init__()
        self.delay = delay
        self.active = 0
        self.peak = 0
        self.counter = threading.Lock()

    def erc20_balance_of(self, token, owner):
        with self.counter:
            self.active += 1
            self.peak = max(self.peak, self.active)
        time.sleep(self.delay)
        with self.counter:
            self.active -= 1
        return 0


class TestRefresh:
    def test_one_failure_is_isolated(self, chain):
        reg = TokenRegistry(OWNER, chain)
        asyncio.run(reg.add_token(TOKEN_A))
        asyncio.run(reg.add_token(TOKEN_B))
        chain.fail.add(("erc20_balance_of", TOKEN_A))
        balances = asyncio.run(reg.refresh_balances())
        assert balances == {TOKEN_A: "0", TOKEN_B: "3.0"}
        assert reg.balances == balances

    def test_other_owner_does_not_replace_cache(self, chain):
        chain.tokens[TOKEN_A]["balances"][HARDHAT_ADDRESS_1] = 10 ** 17
        reg = TokenRegistry(OWNER, chain)
        asyncio.run(reg.add_token(TOKEN_A))
        other = asyncio.run(reg.refresh_balances(HARDHAT_ADDRESS_1.lower()))
        assert other == {TOKEN_A: "0.1"}
        assert reg.balances == {TOKEN_A: "1.5"}

    def test_empty_list(self, chain):
        assert asyncio.run(TokenRegistry(OWNER, chain).refresh_balances()) == {}

    def test_invalid_owner_is_rejected(self, chain):
        reg = TokenRegistry(OWNER, chain)
        asyncio.run(reg.add_token(TOKEN_A))
        with pytest.raises(ValidationError):
            asyncio.run(reg.refresh_balances("0xnot-an-address"))
        assert reg.balances == {TOKEN_A: "1.5"}

    def test_concurrency_cap(self):
        api = SlowAPI(0.05)
        reg = TokenRegistry(OWNER, api, max_concurrency=2)
        reg.tokens = [Token(f"0x{i:040x}") for i in range(1, 9)]
        balances = asyncio.run(reg.refresh_balances())
        assert len(balances) == 8
        assert api.peak <= 2

    def test_timed_out_reads_do_not_exceed_cap(self):
        api = SlowAPI(0.15)
        reg = TokenRegistry(OWNER, api, max_concurrency=2, timeout=0.03)
        reg.tokens = [Token(f"0x{i:040x}") for i in range(1, 7)]
        balances = asyncio.run(reg.refresh_balances())
        assert set(balances.values()) == {"0"}
        assert api.peak <= 2


class TestPersistence:
    def test_list_survives_reload(self, chain, storage):
        reg = TokenRegistry(OWNER, chain, storage)
        asyncio.run(reg.add_token(TOKEN_B))
        asyncio.run(reg.add_token(TOKEN_A))
        again = TokenRegistry(OWNER, chain, storage)
        assert [t.address for t in again.tokens] == [TOKEN_B, TOKEN_A]
        assert again.get(TOKEN_A.lower()).symbol == "UNI"

    def test_lists_are_per_account(self, chain, storage):
        asyncio.run(TokenRegistry(OWNER, chain, storage).add_token(TOKEN_A))
        assert TokenRegistry(HARDHAT_ADDRESS_1, chain, storage).tokens == []

    def test_record_round_trip(self):
        tok = Token(TOKEN_A, "Uniswap", "UNI", 18, "2024-01-01T00:00:00+00:00")
        assert Token.from_record(tok.to_record()) == tok

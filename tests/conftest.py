"""
Test configuration and fixtures
"""
import sys
import threading
from pathlib import Path

# flat module layout: make the project root importable without installing
sys.path.insert(0, str(Path(__file__).parent.parent))

import pytest

from blockchain_api import encode_call
from wallet_core import MemoryStore, WalletStorage
from wallet_errors import ProviderError

HARDHAT_MNEMONIC = "test test test test test test test test test test test junk"
HARDHAT_ADDRESS_0 = "0xf39Fd6e51aad88F6F4ce6aB8827279cffFb92266"
HARDHAT_KEY_0 = "0xac0974bec39a17e36ba4a6b4d238ff944bacb478cbed5efcae784d7bf4f2ff80"
HARDHAT_ADDRESS_1 = "0x70997970C51812dc3A010C7d01b50e0d17dc79C8"
HARDHAT_KEY_1 = "0x59c6995e998f97a5a0044966f0945389dc9e86dae88c7a8412f4603b6b78690d"

TOKEN_A = "0x1f9840a85d5aF5bf1D1762F925BDADdC4201F984"
TOKEN_B = "0x6B175474E89094C44Da98b954EedeAC495271d0F"
RECIPIENT = "0x000000000000000000000000000000000000dEaD"


class FakeAPI:
    """In-memory stand-in for BlockchainAPI. Set entries in `fail` to make a method raise."""

    def __init__(self):
        self.balances = {}
        self.tokens = {}            # address -> {"name", "symbol", "decimals", "balances": {owner: int}}
        self.transfers = {"from": [], "to": []}
        self.contract_reads = {}    # (address, calldata) -> hex result
        self.fail = set()
        self.sent = []
        self.calls = []
        self.base_fee = 10 ** 9
        self.gate = None
        self.started = threading.Event()
        self._lock = threading.Lock()

    def _hit(self, name, *args):
        with self._lock: self.calls.append((name,) + args)
        if name in self.fail or (name, args[0] if args else None) in self.fail:
            raise ProviderError(f"{name}: simulated failure", operation=name)

    def _hold(self):
        """Signal that a read is in flight, then wait on `gate` when one is set."""
        self.started.set()
        if self.gate is not None: self.gate.wait(5)

    def get_balance(self, address):
        self._hold()
        self._hit("get_balance", address)
        return self.balances.get(address, 0)

    def get_transaction_count(self, address, block="pending"):
        self._hit("get_transaction_count", address)
        return 7

    def chain_id(self):
        self._hit("chain_id")
        return 11155111

    def gas_price(self):
        self._hit("gas_price")
        return 2 * 10 ** 9

    def max_priority_fee(self):
        self._hit("max_priority_fee")
        return 10 ** 9

    def get_block(self, block="latest"):
        self._hit("get_block")
        return {"baseFeePerGas": hex(self.base_fee)} if self.base_fee else {}

    def estimate_gas(self, tx):
        self._hit("estimate_gas", tx.get("to"))
        return 50000

    def send_raw_transaction(self, raw_hex):
        self._hit("send_raw_transaction")
        self.sent.append(raw_hex)
        return "0x" + "ab" * 32

    def call(self, to, data, block="latest"):
        self._hit("call", to)
        return self.contract_reads[(to, data)]

    def _token(self, address, field):
        self._hit(f"erc20_{field}", address)
        return self.tokens[address][field]

    def erc20_name(self, token): return self._token(token, "name")
    def erc20_symbol(self, token): return self._token(token, "symbol")
    def erc20_decimals(self, token): return self._token(token, "decimals")

    def erc20_balance_of(self, token, owner):
        self._hold()
        self._hit("erc20_balance_of", token)
        return self.tokens[token]["balances"].get(owner, 0)

    def get_asset_transfers(self, from_address=None, to_address=None, categories=(), **kw):
        side = "from" if from_address else "to"
        self._hold()
        self._hit(f"transfers_{side}")
        return list(self.transfers[side])

    def set_read(self, contract, signature, result, types=(), values=()):
        self.contract_reads[(contract, encode_call(signature, types, values))] = result


@pytest.fixture
def api():
    return FakeAPI()


@pytest.fixture
def kv():
    return MemoryStore()


@pytest.fixture
def storage(kv):
    return WalletStorage(kv, passphrase="correct horse", iterations=1000)

"""
Nimbus Wallet Core
HD key derivation (BIP-39/44, Ethereum), encrypted account storage and the
single-writer account store with its active-account pointer.
"""

import os, json, base64, binascii, copy, hmac, logging, re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional, Tuple

from bip_utils import (
    Bip39Languages, Bip39MnemonicGenerator, Bip39MnemonicValidator,
    Bip39SeedGenerator, Bip39WordsNum,
    Bip44, Bip44Changes, Bip44Coins,
    Secp256k1PrivateKey,
)
from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from eth_account import Account as EthAccount

from blockchain_api import HISTORY_CATEGORIES
from wallet_errors import (
    IndexOutOfRangeError, InvalidKeyError, InvalidMnemonicError,
    InvalidPassphraseError, KeyGenerationError, StateError, UninitializedStoreError,
)

logger = logging.getLogger(__name__)

# ═══════════════════════════════════════════════════════════════
# CONFIG
# ═══════════════════════════════════════════════════════════════

ALCHEMY_SEPOLIA = "https://eth-sepolia.g.alchemy.com/v2/{}"

DEFAULT_CONFIG = {
    "rpc_url": "",
    "chain_id": 11155111,
    "explorer": "https://sepolia.etherscan.io/tx/{}",
    "request_timeout": 15,
    "read_retries": 2,
    "max_concurrency": 4,
    "history_categories": list(HISTORY_CATEGORIES),
    "fee_fallback": "0.001",
    "faucet_address": "0x1E4081F2B2Ab3b66021598A35c469Ef08D81DB6A",
    "price_currency": "usd",
    "log_level": "WARNING",
    "kdf_iterations": 480000,
}


def default_wallet_dir():
    return Path(os.environ.get("NIMBUS_WALLET_DIR") or Path.home() / ".nimbus_wallet")


def resolve_config(saved=None):
    """Defaults <- saved config.json <- environment."""
    cfg = {**DEFAULT_CONFIG, **(saved or {})}
    if os.environ.get("NIMBUS_RPC_URL"):
        cfg["rpc_url"] = os.environ["NIMBUS_RPC_URL"]
    if not cfg["rpc_url"]:
        cfg["rpc_url"] = ALCHEMY_SEPOLIA.format(os.environ.get("ALCHEMY_API_KEY", "demo"))
    return cfg


# ═══════════════════════════════════════════════════════════════
# SECURITY
# ═══════════════════════════════════════════════════════════════

class WalletSecurity:
    SALT_SIZE = 16; ITERATIONS = 480000

    @staticmethod
    def derive_key(pw, salt, iterations=None):
        kdf = PBKDF2HMAC(algorithm=hashes.SHA256(), length=32, salt=salt,
                         iterations=iterations or WalletSecurity.ITERATIONS)
        return base64.urlsafe_b64encode(kdf.derive(pw.encode()))

    @staticmethod
    def encrypt(data, pw, iterations=None):
        s = os.urandom(WalletSecurity.SALT_SIZE)
        return base64.b64encode(s + Fernet(WalletSecurity.derive_key(pw, s, iterations)).encrypt(data.encode())).decode()

    @staticmethod
    def decrypt(enc, pw, iterations=None):
        try:
            p = base64.b64decode(enc.encode())
        except (binascii.Error, ValueError) as e:
            raise InvalidPassphraseError("encrypted wallet data is corrupt", operation="decrypt") from e
        n = WalletSecurity.SALT_SIZE
        try:
            return Fernet(WalletSecurity.derive_key(pw, p[:n], iterations)).decrypt(p[n:]).decode()
        except InvalidToken as e:
            raise InvalidPassphraseError("wrong passphrase or tampered wallet data", operation="decrypt") from e


class SecretKey:
    """32-byte private key. Masked repr, explicit hex(), zeroed by wipe() or on release."""
    __slots__ = ("_buf",)

    def __init__(self, raw):
        if len(raw) != 32:
            raise InvalidKeyError("private key must be 32 bytes")
        self._buf = bytearray(raw)

    @property
    def wiped(self):
        return not self._buf

    def raw(self):
        if self.wiped: raise StateError("private key has been wiped")
        return bytes(self._buf)

    def hex(self):
        return "0x" + self.raw().hex()

    def wipe(self):
        for i in range(len(self._buf)): self._buf[i] = 0
        self._buf = bytearray()

    def __eq__(self, other):
        if not isinstance(other, SecretKey): return NotImplemented
        return hmac.compare_digest(bytes(self._buf), bytes(other._buf))

    __hash__ = None

    def __repr__(self):
        return "SecretKey(<wiped>)" if self.wiped else "SecretKey(****)"

    def __del__(self):
        if getattr(self, "_buf", None): self.wipe()


# ═══════════════════════════════════════════════════════════════
# KEY MANAGER
# ═══════════════════════════════════════════════════════════════

_PK_RE = re.compile(r"^(0[xX])?[0-9a-fA-F]{64}$")
_WORDS = {12: Bip39WordsNum.WORDS_NUM_12, 15: Bip39WordsNum.WORDS_NUM_15, 18: Bip39WordsNum.WORDS_NUM_18,
          21: Bip39WordsNum.WORDS_NUM_21, 24: Bip39WordsNum.WORDS_NUM_24}


class KeyManager:
    """Pure derivation. Nothing is cached here; secrets go straight back to the caller."""

    @staticmethod
    def generate_mnemonic(words=12):
        if words not in _WORDS: raise ValueError("mnemonic length must be 12/15/18/21/24 words")
        try:
            return Bip39MnemonicGenerator(Bip39Languages.ENGLISH).FromWordsNumber(_WORDS[words]).ToStr()
        except (OSError, NotImplementedError) as e:
            raise KeyGenerationError("entropy source unavailable", operation="generate_account") from e

    @staticmethod
    def normalize_mnemonic(phrase):
        return " ".join(str(phrase).lower().split())

    @staticmethod
    def validate_mnemonic(phrase):
        return Bip39MnemonicValidator(Bip39Languages.ENGLISH).IsValid(KeyManager.normalize_mnemonic(phrase))

    @staticmethod
    def derive_from_mnemonic(phrase, index=0) -> Tuple[str, SecretKey]:
        mn = KeyManager.normalize_mnemonic(phrase)
        if not mn or not KeyManager.validate_mnemonic(mn):
            raise InvalidMnemonicError("mnemonic failed word-list or checksum validation",
                                       operation="derive_from_mnemonic")
        seed = Bip39SeedGenerator(mn, Bip39Languages.ENGLISH).Generate()
        node = (Bip44.FromSeed(seed, Bip44Coins.ETHEREUM).Purpose().Coin()
                .Account(0).Change(Bip44Changes.CHAIN_EXT).AddressIndex(index))
        return node.PublicKey().ToAddress(), SecretKey(node.PrivateKey().Raw().ToBytes())

    @staticmethod
    def generate_account(words=12) -> Tuple[str, str, SecretKey]:
        mnemonic = KeyManager.generate_mnemonic(words)
        address, key = KeyManager.derive_from_mnemonic(mnemonic)
        return mnemonic, address, key

    @staticmethod
    def parse_private_key(text) -> SecretKey:
        s = str(text).strip()
        if not _PK_RE.match(s):
            raise InvalidKeyError("private key must be 32 bytes of hex", operation="import_private_key")
        raw = bytes.fromhex(s[2:] if s[:2].lower() == "0x" else s)
        if not Secp256k1PrivateKey.IsValidBytes(raw):
            raise InvalidKeyError("value is not a valid secp256k1 private key", operation="import_private_key")
        return SecretKey(raw)

    @staticmethod
    def address_of(key: SecretKey):
        return EthAccount.from_key(key.raw()).address

    @staticmethod
    def derive_from_private_key(text):
        return KeyManager.address_of(KeyManager.parse_private_key(text))


def detect_import_method(source):
    return "private_key" if _PK_RE.match(str(source).strip()) else "mnemonic"


# ═══════════════════════════════════════════════════════════════
# ACCOUNT
# ═══════════════════════════════════════════════════════════════

def _now():
    return datetime.now(timezone.utc).isoformat()


@dataclass
class Account:
    name: str
    address: str
    private_key: SecretKey = field(repr=False)
    mnemonic: Optional[str] = field(default=None, repr=False)
    imported: bool = False
    created_at: str = field(default_factory=_now)
    id: str = field(default_factory=lambda: os.urandom(6).hex())

    def __post_init__(self):
        derived = KeyManager.address_of(self.private_key)
        if derived.lower() != str(self.address).lower():
            raise InvalidKeyError("address does not match private key", address=self.address)
        self.address = derived

    def signer(self):
        return EthAccount.from_key(self.private_key.raw())

    def to_record(self):
        return {"id": self.id, "name": self.name, "address": self.address,
                "privateKey": self.private_key.hex(), "mnemonic": self.mnemonic,
                "imported": self.imported, "createdAt": self.created_at}

    @classmethod
    def from_record(cls, rec):
        return cls(name=rec.get("name", ""), address=rec["address"],
                   private_key=KeyManager.parse_private_key(rec["privateKey"]),
                   mnemonic=rec.get("mnemonic"), imported=bool(rec.get("imported", False)),
                   created_at=rec.get("createdAt") or _now(), id=rec.get("id") or os.urandom(6).hex())


# ═══════════════════════════════════════════════════════════════
# STORAGE
# ═══════════════════════════════════════════════════════════════

class MemoryStore:
    def __init__(self): self.data = {}
    def get(self, key): return copy.deepcopy(self.data.get(key))
    def set(self, key, value): self.data[key] = copy.deepcopy(value)
    def delete(self, key): self.data.pop(key, None)


class JsonFileStore:
    def __init__(self, base_dir=None):
        self.base_dir = Path(base_dir) if base_dir else default_wallet_dir()
        self.base_dir.mkdir(parents=True, exist_ok=True)

    def _f(self, key):
        if not re.match(r"^[A-Za-z0-9_]+$", key): raise ValueError(f"bad storage key: {key!r}")
        return self.base_dir / f"{key}.json"

    def get(self, key):
        f = self._f(key)
        if not f.exists(): return None
        try:
            with open(f) as fh: return json.load(fh)
        except ValueError as e:
            raise StateError(f"wallet file {f.name} is corrupt (key {key!r})", operation="storage") from e

    def set(self, key, value):
        f = self._f(key); tmp = f.with_suffix(".tmp")
        with open(tmp, "w") as fh: json.dump(value, fh, indent=2)
        os.chmod(tmp, 0o600)
        os.replace(tmp, f)

    def delete(self, key):
        self._f(key).unlink(missing_ok=True)


class WalletStorage:
    """Schema over a key-value store: encrypted account list, per-account token lists, config."""
    ACCOUNTS_KEY = "accounts"; CONFIG_KEY = "config"; VERSION = 1

    def __init__(self, kv=None, passphrase=None, iterations=None):
        self.kv = kv if kv is not None else JsonFileStore()
        self.passphrase = passphrase
        self.iterations = iterations or WalletSecurity.ITERATIONS

    @staticmethod
    def tokens_key(address):
        return f"tokens_{address}"

    def has_accounts(self):
        return self.kv.get(self.ACCOUNTS_KEY) is not None

    def _need_passphrase(self):
        if not self.passphrase:
            raise InvalidPassphraseError("a passphrase is required to open the account store", operation="storage")
        return self.passphrase

    def load_accounts(self) -> Tuple[List[dict], Optional[int]]:
        blob = self.kv.get(self.ACCOUNTS_KEY)
        if not blob: return [], None
        data = WalletSecurity.decrypt(blob["encrypted_data"], self._need_passphrase(),
                                      blob.get("kdf_iterations", WalletSecurity.ITERATIONS))
        return json.loads(data), blob.get("active_index")

    def save_accounts(self, records, active_index):
        pw = self._need_passphrase()
        self.kv.set(self.ACCOUNTS_KEY, {
            "version": self.VERSION, "kdf_iterations": self.iterations,
            "encrypted_data": WalletSecurity.encrypt(json.dumps(records), pw, self.iterations),
            "active_index": active_index, "updated_at": _now()})

    def load_tokens(self, address):
        return self.kv.get(self.tokens_key(address)) or []

    def save_tokens(self, address, tokens):
        self.kv.set(self.tokens_key(address), tokens)

    def purge_account(self, address):
        self.kv.delete(self.tokens_key(address))

    def load_config(self):
        return resolve_config(self.kv.get(self.CONFIG_KEY))


# ═══════════════════════════════════════════════════════════════
# ACCOUNT STORE
# ═══════════════════════════════════════════════════════════════

def reindex_after_delete(index, active_index, remaining):
    """Active pointer after removing `index`; None once the list is empty."""
    if remaining == 0: return None
    if index == active_index: return 0
    if index < active_index: return active_index - 1
    return active_index


class AccountStore:
    """Ordered accounts plus active pointer. Mutations go through these commands only."""

    def __init__(self, storage=None, key_manager=KeyManager):
        self.storage = storage
        self.keys = key_manager
        self.accounts: List[Account] = []
        self.active_index: Optional[int] = None
        # bumped whenever the active account changes; readers tag results with it
        self.epoch = 0

    @property
    def initialized(self):
        return bool(self.accounts)

    @property
    def state(self):
        return tuple(self.accounts), self.active_index

    @property
    def active_account(self) -> Account:
        if not self.accounts:
            raise UninitializedStoreError("no accounts; create or import one first", operation="active_account")
        return self.accounts[self.active_index]

    def load(self):
        if self.storage is None: return self.state
        records, idx = self.storage.load_accounts()
        accounts = [Account.from_record(r) for r in records]
        if not accounts: idx = None
        elif not isinstance(idx, int) or not 0 <= idx < len(accounts): idx = 0
        self.accounts, self.active_index = accounts, idx
        self.epoch += 1
        logger.info("loaded %d account(s)", len(accounts))
        return self.state

    def _commit(self, accounts, active_index):
        """Persist first; in-memory state only changes once the write succeeded."""
        if self.storage is not None:
            self.storage.save_accounts([a.to_record() for a in accounts], active_index)
        before = self.accounts[self.active_index].id if self.accounts else None
        self.accounts, self.active_index = accounts, active_index
        after = accounts[active_index].id if accounts else None
        if before != after: self.epoch += 1

    def _check(self, index, op):
        if not isinstance(index, int) or isinstance(index, bool) or not 0 <= index < len(self.accounts):
            raise IndexOutOfRangeError(f"account index {index!r} out of range (0..{len(self.accounts) - 1})",
                                       operation=op)

    def _append(self, account):
        accounts = self.accounts + [account]
        self._commit(accounts, len(accounts) - 1)
        return account

    def create_account(self, name=None):
        mnemonic, address, key = self.keys.generate_account()
        acct = Account(name or f"Account {len(self.accounts) + 1}", address, key, mnemonic, imported=False)
        self._append(acct)
        logger.info("created account %s", acct.address)
        return acct

    def import_account(self, name, source, method=None):
        method = method or detect_import_method(source)
        if method == "mnemonic":
            mnemonic = self.keys.normalize_mnemonic(source)
            address, key = self.keys.derive_from_mnemonic(mnemonic)
        elif method == "private_key":
            mnemonic = None
            key = self.keys.parse_private_key(source)
            address = self.keys.address_of(key)
        else:
            raise ValueError(f"unknown import method: {method}")
        acct = Account(name or "Imported Account", address, key, mnemonic, imported=True)
        self._append(acct)
        logger.info("imported account %s via %s", acct.address, method)
        return acct

    def switch_active(self, index):
        self._check(index, "switch_active")
        self._commit(list(self.accounts), index)
        return self.state

    def delete_account(self, index):
        self._check(index, "delete_account")
        removed = self.accounts[index]
        accounts = self.accounts[:index] + self.accounts[index + 1:]
        self._commit(accounts, reindex_after_delete(index, self.active_index, len(accounts)))
        if self.storage is not None and not any(a.address == removed.address for a in accounts):
            self.storage.purge_account(removed.address)
        removed.private_key.wipe()
        logger.info("deleted account %s", removed.address)
        return removed

    def current_signer(self):
        return self.active_account.signer()

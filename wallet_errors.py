"""
Nimbus Wallet errors
Validation / cryptographic / network / state families. Messages never carry key material.
"""


class WalletError(Exception):
    def __init__(self, message="", operation=None, address=None):
        super().__init__(message)
        self.message = message
        self.operation = operation
        self.address = address

    def __str__(self):
        ctx = []
        if self.operation: ctx.append(f"op={self.operation}")
        if self.address: ctx.append(f"address={self.address}")
        return f"{self.message} ({', '.join(ctx)})" if ctx else self.message


# ── Families ─────────────────────────────────────────────────
class ValidationError(WalletError):
    """Bad user input, detected before any network call."""


class CryptographicError(WalletError):
    """Fails closed: nothing is created or mutated."""


class NetworkError(WalletError):
    """Provider unreachable or RPC-level error."""


class StateError(WalletError):
    """Operation not valid in the current store state."""


# ── Keys ─────────────────────────────────────────────────────
class KeyGenerationError(CryptographicError):
    pass


class InvalidMnemonicError(CryptographicError):
    pass


class InvalidKeyError(CryptographicError):
    pass


class InvalidPassphraseError(CryptographicError):
    pass


# ── Account store ────────────────────────────────────────────
class IndexOutOfRangeError(StateError, IndexError):
    pass


class UninitializedStoreError(StateError):
    pass


# ── Sending ──────────────────────────────────────────────────
class InvalidRecipientError(ValidationError):
    pass


class InsufficientBalanceError(ValidationError):
    pass


class InvalidAmountError(InsufficientBalanceError):
    """Amount is not a positive number."""


class SigningFailureError(WalletError):
    pass


class ProviderError(NetworkError):
    def __init__(self, message="", operation=None, address=None, code=None):
        super().__init__(message, operation=operation, address=address)
        self.code = code


class BroadcastError(NetworkError):
    pass


# ── Tokens / history / faucet ────────────────────────────────
class InvalidTokenAddressError(ValidationError):
    pass


class DuplicateTokenError(ValidationError):
    pass


class HistoryUnavailableError(NetworkError):
    pass


class FaucetCooldownError(ValidationError):
    def __init__(self, message="", operation=None, address=None, seconds_left=0):
        super().__init__(message, operation=operation, address=address)
        self.seconds_left = seconds_left

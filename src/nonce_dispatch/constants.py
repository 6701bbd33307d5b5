from typing import Final
from enum import StrEnum

# Nonce account layout (bytes). Compatibility contract with the ledger, do not derive.
NONCE_ACCOUNT_LEN: Final = 80
VERSION_OFFSET: Final = 0
STATE_OFFSET: Final = 4
AUTHORITY_OFFSET: Final = 8
REPLAY_VALUE_OFFSET: Final = 40
REPLAY_VALUE_LEN: Final = 32
FEE_CALCULATOR_OFFSET: Final = 72
NONCE_STATE_INITIALIZED: Final = 1

PUBKEY_LEN: Final = 32
SIGNATURE_LEN: Final = 64

SYSTEM_PROGRAM: Final = "11111111111111111111111111111111"
SYSVAR_RECENT_BLOCKHASHES: Final = "SysvarRecentB1ockHashes11111111111111111111"

# System program instruction discriminators (u32 LE)
IX_TRANSFER: Final = 2
IX_ADVANCE_NONCE: Final = 4

MAX_LAMPORTS: Final = 2**64 - 1

# Defaults, overridable from config.toml
RATE_LIMIT = 5.0  # requests/second per endpoint
KEEPALIVE_INTERVAL = 60.0
IDLE_TIMEOUT = 65.0
SEND_TIMEOUT = 10.0
RPC_TIMEOUT = 5.0
MAX_ATTEMPTS = 3
RETRY_BACKOFF_BASE = 0.5
RETRY_BACKOFF_MAX = 8.0


class ErrorKind(StrEnum):
    MALFORMED_ACCOUNT   = "MALFORMED_ACCOUNT"
    INVALID_ADDRESS     = "INVALID_ADDRESS"
    UNKNOWN_ENDPOINT    = "UNKNOWN_ENDPOINT"
    CONFIG              = "CONFIG"
    AUTH_EXPIRED        = "AUTH_EXPIRED"
    METHOD_NOT_ALLOWED  = "METHOD_NOT_ALLOWED"
    RATE_LIMITED        = "RATE_LIMITED"
    TIMEOUT             = "TIMEOUT"
    NETWORK             = "NETWORK"
    NONCE_CONSUMED      = "NONCE_CONSUMED"
    RPC                 = "RPC"

    @property
    def retryable(self) -> bool:
        return self in RETRYABLE


RETRYABLE = {ErrorKind.RATE_LIMITED, ErrorKind.TIMEOUT, ErrorKind.NETWORK}

__all__ = [
    "IDLE_TIMEOUT",
    "KEEPALIVE_INTERVAL",
    "MAX_ATTEMPTS",
    "NONCE_ACCOUNT_LEN",
    "RATE_LIMIT",
    "REPLAY_VALUE_LEN",
    "REPLAY_VALUE_OFFSET",
    "RPC_TIMEOUT",
    "SEND_TIMEOUT",
    "SYSTEM_PROGRAM",
    "SYSVAR_RECENT_BLOCKHASHES",

    ######
    "ErrorKind",
]

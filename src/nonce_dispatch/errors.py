"""Error taxonomy for the dispatcher and JSON-RPC response classification.

Errors that indicate bad input or a bad nonce account are raised before any
network call. Everything that happens per endpoint ends up as a
DispatchOutcome carrying the error's kind and detail.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from nonce_dispatch.constants import ErrorKind

if TYPE_CHECKING:
    from nonce_dispatch.connection import RawResponse


class DispatchError(Exception):
    kind: ErrorKind = ErrorKind.RPC

    def __init__(self, detail: str = "", *, code: int | None = None) -> None:
        super().__init__(detail)
        self.detail = detail
        self.code = code


class MalformedAccountError(DispatchError):
    kind = ErrorKind.MALFORMED_ACCOUNT


class InvalidAddressError(DispatchError):
    kind = ErrorKind.INVALID_ADDRESS


class UnknownEndpointError(DispatchError):
    kind = ErrorKind.UNKNOWN_ENDPOINT


class ConfigError(DispatchError):
    kind = ErrorKind.CONFIG


class AuthExpiredError(DispatchError):
    kind = ErrorKind.AUTH_EXPIRED


class MethodNotAllowedError(DispatchError):
    kind = ErrorKind.METHOD_NOT_ALLOWED


class RateLimitError(DispatchError):
    kind = ErrorKind.RATE_LIMITED


class EndpointTimeoutError(DispatchError, TimeoutError):
    kind = ErrorKind.TIMEOUT


class NetworkError(DispatchError):
    kind = ErrorKind.NETWORK


class NonceAlreadyConsumedError(DispatchError):
    """A sibling variant (or an earlier send) already advanced the nonce."""

    kind = ErrorKind.NONCE_CONSUMED


class RpcError(DispatchError):
    kind = ErrorKind.RPC


RATE_LIMIT_CODES = {419, 429}
NONCE_CONSUMED_MARKERS = (
    "blockhashnotfound",
    "blockhash not found",
    "alreadyprocessed",
    "already been processed",
)


def _error_text(error: dict) -> str:
    msg = str(error.get("message", ""))
    data = error.get("data")
    if isinstance(data, dict) and data.get("err") is not None:
        msg = f"{msg} {data['err']}"
    return msg


def error_from_rpc(error: dict) -> DispatchError:
    """Map a JSON-RPC ``error`` object to a typed error. Message kept verbatim."""
    code = error.get("code")
    message = str(error.get("message", ""))
    text = _error_text(error).lower()

    if code in RATE_LIMIT_CODES:
        return RateLimitError(message, code=code)
    if code == 403:
        if "invalid method" in text:
            return MethodNotAllowedError(message, code=code)
        return AuthExpiredError(message, code=code)
    if any(marker in text for marker in NONCE_CONSUMED_MARKERS):
        return NonceAlreadyConsumedError(message, code=code)
    return RpcError(message, code=code)


def classify_response(raw: RawResponse) -> str:
    """Return the transaction signature from a sendTransaction response or raise."""
    body = raw.body
    if isinstance(body, dict) and isinstance(body.get("error"), dict):
        raise error_from_rpc(body["error"])

    if raw.status_code in RATE_LIMIT_CODES:
        raise RateLimitError(f"HTTP {raw.status_code}", code=raw.status_code)
    if raw.status_code == 403:
        raise AuthExpiredError(f"HTTP {raw.status_code}", code=raw.status_code)
    if raw.status_code >= 500:
        raise NetworkError(f"HTTP {raw.status_code}", code=raw.status_code)

    if not isinstance(body, dict) or not isinstance(body.get("result"), str):
        raise RpcError(f"unexpected response (HTTP {raw.status_code}): {body!r}", code=raw.status_code)
    return body["result"]

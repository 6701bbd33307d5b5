"""Nonce account decoding and the one-shot reader used at the start of a dispatch."""

import base64
import logging
import struct
from dataclasses import dataclass
from itertools import count

import httpx

import nonce_dispatch.constants as C
from nonce_dispatch.errors import EndpointTimeoutError, MalformedAccountError, NetworkError, error_from_rpc
from nonce_dispatch.keys import decode_address, encode_address

log = logging.getLogger("nonce_dispatch.nonce")


@dataclass(frozen=True, slots=True)
class NonceAccountHandle:
    address: str
    authority: str

    def __post_init__(self) -> None:
        decode_address(self.address)
        decode_address(self.authority)


@dataclass(frozen=True, slots=True)
class NonceSnapshot:
    """Point-in-time decode of a nonce account.

    All fields besides ``replay_value`` are informational; only the replay
    value is used to sign.
    """

    raw_bytes: bytes
    replay_value: bytes
    version: int
    state: int
    authority: bytes
    lamports_per_signature: int

    @property
    def replay_value_b58(self) -> str:
        return encode_address(self.replay_value)

    @property
    def authority_address(self) -> str:
        return encode_address(self.authority)


def decode_nonce_account(raw: bytes) -> NonceSnapshot:
    raw = bytes(raw)
    if len(raw) < C.NONCE_ACCOUNT_LEN:
        raise MalformedAccountError(f"nonce account is {len(raw)} bytes, need at least {C.NONCE_ACCOUNT_LEN}")

    version, state = struct.unpack_from("<II", raw, C.VERSION_OFFSET)
    if state != C.NONCE_STATE_INITIALIZED:
        raise MalformedAccountError(f"nonce account state tag is {state}, not initialized")

    (lamports_per_signature,) = struct.unpack_from("<Q", raw, C.FEE_CALCULATOR_OFFSET)
    return NonceSnapshot(
        raw_bytes=raw,
        replay_value=raw[C.REPLAY_VALUE_OFFSET:C.REPLAY_VALUE_OFFSET + C.REPLAY_VALUE_LEN],
        version=version,
        state=state,
        authority=raw[C.AUTHORITY_OFFSET:C.REPLAY_VALUE_OFFSET],
        lamports_per_signature=lamports_per_signature,
    )


class NonceLedgerReader:
    """Fetches a nonce account over JSON-RPC and decodes it. No retries."""

    def __init__(self, client: httpx.AsyncClient, url: str, *, commitment: str = "confirmed", timeout: float = C.RPC_TIMEOUT):
        self.client = client
        self.url = url
        self.commitment = commitment
        self.timeout = timeout
        self._ids = count(1)

    async def fetch(self, address: str) -> bytes:
        payload = {
            "jsonrpc": "2.0",
            "id": next(self._ids),
            "method": "getAccountInfo",
            "params": [address, {"encoding": "base64", "commitment": self.commitment}],
        }
        try:
            r = await self.client.post(self.url, json=payload, timeout=self.timeout)
        except httpx.TimeoutException as e:
            raise EndpointTimeoutError(f"getAccountInfo timed out: {e}") from e
        except httpx.TransportError as e:
            raise NetworkError(f"getAccountInfo failed: {e}") from e

        try:
            body = r.json()
        except ValueError as e:
            raise NetworkError(f"getAccountInfo returned non-JSON (HTTP {r.status_code})") from e
        if not isinstance(body, dict):
            raise NetworkError(f"getAccountInfo returned {type(body).__name__} (HTTP {r.status_code})")
        if isinstance(body.get("error"), dict):
            raise error_from_rpc(body["error"])

        result = body.get("result")
        if not isinstance(result, dict):
            raise NetworkError(f"getAccountInfo returned no result object: {result!r}")
        value = result.get("value")
        if value is None:
            raise MalformedAccountError(f"nonce account {address} does not exist")
        if not isinstance(value, dict):
            raise MalformedAccountError(f"unexpected account value: {value!r}")
        data = value.get("data")
        if not isinstance(data, list) or not data or (len(data) > 1 and data[1] != "base64"):
            raise MalformedAccountError(f"unexpected account data encoding: {data!r}")
        try:
            return base64.b64decode(data[0], validate=True)
        except ValueError as e:
            raise MalformedAccountError(f"account data is not base64: {e}") from e

    async def read(self, handle: NonceAccountHandle) -> NonceSnapshot:
        raw = await self.fetch(handle.address)
        snapshot = decode_nonce_account(raw)
        if snapshot.authority_address != handle.authority:
            log.warning(
                "Nonce account %s authority is %s, handle says %s",
                handle.address,
                snapshot.authority_address,
                handle.authority,
            )
        log.debug("Read nonce %s from %s", snapshot.replay_value_b58, handle.address)
        return snapshot

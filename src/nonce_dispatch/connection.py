# nonce_dispatch/connection.py
"""
Persistent connections to landing service endpoints:
1. One httpx.AsyncClient per endpoint, opened at startup and closed at shutdown
2. Keep-alive probes so the remote never sees the connection idle past its timeout
3. A per-endpoint rate gate that queues sends instead of exceeding the remote quota
"""
import asyncio
import logging
import time
from collections.abc import Iterable
from contextlib import AsyncExitStack
from dataclasses import dataclass
from itertools import count
from typing import Any

import httpx

import nonce_dispatch.constants as C
from nonce_dispatch.config import EndpointConfig
from nonce_dispatch.errors import EndpointTimeoutError, NetworkError, UnknownEndpointError
from nonce_dispatch.txn_factory import SignedTransactionVariant

log = logging.getLogger("nonce_dispatch.connection")


@dataclass(frozen=True, slots=True)
class RawResponse:
    status_code: int
    body: Any  # parsed JSON, None if the body was not JSON


class RateGate:
    """Spaces acquisitions at least 1/rate seconds apart, in arrival order."""

    def __init__(self, rate: float) -> None:
        self.interval = 1.0 / rate
        self._lock = asyncio.Lock()
        self._next = 0.0

    async def acquire(self) -> None:
        async with self._lock:
            delay = self._next - time.monotonic()
            if delay > 0:
                await asyncio.sleep(delay)
            self._next = time.monotonic() + self.interval


class EndpointConnection:
    def __init__(
        self,
        config: EndpointConfig,
        *,
        timeout: float = C.SEND_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = config
        self.name = config.name
        self.base_url = config.base_url
        self.credential = config.credential
        self.timeout = timeout
        self.gate = RateGate(config.rate_limit)
        self.last_activity = time.monotonic()

        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._keepalive: asyncio.Task | None = None
        self._stop = asyncio.Event()
        self._last_probe = 0.0
        self._ids = count(1)

        self.sends = 0
        self.probes = 0
        self.probe_failures = 0

    # ============================================== #
    # ================= Lifecycle ================== #
    # ============================================== #

    async def open(self) -> None:
        if self._client is not None:
            return
        params = {self.config.credential_param: self.credential} if self.credential else None
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            params=params,
            timeout=self.timeout,
            transport=self._transport,
            # Pool must not drop the socket before the remote's idle timeout does
            limits=httpx.Limits(keepalive_expiry=self.config.idle_timeout),
        )
        self._stop.clear()
        self.last_activity = time.monotonic()
        self._keepalive = asyncio.create_task(self._keepalive_loop(), name=f"keepalive:{self.name}")
        log.info("Opened %s -> %s", self.name, self.base_url)

    async def close(self) -> None:
        self._stop.set()
        try:
            if self._keepalive is not None:
                task, self._keepalive = self._keepalive, None
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
                except Exception:
                    log.exception("Keep-alive task for %s had died", self.name)
        finally:
            if self._client is not None:
                client, self._client = self._client, None
                await client.aclose()
                log.info("Closed %s", self.name)

    async def __aenter__(self) -> "EndpointConnection":
        await self.open()
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    @property
    def is_open(self) -> bool:
        return self._client is not None

    def _require_client(self) -> httpx.AsyncClient:
        if self._client is None:
            raise RuntimeError(f"connection {self.name} is not open")
        return self._client

    # ============================================== #
    # =================== Traffic ================== #
    # ============================================== #

    async def send(self, variant: SignedTransactionVariant) -> RawResponse:
        client = self._require_client()
        await self.gate.acquire()
        payload = {
            "jsonrpc": "2.0",
            "id": next(self._ids),
            "method": "sendTransaction",
            "params": [variant.encoded(), {"encoding": "base64"}],
        }
        self.sends += 1
        log.debug("sendTransaction %s via %s (id=%s)", variant.signature_b58, self.name, payload["id"])
        try:
            r = await client.post("", json=payload)
        except httpx.TimeoutException as e:
            raise EndpointTimeoutError(f"{self.name}: {e.__class__.__name__}") from e
        except httpx.TransportError as e:
            raise NetworkError(f"{self.name}: {e.__class__.__name__}: {e}") from e
        self.last_activity = time.monotonic()

        try:
            body = r.json()
        except ValueError:
            body = None
        return RawResponse(status_code=r.status_code, body=body)

    async def keep_alive_probe(self) -> None:
        """Issue one cheap request to keep the connection warm. Never raises; not rate gated."""
        client = self._require_client()
        self._last_probe = time.monotonic()
        try:
            if self.config.probe_path:
                r = await client.get(self.config.probe_path)
            else:
                r = await client.post("", json={"jsonrpc": "2.0", "id": next(self._ids), "method": self.config.probe_method})
        except httpx.HTTPError as e:
            self.probe_failures += 1
            log.warning("Keep-alive probe to %s failed: %s", self.name, e.__class__.__name__)
            return
        except Exception:
            self.probe_failures += 1
            log.warning("Keep-alive probe to %s failed", self.name, exc_info=True)
            return
        self.probes += 1
        self.last_activity = time.monotonic()
        log.debug("Keep-alive probe to %s: HTTP %s", self.name, r.status_code)

    async def _keepalive_loop(self) -> None:
        interval = self.config.keepalive_interval
        while not self._stop.is_set():
            due = max(self.last_activity, self._last_probe) + interval
            delay = due - time.monotonic()
            if delay > 0:
                try:
                    await asyncio.wait_for(self._stop.wait(), timeout=delay)
                except asyncio.TimeoutError:
                    pass
                continue
            await self.keep_alive_probe()

    def idle_seconds(self) -> float:
        return time.monotonic() - self.last_activity

    def stats(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "url": self.base_url,
            "open": self.is_open,
            "sends": self.sends,
            "probes": self.probes,
            "probe_failures": self.probe_failures,
            "idle_seconds": round(self.idle_seconds(), 3),
        }


class EndpointPool:
    """All endpoint connections as one scoped resource."""

    def __init__(
        self,
        configs: Iterable[EndpointConfig],
        *,
        timeout: float = C.SEND_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.connections: dict[str, EndpointConnection] = {
            cfg.name: EndpointConnection(cfg, timeout=timeout, transport=transport) for cfg in configs
        }
        self._stack: AsyncExitStack | None = None

    async def __aenter__(self) -> "EndpointPool":
        stack = AsyncExitStack()
        try:
            for conn in self.connections.values():
                await stack.enter_async_context(conn)
        except BaseException:
            await stack.aclose()
            raise
        self._stack = stack
        return self

    async def __aexit__(self, *exc) -> None:
        if self._stack is not None:
            stack, self._stack = self._stack, None
            await stack.aclose()

    def __getitem__(self, name: str) -> EndpointConnection:
        try:
            return self.connections[name]
        except KeyError:
            raise UnknownEndpointError(f"no endpoint named {name!r}; known: {sorted(self.connections)}") from None

    def __contains__(self, name: str) -> bool:
        return name in self.connections

    @property
    def names(self) -> list[str]:
        return list(self.connections)

    def stats(self) -> list[dict[str, Any]]:
        return [c.stats() for c in self.connections.values()]

import asyncio
import logging
from collections.abc import Sequence

import nonce_dispatch.constants as C
from nonce_dispatch.connection import EndpointConnection, EndpointPool
from nonce_dispatch.errors import DispatchError, EndpointTimeoutError, RpcError, classify_response
from nonce_dispatch.nonce import NonceAccountHandle, NonceLedgerReader, NonceSnapshot
from nonce_dispatch.results import BatchResult, DispatchOutcome, aggregate
from nonce_dispatch.txn_factory import SignedTransactionVariant, TransactionFactory, TransferIntent

log = logging.getLogger("nonce_dispatch.dispatch")


class DispatchCoordinator:
    """Fans one transfer out to every endpoint, all variants racing for the same nonce.

    Only one variant can land, and which one is not known up front, so every
    endpoint is always attempted and every outcome is reported. Nothing is
    retried implicitly; use ``retry`` for a single endpoint.
    """

    def __init__(self, reader: NonceLedgerReader, pool: EndpointPool, *, send_timeout: float = C.SEND_TIMEOUT):
        self.reader = reader
        self.pool = pool
        self.send_timeout = send_timeout

    async def dispatch(
        self,
        intent: TransferIntent,
        handle: NonceAccountHandle,
        endpoints: Sequence[str] | None = None,
        *,
        timeout: float | None = None,
    ) -> BatchResult:
        # Bad names and addresses are rejected before the nonce read
        names = [c.name for c in self._connections(endpoints)]
        TransactionFactory(handle).validate(intent, names)
        snapshot = await self.reader.read(handle)
        return await self.dispatch_snapshot(intent, handle, snapshot, names, timeout=timeout)

    def _connections(self, endpoints: Sequence[str] | None) -> list[EndpointConnection]:
        names = list(self.pool.names if endpoints is None else endpoints)
        if len(set(names)) != len(names):
            raise ValueError(f"duplicate endpoints in {names}")
        return [self.pool[name] for name in names]

    async def dispatch_snapshot(
        self,
        intent: TransferIntent,
        handle: NonceAccountHandle,
        snapshot: NonceSnapshot,
        endpoints: Sequence[str] | None = None,
        *,
        timeout: float | None = None,
    ) -> BatchResult:
        # Everything that can fail locally fails here, before any send
        conns = self._connections(endpoints)
        names = [c.name for c in conns]
        factory = TransactionFactory(handle)
        variants = [factory.build(intent, snapshot.replay_value, name) for name in names]

        timeout = self.send_timeout if timeout is None else timeout
        log.info("Dispatching nonce %s to %s", snapshot.replay_value_b58, ", ".join(names))

        async with asyncio.TaskGroup() as tg:
            tasks = [
                tg.create_task(self._send_one(conn, variant, timeout), name=f"send:{conn.name}")
                for conn, variant in zip(conns, variants)
            ]

        batch = aggregate((t.result() for t in tasks), snapshot.replay_value)
        log.info(
            "Batch done: landed=%s ok=%s race_lost=%s errors=%s",
            batch.any_succeeded,
            [o.endpoint for o in batch.succeeded],
            [o.endpoint for o in batch.race_lost],
            [f"{o.endpoint}:{o.error_kind}" for o in batch.errors],
        )
        return batch

    async def retry(
        self,
        intent: TransferIntent,
        handle: NonceAccountHandle,
        snapshot: NonceSnapshot,
        endpoint: str,
        *,
        max_attempts: int = C.MAX_ATTEMPTS,
        backoff: float = C.RETRY_BACKOFF_BASE,
        timeout: float | None = None,
    ) -> DispatchOutcome:
        """Resend one endpoint's variant while it fails with a retryable error.

        Always signs against the ORIGINAL snapshot. Re-reading the nonce here
        could land a second transfer if a sibling already consumed the first.
        """
        conn = self.pool[endpoint]
        variant = TransactionFactory(handle).build(intent, snapshot.replay_value, endpoint)
        timeout = self.send_timeout if timeout is None else timeout
        delay = backoff

        attempt = 1
        while True:
            outcome = await self._send_one(conn, variant, timeout, attempt=attempt)
            if not outcome.retryable or attempt >= max_attempts:
                return outcome
            log.info("%s: %s, retrying in %.1fs (attempt %s/%s)", endpoint, outcome.error_kind, delay, attempt, max_attempts)
            await asyncio.sleep(delay)
            delay = min(delay * 2, C.RETRY_BACKOFF_MAX)
            attempt += 1

    async def _send_one(
        self,
        conn: EndpointConnection,
        variant: SignedTransactionVariant,
        timeout: float,
        *,
        attempt: int = 1,
    ) -> DispatchOutcome:
        """Send one variant. Never raises: every failure becomes an outcome."""
        try:
            async with asyncio.timeout(timeout):
                raw = await conn.send(variant)
            signature = classify_response(raw)
        except DispatchError as e:
            log.warning("%s: %s %s", conn.name, e.kind, e.detail)
            return DispatchOutcome.failure(conn.name, e, attempts=attempt)
        except TimeoutError:
            log.warning("%s: no response within %.1fs", conn.name, timeout)
            return DispatchOutcome.failure(conn.name, EndpointTimeoutError(f"no response within {timeout}s"), attempts=attempt)
        except Exception as e:
            log.error("%s: unexpected send failure", conn.name, exc_info=True)
            return DispatchOutcome.failure(conn.name, RpcError(f"{e.__class__.__name__}: {e}"), attempts=attempt)

        if signature != variant.signature_b58:
            log.warning("%s returned signature %s, expected %s", conn.name, signature, variant.signature_b58)
        log.info("%s accepted %s", conn.name, signature)
        return DispatchOutcome.success(conn.name, signature, attempts=attempt)

"""Fan-out dispatch against fake landing services sharing one fake ledger."""

from __future__ import annotations

import asyncio
import base64
import time
from unittest import IsolatedAsyncioTestCase

import httpx

from fakes import (
    BLOCKHASH_NOT_FOUND,
    FEE_RECIPIENTS,
    HANDLE,
    MAIN_RECIPIENT,
    NONCE_ADDRESS,
    PAYER,
    REPLAY,
    RPC_URL,
    FakeNetwork,
    endpoint_config,
    host_for,
    nonce_account_bytes,
    replay_value_of,
    rpc_error,
)
from nonce_dispatch.connection import EndpointPool
from nonce_dispatch.constants import ErrorKind
from nonce_dispatch.dispatch import DispatchCoordinator
from nonce_dispatch.errors import InvalidAddressError, MalformedAccountError, UnknownEndpointError
from nonce_dispatch.nonce import NonceAccountHandle, NonceLedgerReader, decode_nonce_account
from nonce_dispatch.txn_factory import TransferIntent

INTENT = TransferIntent(PAYER, MAIN_RECIPIENT, 1_000_000, FEE_RECIPIENTS, 100_000)


class DispatchTestCase(IsolatedAsyncioTestCase):
    names = ("DE", "NY")
    endpoint_overrides: dict = {}

    async def asyncSetUp(self) -> None:
        self.net = FakeNetwork()
        transport = httpx.MockTransport(self.net)
        self.rpc = httpx.AsyncClient(transport=transport)
        overrides = {"rate_limit": 100.0, **self.endpoint_overrides}
        self.pool = EndpointPool([endpoint_config(n, **overrides) for n in self.names], transport=transport)
        await self.pool.__aenter__()
        self.coordinator = DispatchCoordinator(NonceLedgerReader(self.rpc, RPC_URL), self.pool, send_timeout=2.0)

    async def asyncTearDown(self) -> None:
        await self.pool.__aexit__(None, None, None)
        await self.rpc.aclose()

    def sent_hosts(self) -> list[str]:
        return [h for h, p in self.net.requests if p.get("method") == "sendTransaction"]

    def assert_untouched(self) -> None:
        """Neither the nonce read nor any send happened."""
        self.assertEqual(self.net.count("getAccountInfo"), 0)
        self.assertEqual(self.sent_hosts(), [])


class TestDispatch(DispatchTestCase):
    async def test_one_lands_other_loses_race(self) -> None:
        self.net.reply(host_for("DE"), {"result": "sigDE"})
        self.net.reply(host_for("NY"), BLOCKHASH_NOT_FOUND)

        batch = await self.coordinator.dispatch(INTENT, HANDLE, ["DE", "NY"])

        self.assertTrue(batch.any_succeeded)
        self.assertEqual(batch.endpoints, ["DE", "NY"])
        de, ny = batch.outcomes
        self.assertTrue(de.ok)
        self.assertEqual(de.signature, "sigDE")
        self.assertFalse(ny.ok)
        self.assertIs(ny.error_kind, ErrorKind.NONCE_CONSUMED)
        self.assertEqual([o.endpoint for o in batch.race_lost], ["NY"])
        self.assertEqual(batch.errors, [])
        self.assertEqual(batch.replay_value, REPLAY)

    async def test_order_is_caller_order_not_completion_order(self) -> None:
        self.net.delays[host_for("DE")] = 0.2
        batch = await self.coordinator.dispatch(INTENT, HANDLE, ["DE", "NY"])
        self.assertEqual(batch.endpoints, ["DE", "NY"])
        # NY answered first, so it won the nonce
        self.assertEqual(self.net.landed, [host_for("NY")])
        self.assertTrue(batch.outcomes[1].ok)
        self.assertTrue(batch.outcomes[0].race_lost)

        batch = await self.coordinator.dispatch(INTENT, HANDLE, ["NY", "DE"])
        self.assertEqual(batch.endpoints, ["NY", "DE"])

    async def test_nonce_read_once_and_shared(self) -> None:
        await self.coordinator.dispatch(INTENT, HANDLE, ["DE", "NY"])
        self.assertEqual(self.net.count("getAccountInfo"), 1)
        replay_values = {replay_value_of(base64.b64decode(p["params"][0])) for p in self.net.sends()}
        self.assertEqual(replay_values, {REPLAY})

    async def test_default_endpoints_are_all_configured(self) -> None:
        batch = await self.coordinator.dispatch(INTENT, HANDLE)
        self.assertEqual(batch.endpoints, ["DE", "NY"])

    async def test_zero_successes_is_a_result(self) -> None:
        self.net.reply(host_for("DE"), rpc_error(403, "API key has expired"))
        self.net.reply(host_for("NY"), rpc_error(403, "Invalid method"))

        batch = await self.coordinator.dispatch(INTENT, HANDLE, ["DE", "NY"])

        self.assertFalse(batch.any_succeeded)
        self.assertEqual([o.error_kind for o in batch.outcomes], [ErrorKind.AUTH_EXPIRED, ErrorKind.METHOD_NOT_ALLOWED])
        self.assertEqual(batch.outcomes[0].detail, "API key has expired")
        self.assertEqual(len(batch.errors), 2)

    async def test_exception_in_one_endpoint_is_isolated(self) -> None:
        self.net.reply(host_for("DE"), httpx.ConnectError("connection reset by peer"))
        batch = await self.coordinator.dispatch(INTENT, HANDLE, ["DE", "NY"])
        self.assertIs(batch.outcomes[0].error_kind, ErrorKind.NETWORK)
        self.assertTrue(batch.outcomes[1].ok)

    async def test_server_error_status(self) -> None:
        self.net.reply(host_for("NY"), 503)
        batch = await self.coordinator.dispatch(INTENT, HANDLE, ["DE", "NY"])
        self.assertTrue(batch.outcomes[0].ok)
        self.assertIs(batch.outcomes[1].error_kind, ErrorKind.NETWORK)

    async def test_timeout_does_not_cancel_siblings(self) -> None:
        self.net.delays[host_for("DE")] = 1.0
        start = time.monotonic()
        batch = await self.coordinator.dispatch(INTENT, HANDLE, ["DE", "NY"], timeout=0.2)
        elapsed = time.monotonic() - start

        self.assertIs(batch.outcomes[0].error_kind, ErrorKind.TIMEOUT)
        self.assertTrue(batch.outcomes[1].ok)
        self.assertLess(elapsed, 0.8)
        # not retried
        self.assertEqual(len(self.net.sends(host_for("DE"))), 1)

    async def test_unknown_endpoint_fails_before_network(self) -> None:
        with self.assertRaises(UnknownEndpointError):
            await self.coordinator.dispatch(INTENT, HANDLE, ["DE", "SGP"])
        self.assert_untouched()

    async def test_duplicate_endpoint_rejected(self) -> None:
        with self.assertRaises(ValueError):
            await self.coordinator.dispatch(INTENT, HANDLE, ["DE", "DE"])
        self.assert_untouched()

    async def test_invalid_address_fails_before_network(self) -> None:
        bad = TransferIntent(PAYER, "not a real address", 1, FEE_RECIPIENTS, 1)
        with self.assertRaises(InvalidAddressError):
            await self.coordinator.dispatch(bad, HANDLE, ["DE", "NY"])
        self.assert_untouched()

    async def test_bad_fee_recipient_fails_before_network(self) -> None:
        bad = TransferIntent(PAYER, INTENT.main_recipient, 1, {**FEE_RECIPIENTS, "NY": "bad"}, 1)
        with self.assertRaises(InvalidAddressError):
            await self.coordinator.dispatch(bad, HANDLE, ["DE", "NY"])
        self.assert_untouched()

    async def test_foreign_authority_fails_before_network(self) -> None:
        foreign = NonceAccountHandle(NONCE_ADDRESS, INTENT.main_recipient)
        with self.assertRaises(InvalidAddressError):
            await self.coordinator.dispatch(INTENT, foreign, ["DE"])
        self.assert_untouched()

    async def test_malformed_account_fails_before_any_send(self) -> None:
        self.net.accounts[NONCE_ADDRESS] = nonce_account_bytes()[:60]
        with self.assertRaises(MalformedAccountError):
            await self.coordinator.dispatch(INTENT, HANDLE, ["DE", "NY"])
        self.assertEqual(self.sent_hosts(), [])

    async def test_empty_endpoint_list(self) -> None:
        batch = await self.coordinator.dispatch(INTENT, HANDLE, [])
        self.assertEqual(batch.outcomes, ())
        self.assertFalse(batch.any_succeeded)


class TestRace(DispatchTestCase):
    names = ("DE", "NY", "AMS", "TYO")

    async def test_at_most_one_success(self) -> None:
        self.net.delays.update({host_for("DE"): 0.03, host_for("NY"): 0.01, host_for("TYO"): 0.02})
        batch = await self.coordinator.dispatch(INTENT, HANDLE, list(self.names))

        self.assertEqual(len(batch.succeeded), 1)
        self.assertEqual(len(batch.race_lost), 3)
        self.assertEqual(batch.errors, [])
        self.assertEqual(len(self.net.landed), 1)

    async def test_parallel_not_sequential(self) -> None:
        self.net.delays.update({host_for("DE"): 0.3, host_for("NY"): 0.2, host_for("AMS"): 0.1, host_for("TYO"): 0.3})
        start = time.monotonic()
        batch = await self.coordinator.dispatch(INTENT, HANDLE, list(self.names))
        elapsed = time.monotonic() - start

        self.assertEqual(len(batch.outcomes), 4)
        self.assertGreaterEqual(elapsed, 0.3)
        # sum of delays is 0.9s
        self.assertLess(elapsed, 0.6)

    async def test_fresh_nonce_lands_again(self) -> None:
        first = await self.coordinator.dispatch(INTENT, HANDLE, list(self.names))
        self.net.accounts[NONCE_ADDRESS] = nonce_account_bytes(bytes(range(50, 82)), authority=PAYER.pubkey)
        second = await self.coordinator.dispatch(INTENT, HANDLE, list(self.names))

        self.assertTrue(first.any_succeeded)
        self.assertTrue(second.any_succeeded)
        self.assertNotEqual(first.replay_value, second.replay_value)


class TestRateLimited(DispatchTestCase):
    # client gate far above what NY tolerates
    endpoint_overrides = {"rate_limit": 1000.0}

    async def test_remote_rate_limit_does_not_abort_others(self) -> None:
        self.net.enforce_rate[host_for("NY")] = 1
        snapshot = decode_nonce_account(self.net.accounts[NONCE_ADDRESS])

        await self.coordinator.dispatch_snapshot(INTENT, HANDLE, snapshot, ["NY"])
        self.net.delays[host_for("DE")] = 0.05
        batch = await self.coordinator.dispatch_snapshot(INTENT, HANDLE, snapshot, ["DE", "NY"])

        de, ny = batch.outcomes
        self.assertIs(ny.error_kind, ErrorKind.RATE_LIMITED)
        self.assertEqual(ny.detail, "Rate limit exceeaded")
        self.assertTrue(ny.retryable)
        # DE was in flight while NY was refused and still finished
        self.assertIs(de.error_kind, ErrorKind.NONCE_CONSUMED)
        self.assertEqual(len(self.net.sends(host_for("DE"))), 1)


class TestRateGateKeepsUnderRemoteLimit(DispatchTestCase):
    names = ("NY",)
    endpoint_overrides = {"rate_limit": 4.0}

    async def test_gate_prevents_419(self) -> None:
        self.net.enforce_rate[host_for("NY")] = 5
        snapshot = decode_nonce_account(self.net.accounts[NONCE_ADDRESS])
        outcomes = []
        for _ in range(6):
            batch = await self.coordinator.dispatch_snapshot(INTENT, HANDLE, snapshot, ["NY"])
            outcomes.extend(batch.outcomes)
        self.assertNotIn(ErrorKind.RATE_LIMITED, [o.error_kind for o in outcomes])


class TestRetry(DispatchTestCase):
    async def asyncSetUp(self) -> None:
        await super().asyncSetUp()
        self.snapshot = decode_nonce_account(self.net.accounts[NONCE_ADDRESS])

    async def test_retries_until_success(self) -> None:
        limited = rpc_error(419, "Rate limit exceeaded")
        self.net.reply(host_for("DE"), limited, limited)

        outcome = await self.coordinator.retry(INTENT, HANDLE, self.snapshot, "DE", max_attempts=5, backoff=0.01)

        self.assertTrue(outcome.ok)
        self.assertEqual(outcome.attempts, 3)
        sent = self.net.sends(host_for("DE"))
        self.assertEqual(len(sent), 3)
        # same bytes every time
        self.assertEqual(len({p["params"][0] for p in sent}), 1)

    async def test_gives_up_after_max_attempts(self) -> None:
        self.net.reply(host_for("DE"), 502, 502, 502, 502)
        outcome = await self.coordinator.retry(INTENT, HANDLE, self.snapshot, "DE", max_attempts=2, backoff=0.01)
        self.assertIs(outcome.error_kind, ErrorKind.NETWORK)
        self.assertEqual(outcome.attempts, 2)

    async def test_does_not_retry_configuration_errors(self) -> None:
        self.net.reply(host_for("DE"), rpc_error(403, "API key has expired"))
        outcome = await self.coordinator.retry(INTENT, HANDLE, self.snapshot, "DE", max_attempts=5, backoff=0.01)
        self.assertIs(outcome.error_kind, ErrorKind.AUTH_EXPIRED)
        self.assertEqual(outcome.attempts, 1)

    async def test_retry_after_sibling_landed_cannot_double_spend(self) -> None:
        self.net.reply(host_for("DE"), rpc_error(419, "Rate limit exceeaded"))
        batch = await self.coordinator.dispatch_snapshot(INTENT, HANDLE, self.snapshot, ["DE", "NY"])
        self.assertTrue(batch.outcomes[1].ok)

        # the account has moved on; retry must still use the batch's nonce
        self.net.accounts[NONCE_ADDRESS] = nonce_account_bytes(bytes(range(50, 82)), authority=PAYER.pubkey)
        outcome = await self.coordinator.retry(INTENT, HANDLE, self.snapshot, "DE", backoff=0.01)

        self.assertIs(outcome.error_kind, ErrorKind.NONCE_CONSUMED)
        self.assertEqual(self.net.landed, [host_for("NY")])
        self.assertEqual(self.net.count("getAccountInfo"), 0)

    async def test_retry_unknown_endpoint(self) -> None:
        with self.assertRaises(UnknownEndpointError):
            await self.coordinator.retry(INTENT, HANDLE, self.snapshot, "SGP")


class TestConcurrentBatches(DispatchTestCase):
    async def test_two_batches_same_nonce(self) -> None:
        a, b = await asyncio.gather(
            self.coordinator.dispatch(INTENT, HANDLE, ["DE", "NY"]),
            self.coordinator.dispatch(INTENT, HANDLE, ["DE", "NY"]),
        )
        self.assertEqual(sum(len(x.succeeded) for x in (a, b)), 1)

from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

from nonce_dispatch.constants import ErrorKind
from nonce_dispatch.errors import DispatchError
from nonce_dispatch.keys import encode_address


@dataclass(frozen=True, slots=True)
class DispatchOutcome:
    """One endpoint's result: a signature on success, an error kind and detail otherwise."""

    endpoint: str
    signature: str | None = None
    error_kind: ErrorKind | None = None
    detail: str = ""
    attempts: int = 1

    @classmethod
    def success(cls, endpoint: str, signature: str, *, attempts: int = 1) -> "DispatchOutcome":
        return cls(endpoint=endpoint, signature=signature, attempts=attempts)

    @classmethod
    def failure(cls, endpoint: str, error: DispatchError, *, attempts: int = 1) -> "DispatchOutcome":
        return cls(endpoint=endpoint, error_kind=error.kind, detail=error.detail, attempts=attempts)

    @property
    def ok(self) -> bool:
        return self.error_kind is None

    @property
    def race_lost(self) -> bool:
        return self.error_kind is ErrorKind.NONCE_CONSUMED

    @property
    def retryable(self) -> bool:
        return self.error_kind is not None and self.error_kind.retryable

    def to_dict(self) -> dict[str, Any]:
        if self.ok:
            return {"endpoint": self.endpoint, "ok": True, "signature": self.signature, "attempts": self.attempts}
        return {
            "endpoint": self.endpoint,
            "ok": False,
            "error": self.error_kind.value,
            "detail": self.detail,
            "attempts": self.attempts,
        }


@dataclass(frozen=True, slots=True)
class BatchResult:
    outcomes: tuple[DispatchOutcome, ...]
    any_succeeded: bool
    replay_value: bytes | None = None

    @property
    def succeeded(self) -> list[DispatchOutcome]:
        return [o for o in self.outcomes if o.ok]

    @property
    def race_lost(self) -> list[DispatchOutcome]:
        """Endpoints that lost the nonce race. Expected, not a failure."""
        return [o for o in self.outcomes if o.race_lost]

    @property
    def errors(self) -> list[DispatchOutcome]:
        return [o for o in self.outcomes if not o.ok and not o.race_lost]

    @property
    def endpoints(self) -> list[str]:
        return [o.endpoint for o in self.outcomes]

    def to_dict(self) -> dict[str, Any]:
        return {
            "any_succeeded": self.any_succeeded,
            "replay_value": encode_address(self.replay_value) if self.replay_value else None,
            "outcomes": [o.to_dict() for o in self.outcomes],
        }


def aggregate(outcomes: Iterable[DispatchOutcome], replay_value: bytes | None = None) -> BatchResult:
    """Collapse per-endpoint outcomes into a batch result. Order is preserved as given."""
    outs = tuple(outcomes)
    return BatchResult(outcomes=outs, any_succeeded=any(o.ok for o in outs), replay_value=replay_value)

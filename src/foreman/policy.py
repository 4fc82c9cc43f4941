"""Bounded retry and escalation decisions.

The controller never hard-codes what happens after a failure. It asks a
policy object, and any object exposing ``decide`` can stand in for
:class:`RetryPolicy`.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal, Protocol

from foreman.config import DEFAULT_ROUTES, ExhaustionMode, PolicyConfig

Action = Literal["retry", "fix", "escalate", "fail"]
ACTIONS = ("retry", "fix", "escalate", "fail")

# Failure kinds that are never retried whatever the routing table says.
NON_RETRIABLE_KINDS = frozenset({"ScopeViolation", "GuardrailBlocked", "ApprovalDenied", "Fatal"})


class EscalationPolicy(Protocol):
    max_attempts: int

    def decide(
        self,
        phase: str,
        failure_kind: str,
        attempt_count: int,
        max_attempts: int | None = None,
    ) -> Action: ...


@dataclass(slots=True)
class RetryPolicy:
    max_attempts: int = 3
    on_exhaustion: ExhaustionMode = "fail"
    routes: dict[str, str] = field(default_factory=lambda: dict(DEFAULT_ROUTES))

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        unknown = sorted(
            f"{kind}={action}" for kind, action in self.routes.items() if action not in ACTIONS
        )
        if unknown:
            raise ValueError("Unknown policy actions: " + ", ".join(unknown))

    @classmethod
    def from_config(cls, config: PolicyConfig) -> RetryPolicy:
        return cls(
            max_attempts=max(1, int(config.max_attempts)),
            on_exhaustion=config.on_exhaustion,
            routes=dict(config.routes),
        )

    def _route(self, phase: str, failure_kind: str) -> Action:
        if failure_kind in NON_RETRIABLE_KINDS:
            return "fail"
        action = self.routes.get(failure_kind, "fail")
        # FIX only makes sense for verified work; a failing PLAN or FIX retries itself.
        if action == "fix" and phase not in {"TEST", "REVIEW"}:
            return "retry"
        return action  # type: ignore[return-value]

    def decide(
        self,
        phase: str,
        failure_kind: str,
        attempt_count: int,
        max_attempts: int | None = None,
    ) -> Action:
        bound = self.max_attempts if max_attempts is None else max(1, int(max_attempts))
        action = self._route(phase, failure_kind)
        if action in {"fail", "escalate"}:
            return action
        if attempt_count >= bound:
            return "escalate" if self.on_exhaustion == "escalate" else "fail"
        return action

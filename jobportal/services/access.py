from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Protocol, TypeVar

from jobportal.schemas.auth import SessionState

T = TypeVar("T")

DEFAULT_LOGIN_PATH = "/login"


class GateOutcome(str, Enum):
    WAIT = "wait"
    ALLOW = "allow"
    REDIRECT = "redirect"


@dataclass(slots=True, frozen=True)
class GateDecision:
    outcome: GateOutcome
    redirect_to: str | None = None
    replace_history: bool = False

    @property
    def allowed(self) -> bool:
        return self.outcome is GateOutcome.ALLOW


class SessionProvider(Protocol):
    @property
    def state(self) -> SessionState: ...


def decide(state: SessionState, *, login_path: str = DEFAULT_LOGIN_PATH) -> GateDecision:
    if state.loading:
        return GateDecision(GateOutcome.WAIT)
    if state.user is not None:
        return GateDecision(GateOutcome.ALLOW)
    # Replace history so back-navigation cannot re-enter the protected view.
    return GateDecision(GateOutcome.REDIRECT, redirect_to=login_path, replace_history=True)


class AccessGate:
    def __init__(self, provider: SessionProvider, *, login_path: str = DEFAULT_LOGIN_PATH) -> None:
        self._provider = provider
        self.login_path = login_path

    def check(self) -> GateDecision:
        return decide(self._provider.state, login_path=self.login_path)

    def guard(self, render: Callable[[], T]) -> T | GateDecision:
        decision = self.check()
        if decision.allowed:
            return render()
        return decision

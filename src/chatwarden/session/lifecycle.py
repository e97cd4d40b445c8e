"""
Session lifecycle state machine.

``transition`` is pure: given the current state, the reconnect attempt
counter and one event, it returns the next state, the next counter and the
side effects the controller must perform, in order. Nothing here touches a
socket, a timer or the disk.

    CREATING --socket ready--> AUTHENTICATING --open--> CONNECTED
    CONNECTED --close(logged out)--> TERMINATED
    CONNECTED --close(restart required)--> RESTART_PENDING (backoff delay)
    CONNECTED --close(other)--> RESTART_PENDING (fixed delay)
    RESTART_PENDING --timer--> CREATING
"""

from dataclasses import dataclass
from typing import Optional, Tuple, Union

from chatwarden.protocol.base import DisconnectReason
from chatwarden.session.record import LifecycleState


@dataclass(frozen=True)
class ReconnectPolicy:
    base_ms: int = 2000
    step_ms: int = 2000
    cap_ms: int = 30000
    fixed_ms: int = 5000

    def backoff_delay(self, attempt: int) -> int:
        """Delay before re-creating after a restart-required close."""
        return min(self.cap_ms, self.base_ms + max(0, attempt) * self.step_ms)

    @classmethod
    def from_config(cls, config) -> "ReconnectPolicy":
        return cls(
            base_ms=config.restart_base_ms,
            step_ms=config.restart_step_ms,
            cap_ms=config.restart_cap_ms,
            fixed_ms=config.reconnect_delay_ms,
        )


# ─── Events ──────────────────────────────────────────────────────────


@dataclass(frozen=True)
class SocketReady:
    pass


@dataclass(frozen=True)
class ChallengeRaised:
    qr: str


@dataclass(frozen=True)
class ConnectionOpened:
    pass


@dataclass(frozen=True)
class ConnectionClosed:
    reason: Optional[int] = None


@dataclass(frozen=True)
class RestartTimerFired:
    pass


@dataclass(frozen=True)
class DestroyRequested:
    pass


LifecycleEvent = Union[
    SocketReady,
    ChallengeRaised,
    ConnectionOpened,
    ConnectionClosed,
    RestartTimerFired,
    DestroyRequested,
]


# ─── Effects ─────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Subscribe:
    pass


@dataclass(frozen=True)
class ForwardChallenge:
    qr: str


@dataclass(frozen=True)
class PersistConnected:
    pass


@dataclass(frozen=True)
class Notify:
    event: str
    reason: Optional[int] = None


@dataclass(frozen=True)
class ReleaseConnection:
    pass


@dataclass(frozen=True)
class Unregister:
    pass


@dataclass(frozen=True)
class CancelJobs:
    pass


@dataclass(frozen=True)
class CancelReconnect:
    pass


@dataclass(frozen=True)
class DeleteStorage:
    pass


@dataclass(frozen=True)
class ScheduleRecreate:
    delay_ms: int
    notify_as: str  # "restarted" or "reconnected", emitted once re-creation succeeds


@dataclass(frozen=True)
class Recreate:
    pass


Effect = Union[
    Subscribe,
    ForwardChallenge,
    PersistConnected,
    Notify,
    ReleaseConnection,
    Unregister,
    CancelJobs,
    CancelReconnect,
    DeleteStorage,
    ScheduleRecreate,
    Recreate,
]


@dataclass(frozen=True)
class Transition:
    state: LifecycleState
    attempt: int
    effects: Tuple[Effect, ...] = ()


# States in which a live socket may still report a close.
_CLOSABLE = (
    LifecycleState.CREATING,
    LifecycleState.AUTHENTICATING,
    LifecycleState.CONNECTED,
)


def transition(
    state: LifecycleState,
    attempt: int,
    event: LifecycleEvent,
    policy: ReconnectPolicy = ReconnectPolicy(),
) -> Transition:
    unchanged = Transition(state, attempt)

    if state == LifecycleState.TERMINATED:
        return unchanged

    if isinstance(event, DestroyRequested):
        return Transition(
            LifecycleState.TERMINATED,
            attempt,
            (CancelReconnect(), ReleaseConnection(), CancelJobs(), Unregister(), DeleteStorage()),
        )

    if state == LifecycleState.CLOSING:
        return unchanged

    if isinstance(event, SocketReady):
        if state != LifecycleState.CREATING:
            return unchanged
        return Transition(LifecycleState.AUTHENTICATING, attempt, (Subscribe(),))

    if isinstance(event, ChallengeRaised):
        if state != LifecycleState.AUTHENTICATING:
            return unchanged
        return Transition(state, attempt, (ForwardChallenge(event.qr),))

    if isinstance(event, ConnectionOpened):
        if state == LifecycleState.RESTART_PENDING:
            return unchanged
        return Transition(
            LifecycleState.CONNECTED, 0, (PersistConnected(), Notify("connected"))
        )

    if isinstance(event, ConnectionClosed):
        if state not in _CLOSABLE:
            return unchanged
        closed = Notify("disconnected", reason=event.reason)

        if event.reason == DisconnectReason.LOGGED_OUT:
            return Transition(
                LifecycleState.TERMINATED,
                attempt,
                (closed, ReleaseConnection(), Unregister(), CancelJobs()),
            )

        if event.reason == DisconnectReason.RESTART_REQUIRED:
            return Transition(
                LifecycleState.RESTART_PENDING,
                attempt + 1,
                (
                    closed,
                    ReleaseConnection(),
                    ScheduleRecreate(policy.backoff_delay(attempt), "restarted"),
                ),
            )

        return Transition(
            LifecycleState.RESTART_PENDING,
            0,
            (closed, ReleaseConnection(), ScheduleRecreate(policy.fixed_ms, "reconnected")),
        )

    if isinstance(event, RestartTimerFired):
        if state != LifecycleState.RESTART_PENDING:
            return unchanged
        return Transition(LifecycleState.CREATING, attempt, (Recreate(),))

    return unchanged

"""Session lifecycle state machine

Tracks and enforces the valid state transitions of a sidecar session:

```
uninitialized -> starting -> ready <-> running
                             ready/running -> stopping -> stopped
any state -> failed
```

`ready` is the idle state (a run may be submitted), `running` means a run is
awaiting its terminal frame, and `stopped`/`failed` are terminal.
"""

import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional


class SessionState(str, Enum):
    """Lifecycle state of a sidecar session"""
    UNINITIALIZED = "uninitialized"
    STARTING = "starting"
    READY = "ready"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    FAILED = "failed"

    def is_terminal(self) -> bool:
        return self in (SessionState.STOPPED, SessionState.FAILED)

    def __str__(self):
        return self.value


_ALLOWED = {
    (SessionState.UNINITIALIZED, SessionState.STARTING),
    (SessionState.STARTING, SessionState.READY),
    (SessionState.STARTING, SessionState.STOPPING),
    (SessionState.READY, SessionState.RUNNING),
    (SessionState.READY, SessionState.STOPPING),
    (SessionState.RUNNING, SessionState.READY),
    (SessionState.RUNNING, SessionState.STOPPING),
    (SessionState.STOPPING, SessionState.STOPPED),
}


@dataclass
class LifecycleTransition:
    """Record of a single state transition"""
    from_state: SessionState
    to_state: SessionState
    timestamp: str
    reason: Optional[str] = None


class LifecycleError(Exception):
    """Invalid lifecycle transition"""

    def __init__(self, from_state: SessionState, to_state: SessionState):
        if from_state == to_state:
            super().__init__(f"already in state {to_state}")
        else:
            super().__init__(f"invalid lifecycle transition from {from_state} to {to_state}")
        self.from_state = from_state
        self.to_state = to_state


class LifecycleManager:
    """Holds the current state and the full transition history"""

    def __init__(self):
        self.state = SessionState.UNINITIALIZED
        self.history: List[LifecycleTransition] = []
        self._ready_since: Optional[float] = None

    def can_transition(self, to_state: SessionState) -> bool:
        # Failing is always allowed, except out of a terminal state
        if to_state == SessionState.FAILED:
            return not self.state.is_terminal()
        return (self.state, to_state) in _ALLOWED

    def transition(self, to_state: SessionState, reason: Optional[str] = None) -> None:
        """Move to to_state

        Raises:
            LifecycleError: If the transition is not allowed or already in that state
        """
        if self.state == to_state or not self.can_transition(to_state):
            raise LifecycleError(self.state, to_state)

        from_state = self.state
        self.state = to_state
        if to_state == SessionState.READY and self._ready_since is None:
            self._ready_since = time.monotonic()

        self.history.append(LifecycleTransition(
            from_state=from_state,
            to_state=to_state,
            timestamp=datetime.now(timezone.utc).isoformat(),
            reason=reason,
        ))

    def uptime(self) -> Optional[float]:
        """Seconds since the session first became ready, None if it never did"""
        if self._ready_since is None:
            return None
        return time.monotonic() - self._ready_since

    def last_reason(self) -> Optional[str]:
        """Reason attached to the most recent transition"""
        if not self.history:
            return None
        return self.history[-1].reason

"""Tests for lifecycle module"""

import pytest

from sidecar_host.lifecycle import LifecycleError, LifecycleManager, SessionState


# TEST046: Test a new manager starts uninitialized with no history
def test_initial_state():
    manager = LifecycleManager()
    assert manager.state == SessionState.UNINITIALIZED
    assert manager.history == []
    assert manager.uptime() is None
    assert manager.last_reason() is None


# TEST047: Test the normal path through ready and running records every transition
def test_normal_path():
    manager = LifecycleManager()
    manager.transition(SessionState.STARTING, "spawned")
    manager.transition(SessionState.READY, "hello")
    manager.transition(SessionState.RUNNING, "run r1")
    manager.transition(SessionState.READY, "final r1")
    manager.transition(SessionState.STOPPING)
    manager.transition(SessionState.STOPPED, "shutdown")

    assert manager.state == SessionState.STOPPED
    assert manager.state.is_terminal()
    assert [t.to_state for t in manager.history] == [
        SessionState.STARTING,
        SessionState.READY,
        SessionState.RUNNING,
        SessionState.READY,
        SessionState.STOPPING,
        SessionState.STOPPED,
    ]
    assert manager.history[2].reason == "run r1"
    assert manager.last_reason() == "shutdown"
    assert manager.uptime() is not None


# TEST048: Test transitions outside the graph are rejected
@pytest.mark.parametrize("path,bad", [
    ([], SessionState.READY),
    ([SessionState.STARTING], SessionState.RUNNING),
    ([SessionState.STARTING, SessionState.READY], SessionState.STOPPED),
    ([SessionState.STARTING, SessionState.READY], SessionState.READY),
])
def test_invalid_transitions(path, bad):
    manager = LifecycleManager()
    for state in path:
        manager.transition(state)

    assert not manager.can_transition(bad) or manager.state == bad
    with pytest.raises(LifecycleError):
        manager.transition(bad)


# TEST049: Test failing is allowed from any live state but never out of a terminal one
def test_failed_from_anywhere():
    for path in ([], [SessionState.STARTING], [SessionState.STARTING, SessionState.READY, SessionState.RUNNING]):
        manager = LifecycleManager()
        for state in path:
            manager.transition(state)
        manager.transition(SessionState.FAILED, "boom")
        assert manager.state == SessionState.FAILED

    assert not manager.can_transition(SessionState.FAILED)
    assert not manager.can_transition(SessionState.STARTING)


# TEST050: Test the lifecycle error message names both states
def test_lifecycle_error_message():
    error = LifecycleError(SessionState.READY, SessionState.STOPPED)
    assert "ready" in str(error)
    assert "stopped" in str(error)
    assert "already" in str(LifecycleError(SessionState.READY, SessionState.READY))

"""Supervisor and ProcessRegistry tests.

Test coverage:
- Spawning callables and external programs
- Exit status of callables (return value, exceptions, SystemExit)
- wait / wait_all, idempotence, unknown handles, SIGCHLD reaping
- terminate / kill, single and bulk, delivery failures
- terminate_with_timeout escalation
- Async variants
- Registry bookkeeping and supervisor isolation
"""

from __future__ import annotations

import errno
import os
import signal
import sys
import time
from pathlib import Path
from unittest import mock

import pytest

from conftest import wait_until
from prll.errors import SpawnError
from prll.supervisor import (
    EXEC_FAILURE_CODE,
    Liveness,
    ProcessRegistry,
    Supervisor,
    Termination,
)

pytestmark = pytest.mark.skipif(sys.platform == "win32", reason="POSIX fork model")


# =============================================================================
# Units run in children
# =============================================================================


def _sleep(seconds: float) -> None:
    time.sleep(seconds)


def _return_value() -> int:
    return 42


def _raise() -> None:
    raise RuntimeError("boom")


def _exit_with(code: int) -> None:
    sys.exit(code)


def _write_args(path: str, *args: object, **kwargs: object) -> None:
    Path(path).write_text(f"{args!r} {sorted(kwargs.items())!r}")


def _ignore_sigterm(ready_file: str) -> None:
    signal.signal(signal.SIGTERM, signal.SIG_IGN)
    Path(ready_file).touch()
    time.sleep(30)


# =============================================================================
# Spawning
# =============================================================================


class TestSpawnCallable:
    """spawn_callable()."""

    def test_returns_alive_handle(self, supervisor: Supervisor):
        """The new handle is registered as alive until waited on."""
        handle = supervisor.spawn_callable(_sleep, 0.3)

        assert handle > 0
        assert supervisor.state(handle) is Liveness.ALIVE
        assert handle in supervisor.alive()

        supervisor.wait(handle)
        assert supervisor.state(handle) is Liveness.REAPED
        assert supervisor.returncode(handle) == 0

    def test_return_value_is_ignored(self, supervisor: Supervisor):
        """The child exits 0 whatever the unit returns."""
        handle = supervisor.spawn_callable(_return_value)
        supervisor.wait(handle)
        assert supervisor.returncode(handle) == 0

    def test_arguments_are_passed(self, supervisor: Supervisor, tmp_path: Path):
        """Positional and keyword arguments reach the unit."""
        out = tmp_path / "args.txt"
        handle = supervisor.spawn_callable(_write_args, str(out), 1, "two", three=3)
        supervisor.wait(handle)

        assert out.read_text() == "(1, 'two') [('three', 3)]"

    def test_exception_exits_abnormally(self, supervisor: Supervisor, capfd):
        """An uncaught exception prints a traceback and exits 1."""
        handle = supervisor.spawn_callable(_raise)
        supervisor.wait(handle)

        assert supervisor.returncode(handle) == 1
        assert "RuntimeError: boom" in capfd.readouterr().err

    def test_system_exit_keeps_code(self, supervisor: Supervisor):
        """sys.exit(n) inside the unit becomes the exit code."""
        handle = supervisor.spawn_callable(_exit_with, 3)
        supervisor.wait(handle)
        assert supervisor.returncode(handle) == 3

    def test_fork_failure_raises_spawn_error(self, supervisor: Supervisor):
        """fork() failure surfaces as SpawnError and registers nothing."""
        error = OSError(errno.EAGAIN, "Resource temporarily unavailable")
        with mock.patch("prll.supervisor.os.fork", side_effect=error):
            with pytest.raises(SpawnError) as exc_info:
                supervisor.spawn_callable(_sleep, 0)

        assert exc_info.value.__cause__ is error
        assert "_sleep" in str(exc_info.value)
        assert len(supervisor.registry) == 0


class TestSpawnExternal:
    """spawn_external()."""

    def test_success(self, supervisor: Supervisor):
        handle = supervisor.spawn_external(["true"])
        supervisor.wait(handle)
        assert supervisor.returncode(handle) == 0

    def test_exit_code(self, supervisor: Supervisor):
        handle = supervisor.spawn_external(["sh", "-c", "exit 3"])
        supervisor.wait(handle)
        assert supervisor.returncode(handle) == 3

    def test_no_shell_interpolation(self, supervisor: Supervisor, tmp_path: Path):
        """Arguments are passed literally."""
        out = tmp_path / "out.txt"
        handle = supervisor.spawn_external(["sh", "-c", 'printf %s "$1" > "$2"', "sh", "$HOME *", str(out)])
        supervisor.wait(handle)
        assert out.read_text() == "$HOME *"

    def test_missing_program(self, supervisor: Supervisor, capfd):
        """A failed exec still yields a handle; the failure is in the exit code."""
        handle = supervisor.spawn_external(["prll-no-such-program-xyz"])
        assert handle > 0

        supervisor.wait(handle)
        assert supervisor.returncode(handle) == EXEC_FAILURE_CODE
        assert "cannot exec prll-no-such-program-xyz" in capfd.readouterr().err

    def test_empty_argv(self, supervisor: Supervisor):
        with pytest.raises(ValueError):
            supervisor.spawn_external([])
        assert len(supervisor.registry) == 0

    def test_label_is_command_line(self, supervisor: Supervisor):
        handle = supervisor.spawn_external(["sh", "-c", "exit 0"])
        supervisor.wait(handle)
        assert supervisor.registry.get(handle).label == "sh -c exit 0"


# =============================================================================
# Waiting
# =============================================================================


class TestWait:
    """wait() / wait_all() / poll()."""

    def test_double_wait(self, supervisor: Supervisor):
        """A second wait on a reaped handle returns at once."""
        handle = supervisor.spawn_external(["true"])
        supervisor.wait(handle)

        start = time.monotonic()
        supervisor.wait(handle)
        assert time.monotonic() - start < 0.5
        assert supervisor.returncode(handle) == 0

    def test_wait_unknown_handle(self, supervisor: Supervisor):
        """Waiting on a handle this supervisor never spawned is a no-op."""
        with mock.patch("prll.supervisor.os.waitpid") as waitpid:
            supervisor.wait(os.getpid())
        waitpid.assert_not_called()
        assert supervisor.state(os.getpid()) is Liveness.UNKNOWN

    def test_reaped_by_sigchld(self, supervisor: Supervisor):
        """The SIGCHLD path reaps children nobody is waiting on."""
        assert supervisor.sigchld_attached
        handle = supervisor.spawn_external(["sh", "-c", "exit 5"])

        assert wait_until(lambda: supervisor.registry.state(handle) is Liveness.REAPED)
        assert supervisor.returncode(handle) == 5

        supervisor.wait(handle)
        assert supervisor.returncode(handle) == 5

    def test_without_sigchld(self):
        """Without the handler, wait() reaps through waitpid alone."""
        sup = Supervisor(reap_on_sigchld=False)
        assert not sup.sigchld_attached

        handle = sup.spawn_external(["sh", "-c", "exit 2"])
        time.sleep(0.1)
        assert sup.state(handle) is Liveness.ALIVE

        sup.wait(handle)
        assert sup.returncode(handle) == 2

    def test_wait_all(self, supervisor: Supervisor):
        """wait_all() returns once every spawned child is reaped."""
        handles = [supervisor.spawn_callable(_sleep, delay) for delay in (0.1, 0.2, 0.3)]

        supervisor.wait_all()

        assert supervisor.alive() == []
        assert all(supervisor.state(h) is Liveness.REAPED for h in handles)

    def test_wait_all_empty(self, supervisor: Supervisor):
        supervisor.wait_all()
        assert len(supervisor.registry) == 0

    def test_poll(self):
        sup = Supervisor(reap_on_sigchld=False)
        handle = sup.spawn_callable(_sleep, 0.2)

        assert sup.poll(handle) is False
        assert wait_until(lambda: sup.poll(handle))
        assert sup.returncode(handle) == 0
        assert sup.poll(12345678) is True

    def test_reap(self):
        """reap() collects finished children without blocking."""
        sup = Supervisor(reap_on_sigchld=False)
        quick = sup.spawn_external(["true"])
        slow = sup.spawn_callable(_sleep, 5)
        try:
            assert wait_until(lambda: quick in sup.reap() or sup.state(quick) is Liveness.REAPED)
            assert sup.state(slow) is Liveness.ALIVE
            assert sup.reap() == []
        finally:
            sup.kill(slow)


# =============================================================================
# Termination
# =============================================================================


class TestTerminate:
    """terminate() / kill() and their bulk forms."""

    def test_forceful(self, supervisor: Supervisor):
        handle = supervisor.spawn_callable(_sleep, 30)

        start = time.monotonic()
        supervisor.terminate(handle, Termination.FORCEFUL)
        supervisor.wait(handle)

        assert time.monotonic() - start < 5
        assert supervisor.returncode(handle) == -signal.SIGKILL

    def test_graceful(self, supervisor: Supervisor):
        handle = supervisor.spawn_external(["sleep", "30"])
        supervisor.terminate(handle)

        assert supervisor.state(handle) is Liveness.REAPED
        assert supervisor.returncode(handle) == -signal.SIGTERM

    def test_kill(self, supervisor: Supervisor):
        handle = supervisor.spawn_external(["sleep", "30"])
        supervisor.kill(handle)
        assert supervisor.returncode(handle) == -signal.SIGKILL

    def test_terminate_reaped_handle(self, supervisor: Supervisor):
        """A reaped handle is never signalled again."""
        handle = supervisor.spawn_external(["true"])
        supervisor.wait(handle)

        with mock.patch("prll.supervisor.os.kill") as kill:
            supervisor.terminate(handle)
            supervisor.kill(handle)
        kill.assert_not_called()

    def test_terminate_unknown_handle(self, supervisor: Supervisor):
        with mock.patch("prll.supervisor.os.kill") as kill:
            supervisor.terminate(os.getpid(), Termination.FORCEFUL)
        kill.assert_not_called()

    def test_delivery_failure_is_not_an_error(self, supervisor: Supervisor):
        """A target that is already gone counts as terminated."""
        handle = supervisor.spawn_external(["true"])

        with mock.patch("prll.supervisor.os.kill", side_effect=ProcessLookupError(errno.ESRCH, "No such process")):
            supervisor.terminate(handle)

        assert supervisor.state(handle) is Liveness.REAPED

    def test_terminate_all(self, supervisor: Supervisor):
        handles = [supervisor.spawn_external(["sleep", "30"]) for _ in range(3)]

        supervisor.terminate_all(Termination.GRACEFUL)

        assert supervisor.alive() == []
        assert [supervisor.returncode(h) for h in handles] == [-signal.SIGTERM] * 3

    def test_kill_all(self, supervisor: Supervisor):
        handles = [supervisor.spawn_callable(_sleep, 30) for _ in range(3)]
        supervisor.kill_all()
        assert all(supervisor.returncode(h) == -signal.SIGKILL for h in handles)


class TestTerminateWithTimeout:
    """terminate_with_timeout() escalation."""

    def test_cooperating_child(self, supervisor: Supervisor):
        handle = supervisor.spawn_external(["sleep", "30"])
        supervisor.terminate_with_timeout(handle, timeout=5)
        assert supervisor.returncode(handle) == -signal.SIGTERM

    def test_escalates_to_kill(self, supervisor: Supervisor, tmp_path: Path):
        """A child ignoring SIGTERM is killed after the timeout."""
        ready = tmp_path / "ready"
        handle = supervisor.spawn_callable(_ignore_sigterm, str(ready))
        assert wait_until(ready.exists)

        start = time.monotonic()
        supervisor.terminate_with_timeout(handle, timeout=0.3)

        assert time.monotonic() - start >= 0.3
        assert supervisor.returncode(handle) == -signal.SIGKILL

    def test_default_timeout(self, supervisor: Supervisor, tmp_path: Path):
        assert supervisor.term_timeout == 0.5
        ready = tmp_path / "ready"
        handle = supervisor.spawn_callable(_ignore_sigterm, str(ready))
        assert wait_until(ready.exists)

        supervisor.terminate_all_with_timeout()
        assert supervisor.returncode(handle) == -signal.SIGKILL


# =============================================================================
# Async variants
# =============================================================================


class TestAsync:
    """Awaitable wrappers."""

    @pytest.mark.asyncio
    async def test_wait_async(self, supervisor: Supervisor):
        handle = supervisor.spawn_external(["sh", "-c", "sleep 0.1; exit 4"])
        await supervisor.wait_async(handle)
        assert supervisor.returncode(handle) == 4

    @pytest.mark.asyncio
    async def test_wait_all_async(self, supervisor: Supervisor):
        handles = [supervisor.spawn_callable(_sleep, 0.2) for _ in range(3)]

        start = time.monotonic()
        await supervisor.wait_all_async()

        assert time.monotonic() - start < 5
        assert all(supervisor.state(h) is Liveness.REAPED for h in handles)

    @pytest.mark.asyncio
    async def test_terminate_async(self, supervisor: Supervisor):
        handle = supervisor.spawn_external(["sleep", "30"])
        await supervisor.terminate_async(handle, Termination.FORCEFUL)
        assert supervisor.returncode(handle) == -signal.SIGKILL


# =============================================================================
# Registry and lifecycle
# =============================================================================


class TestProcessRegistry:
    """ProcessRegistry bookkeeping."""

    def test_unknown(self):
        registry = ProcessRegistry()
        assert registry.state(1) is Liveness.UNKNOWN
        assert registry.returncode(1) is None
        assert registry.get(1) is None
        assert 1 not in registry

    def test_reaped_exactly_once(self):
        registry = ProcessRegistry()
        registry.register(100, "unit")

        assert registry.mark_reaped(100, 0) is True
        assert registry.mark_reaped(100, 256) is False
        assert registry.state(100) is Liveness.REAPED
        assert registry.returncode(100) == 0

    def test_late_status_fills_in(self):
        """A status reported after an unknown-status reap is kept."""
        registry = ProcessRegistry()
        registry.register(100)

        assert registry.mark_reaped(100, None) is True
        assert registry.returncode(100) is None
        assert registry.mark_reaped(100, 3 << 8) is False
        assert registry.returncode(100) == 3

    def test_mark_unknown(self):
        registry = ProcessRegistry()
        assert registry.mark_reaped(100, 0) is False
        assert len(registry) == 0

    def test_alive_snapshot(self):
        registry = ProcessRegistry()
        for pid in (1, 2, 3):
            registry.register(pid)
        registry.mark_reaped(2, 0)

        snapshot = registry.alive()
        registry.register(4)

        assert snapshot == [1, 3]
        assert registry.alive_count == 3
        assert registry.has_alive()
        assert len(registry) == 4

    def test_recycled_pid_gets_new_entry(self):
        registry = ProcessRegistry()
        old = registry.register(100, "old")
        registry.mark_reaped(100, 0)

        new = registry.register(100, "new")

        assert new is not old
        assert old.state is Liveness.REAPED
        assert registry.state(100) is Liveness.ALIVE


class TestSupervisorLifecycle:
    """Isolation, context manager, close()."""

    def test_supervisors_are_isolated(self):
        first = Supervisor()
        second = Supervisor()
        try:
            handle = first.spawn_callable(_sleep, 0.1)

            assert second.state(handle) is Liveness.UNKNOWN
            second.wait(handle)
            assert first.state(handle) is not Liveness.UNKNOWN

            first.wait(handle)
            assert first.returncode(handle) == 0
            assert len(second.registry) == 0
        finally:
            first.close()
            second.close()

    def test_shared_registry(self):
        registry = ProcessRegistry()
        sup = Supervisor(registry, reap_on_sigchld=False)
        handle = sup.spawn_external(["true"])
        sup.wait(handle)
        assert registry.state(handle) is Liveness.REAPED

    def test_context_manager_stops_children(self):
        with Supervisor(term_timeout=0.5) as sup:
            handle = sup.spawn_external(["sleep", "30"])
        assert sup.state(handle) is Liveness.REAPED
        assert not sup.sigchld_attached

    def test_close_is_idempotent(self):
        sup = Supervisor()
        sup.close()
        sup.close()
        assert not sup.sigchld_attached

    def test_repr(self, supervisor: Supervisor):
        handle = supervisor.spawn_external(["true"])
        supervisor.wait(handle)
        assert "children=1" in repr(supervisor)
        assert "reaped" in repr(supervisor.registry.get(handle))

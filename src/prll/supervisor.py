"""Fork-based process supervision.

prll runtime module

This module provides:
- ProcessRegistry: pid -> liveness bookkeeping (unknown / alive / reaped)
- Supervisor: spawning of callables and external programs as child
  processes, with single and bulk wait / terminate / kill

Key design points:
- A handle is the child's pid; registries are instances, never module globals,
  so independent supervisors can coexist
- A SIGCHLD handler reaps, with WNOHANG, only pids some live supervisor
  knows to be alive; foreign children (subprocess, asyncio) are left alone
- wait() races that handler with a blocking waitpid(); whichever consumes the
  exit status first marks the entry reaped, the other sees ECHILD
- Reaped and unknown handles are never signalled, so a recycled pid cannot be
  hit by terminate()
"""

from __future__ import annotations

import logging
import os
import signal
import sys
import threading
import time
import traceback
import weakref
from collections.abc import Callable, Iterator, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, NoReturn

import anyio

from .config import get_config
from .debug import dbg, traced
from .errors import SignalDeliveryError, SpawnError

__all__ = [
    "Liveness",
    "Termination",
    "ProcessEntry",
    "ProcessRegistry",
    "Supervisor",
]

logger = logging.getLogger(__name__)

# Exit code of a child whose exec failed (shell convention for "not found")
EXEC_FAILURE_CODE = 127

# Poll period while waiting out a graceful termination
POLL_INTERVAL = 0.05


class Liveness(str, Enum):
    """Registry view of a handle."""

    UNKNOWN = "unknown"
    ALIVE = "alive"
    REAPED = "reaped"


class Termination(Enum):
    """How to ask a child to stop.

    - GRACEFUL: SIGTERM, the child may clean up (or ignore it)
    - FORCEFUL: SIGKILL, cannot be caught
    """

    GRACEFUL = signal.SIGTERM
    FORCEFUL = signal.SIGKILL

    @property
    def signum(self) -> int:
        return int(self.value)


@dataclass
class ProcessEntry:
    """Registry record of one spawned child.

    Attributes:
        pid: Process handle
        label: Callable name or command line, for logs
        state: ALIVE until the exit status is consumed, then REAPED
        status: Raw wait status (None while alive, or if consumed elsewhere)
        created_at: Spawn time
    """

    pid: int
    label: str
    state: Liveness = Liveness.ALIVE
    status: int | None = None
    created_at: datetime = field(default_factory=datetime.now)

    @property
    def returncode(self) -> int | None:
        """Exit code, negative signal number if killed by a signal."""
        if self.status is None:
            return None
        return os.waitstatus_to_exitcode(self.status)

    def __repr__(self) -> str:
        elapsed = (datetime.now() - self.created_at).total_seconds()
        return (
            f"ProcessEntry(pid={self.pid}, "
            f"label={self.label!r}, "
            f"state={self.state.value}, "
            f"returncode={self.returncode}, "
            f"elapsed={elapsed:.1f}s)"
        )


class ProcessRegistry:
    """Liveness of every child spawned through one supervisor.

    Entries are never removed. The only transition is ALIVE -> REAPED and it
    happens once; later reports for the same pid can at most fill in a
    status that was unknown.

    Thread safety: guarded by a re-entrant lock, since the SIGCHLD handler
    runs on the main thread and may interrupt a holder of the lock there.
    The handler path only changes existing entries, it never adds keys.
    """

    def __init__(self) -> None:
        self._entries: dict[int, ProcessEntry] = {}
        self._lock = threading.RLock()

    def register(self, pid: int, label: str = "") -> ProcessEntry:
        """Record a freshly forked child as alive.

        A pid the OS recycled from an earlier, reaped child gets a new entry.
        """
        with self._lock:
            previous = self._entries.get(pid)
            if previous is not None and previous.state is Liveness.ALIVE:
                logger.warning(f"Replacing stale entry {previous}, reaped outside prll")
            entry = ProcessEntry(pid=pid, label=label)
            self._entries[pid] = entry
        return entry

    def mark_reaped(self, pid: int, status: int | None) -> bool:
        """Mark ``pid`` reaped.

        Returns:
            True if this call performed the ALIVE -> REAPED transition
        """
        with self._lock:
            entry = self._entries.get(pid)
            if entry is None:
                return False
            if entry.state is Liveness.ALIVE:
                entry.status = status
                entry.state = Liveness.REAPED
                return True
            if entry.status is None and status is not None:
                entry.status = status
            return False

    def state(self, pid: int) -> Liveness:
        entry = self._entries.get(pid)
        return entry.state if entry is not None else Liveness.UNKNOWN

    def get(self, pid: int) -> ProcessEntry | None:
        return self._entries.get(pid)

    def returncode(self, pid: int) -> int | None:
        entry = self._entries.get(pid)
        return entry.returncode if entry is not None else None

    def alive(self) -> list[int]:
        """Snapshot of the handles currently alive."""
        with self._lock:
            return [pid for pid, entry in self._entries.items() if entry.state is Liveness.ALIVE]

    def has_alive(self) -> bool:
        return any(entry.state is Liveness.ALIVE for entry in list(self._entries.values()))

    @property
    def alive_count(self) -> int:
        return len(self.alive())

    def __iter__(self) -> Iterator[int]:
        """Every handle ever registered, alive or reaped (snapshot)."""
        with self._lock:
            return iter(list(self._entries))

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, pid: object) -> bool:
        return pid in self._entries


# SIGCHLD dispatch, shared by every supervisor of the process
_supervisors: "weakref.WeakSet[Supervisor]" = weakref.WeakSet()
_install_lock = threading.Lock()
_handler_installed = False
_previous_handler: Any = None


def _on_sigchld(signum: int, frame: Any) -> None:
    for supervisor in list(_supervisors):
        supervisor._reap_alive(claim_missing=False)
    if callable(_previous_handler):
        _previous_handler(signum, frame)


def _attach(supervisor: "Supervisor") -> bool:
    global _handler_installed, _previous_handler

    if threading.current_thread() is not threading.main_thread():
        return False
    with _install_lock:
        if not _handler_installed:
            _previous_handler = signal.signal(signal.SIGCHLD, _on_sigchld)
            _handler_installed = True
            logger.debug("SIGCHLD handler installed")
        _supervisors.add(supervisor)
    return True


def _detach(supervisor: "Supervisor") -> None:
    global _handler_installed, _previous_handler

    with _install_lock:
        _supervisors.discard(supervisor)
        if _supervisors or not _handler_installed:
            return
        if threading.current_thread() is not threading.main_thread():
            return
        previous = _previous_handler if _previous_handler is not None else signal.SIG_DFL
        signal.signal(signal.SIGCHLD, previous)
        _handler_installed = False
        _previous_handler = None
        logger.debug("SIGCHLD handler removed")


def _flush_stdio() -> None:
    for stream in (sys.stdout, sys.stderr):
        if stream is not None:
            try:
                stream.flush()
            except (OSError, ValueError):
                pass


def _label_of(unit: Callable[..., Any]) -> str:
    return getattr(unit, "__qualname__", None) or repr(unit)


def _system_exit_code(exc: SystemExit) -> int:
    if exc.code is None:
        return 0
    if isinstance(exc.code, int):
        return exc.code
    print(exc.code, file=sys.stderr)
    return 1


def _run_child(unit: Callable[..., Any], args: tuple[Any, ...], kwargs: dict[str, Any]) -> NoReturn:
    """Body of a forked child. Never returns to the caller's stack."""
    code = 0
    try:
        unit(*args, **kwargs)
    except SystemExit as e:
        code = _system_exit_code(e)
    except BaseException:
        traceback.print_exc()
        code = 1
    finally:
        _flush_stdio()
        os._exit(code)


def _exec_program(argv: list[str]) -> NoReturn:
    dbg("child execing (", ", ".join(argv), ")")
    try:
        os.execvp(argv[0], argv)
    except OSError as e:
        sys.stderr.write(f"prll: cannot exec {argv[0]}: {e.strerror or e}\n")
        _flush_stdio()
        os._exit(EXEC_FAILURE_CODE)


class Supervisor:
    """Spawns children and tracks them until they are reaped.

    Example:
        with Supervisor() as supervisor:
            cube = supervisor.spawn_callable(print_cubes, 1000)
            fetch = supervisor.spawn_external(["wget", "-q", "example.org"])
            supervisor.wait(cube)
            supervisor.wait(fetch)
            print(supervisor.returncode(fetch))

    Attributes:
        registry: Liveness bookkeeping for every child spawned here
        term_timeout: Default grace period of terminate_with_timeout()
    """

    def __init__(
        self,
        registry: ProcessRegistry | None = None,
        *,
        reap_on_sigchld: bool | None = None,
        term_timeout: float | None = None,
    ) -> None:
        """Create a supervisor.

        Args:
            registry: Registry to record children in (default: a new one)
            reap_on_sigchld: Subscribe to SIGCHLD (default from config).
                Only possible from the main thread; elsewhere waits rely on
                waitpid() alone.
            term_timeout: Grace period for terminate_with_timeout()
        """
        config = get_config()
        self.registry = registry if registry is not None else ProcessRegistry()
        self.term_timeout = term_timeout if term_timeout is not None else config.term_timeout

        reap = reap_on_sigchld if reap_on_sigchld is not None else config.reap_on_sigchld
        self._sigchld_attached = _attach(self) if reap else False
        if reap and not self._sigchld_attached:
            logger.debug("Not on the main thread, SIGCHLD reaping disabled")

    @property
    def sigchld_attached(self) -> bool:
        """Whether this supervisor is reaped from the SIGCHLD handler."""
        return self._sigchld_attached

    # -- spawning ---------------------------------------------------------

    @traced
    def spawn_callable(self, unit: Callable[..., Any], *args: Any, **kwargs: Any) -> int:
        """Run ``unit(*args, **kwargs)`` in a forked child.

        The child exits 0 once ``unit`` returns, whatever it returned. An
        uncaught exception prints its traceback and exits 1; SystemExit
        keeps its code.

        Returns:
            The child's pid, registered as alive

        Raises:
            SpawnError: fork() failed; nothing is registered
        """
        return self._fork(_label_of(unit), unit, args, kwargs)

    @traced
    def spawn_external(self, argv: Sequence[str]) -> int:
        """Run an external program in a forked child, without a shell.

        A failed exec is only visible through the exit status
        (EXEC_FAILURE_CODE) once the handle is waited on.

        Args:
            argv: Program name (looked up on PATH) followed by its arguments

        Raises:
            ValueError: ``argv`` is empty
            SpawnError: fork() failed
        """
        argv = [os.fspath(arg) for arg in argv]
        if not argv:
            raise ValueError("argv must name a program")
        return self._fork(" ".join(argv), _exec_program, (argv,), {})

    def _fork(
        self,
        label: str,
        unit: Callable[..., Any],
        args: tuple[Any, ...],
        kwargs: dict[str, Any],
    ) -> int:
        _flush_stdio()
        try:
            pid = os.fork()
        except OSError as e:
            raise SpawnError(label, e.strerror or str(e)) from e

        if pid == 0:
            _run_child(unit, args, kwargs)

        # An exit before this point is reaped by the next wait/poll/SIGCHLD
        self.registry.register(pid, label)
        dbg(f"forked child {pid} ({label})")
        return pid

    # -- reaping ----------------------------------------------------------

    def _try_reap(self, handle: int, claim_missing: bool) -> bool:
        try:
            pid, status = os.waitpid(handle, os.WNOHANG)
        except ChildProcessError:
            # Status already consumed by the other path (or by foreign code)
            if claim_missing:
                self.registry.mark_reaped(handle, None)
            return False
        if pid == handle:
            return self.registry.mark_reaped(handle, status)
        return False

    def _reap_alive(self, claim_missing: bool) -> list[int]:
        return [pid for pid in self.registry.alive() if self._try_reap(pid, claim_missing)]

    def reap(self) -> list[int]:
        """Reap every alive child that has terminated, without blocking.

        This is what the SIGCHLD handler does; call it directly when the
        handler is not installed.

        Returns:
            Handles that this call transitioned to reaped
        """
        reaped = self._reap_alive(claim_missing=False)
        for pid in reaped:
            dbg(f"reaped {pid}")
        return reaped

    def poll(self, handle: int) -> bool:
        """Non-blocking check; reaps ``handle`` if it has terminated.

        Returns:
            True if the handle is reaped (or unknown), False if still running
        """
        if self.registry.state(handle) is not Liveness.ALIVE:
            return True
        self._try_reap(handle, claim_missing=True)
        return self.registry.state(handle) is not Liveness.ALIVE

    # -- waiting ----------------------------------------------------------

    @traced
    def wait(self, handle: int) -> None:
        """Block until ``handle`` is reaped.

        Returns at once for handles already reaped and for handles this
        supervisor never spawned.
        """
        if self.registry.state(handle) is Liveness.UNKNOWN:
            dbg(f"{handle} was not spawned here, nothing to wait for")
            return

        while self.registry.state(handle) is Liveness.ALIVE:
            dbg(f"waiting on {handle}...")
            try:
                pid, status = os.waitpid(handle, 0)
            except ChildProcessError:
                self.registry.mark_reaped(handle, None)
                break
            if pid == handle:
                self.registry.mark_reaped(handle, status)
        dbg(f"{handle} terminated")

    @traced
    def wait_all(self) -> None:
        """Wait on every handle alive when the call starts."""
        for handle in self.registry.alive():
            self.wait(handle)
        dbg("all child processes have ended")

    # -- termination ------------------------------------------------------

    def _send_signal(self, handle: int, signum: int) -> None:
        try:
            os.kill(handle, signum)
        except (ProcessLookupError, PermissionError) as e:
            raise SignalDeliveryError(handle, signum, e.strerror or str(e)) from e

    @traced
    def terminate(self, handle: int, kind: Termination = Termination.GRACEFUL) -> None:
        """Signal ``handle`` and wait for it.

        A failed delivery (the process is already gone) counts as success.
        A GRACEFUL terminate of a child that ignores SIGTERM blocks forever;
        see terminate_with_timeout().
        """
        state = self.registry.state(handle)
        if state is not Liveness.ALIVE:
            dbg(f"{handle} is {state.value}, not signalling it")
            return

        signame = signal.Signals(kind.signum).name
        try:
            self._send_signal(handle, kind.signum)
        except SignalDeliveryError as e:
            dbg(f"couldn't send {signame} to {handle}, maybe it already died? ({e})")
        else:
            dbg(f"sent {signame} to {handle}")

        self.wait(handle)
        dbg(f"{handle} died")

    def kill(self, handle: int) -> None:
        """terminate() with SIGKILL."""
        self.terminate(handle, Termination.FORCEFUL)

    @traced
    def terminate_all(self, kind: Termination = Termination.GRACEFUL) -> None:
        """terminate() every handle alive when the call starts."""
        for handle in self.registry.alive():
            self.terminate(handle, kind)
        dbg(f"all child processes terminated ({kind.name.lower()})")

    def kill_all(self) -> None:
        """terminate_all() with SIGKILL."""
        self.terminate_all(Termination.FORCEFUL)

    @traced
    def terminate_with_timeout(self, handle: int, timeout: float | None = None) -> None:
        """SIGTERM, wait up to ``timeout`` seconds, then SIGKILL and wait.

        Args:
            handle: Child to stop
            timeout: Grace period (default: self.term_timeout)
        """
        if self.registry.state(handle) is not Liveness.ALIVE:
            return
        timeout = self.term_timeout if timeout is None else timeout

        try:
            self._send_signal(handle, signal.SIGTERM)
            dbg(f"sent SIGTERM to {handle}")
        except SignalDeliveryError as e:
            dbg(f"couldn't send SIGTERM to {handle}: {e}")

        deadline = time.monotonic() + timeout
        while not self.poll(handle):
            if time.monotonic() >= deadline:
                logger.debug(f"Child {handle} still running {timeout}s after SIGTERM, killing")
                self.kill(handle)
                return
            time.sleep(POLL_INTERVAL)

    def terminate_all_with_timeout(self, timeout: float | None = None) -> None:
        """terminate_with_timeout() every handle alive when the call starts."""
        for handle in self.registry.alive():
            self.terminate_with_timeout(handle, timeout)

    # -- async variants ---------------------------------------------------

    async def wait_async(self, handle: int) -> None:
        """Awaitable wait(); the blocking part runs in a worker thread."""
        await anyio.to_thread.run_sync(self.wait, handle)

    async def wait_all_async(self) -> None:
        """Awaitable wait_all(); the snapshot is waited on concurrently."""
        async with anyio.create_task_group() as tg:
            for handle in self.registry.alive():
                tg.start_soon(self.wait_async, handle)

    async def terminate_async(self, handle: int, kind: Termination = Termination.GRACEFUL) -> None:
        """Awaitable terminate()."""
        await anyio.to_thread.run_sync(self.terminate, handle, kind)

    # -- queries ----------------------------------------------------------

    def state(self, handle: int) -> Liveness:
        return self.registry.state(handle)

    def returncode(self, handle: int) -> int | None:
        """Exit code of a reaped handle (negative N if killed by signal N).

        None while alive, for unknown handles, and when the status was
        consumed outside this supervisor.
        """
        return self.registry.returncode(handle)

    def alive(self) -> list[int]:
        return self.registry.alive()

    # -- lifecycle --------------------------------------------------------

    def close(self) -> None:
        """Stop receiving SIGCHLD notifications. Children are left running."""
        if self._sigchld_attached:
            _detach(self)
            self._sigchld_attached = False

    def __enter__(self) -> "Supervisor":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        try:
            self.terminate_all_with_timeout()
        finally:
            self.close()

    def __repr__(self) -> str:
        return (
            f"Supervisor(children={len(self.registry)}, "
            f"alive={self.registry.alive_count}, "
            f"sigchld={self._sigchld_attached})"
        )

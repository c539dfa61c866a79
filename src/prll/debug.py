"""Flag-gated diagnostic channels.

Three independent switches, all off unless PRLL_DEBUG / PRLL_TRACE /
PRLL_VERBOSE say otherwise:

- debug: free-form messages via ``dbg()``; turning it on implies the other two
- trace: enter/exit lines written by functions wrapped with ``@traced``
- verbose: progress messages via ``vrb()``

Every channel is a plain ``logging`` logger under the ``prll`` namespace
(``prll.dbg``, ``prll.trace``, ``prll.vrb``), so the host application decides
where records end up. When a channel is switched on and nothing is configured
to receive them, a stderr handler is attached to the ``prll`` logger.

Example:
    from prll import debug
    debug.debug(True)

    @debug.traced
    def work(x):
        debug.dbg("working on ", x)
        return x * 2
"""

from __future__ import annotations

import functools
import inspect
import logging
import reprlib
import sys
import threading
from typing import Any, Callable, TypeVar

from .config import get_config

__all__ = [
    "LOG_FORMAT",
    "debug",
    "trace",
    "verbose",
    "reset",
    "dbg",
    "vrb",
    "traced",
]

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

_dbg_logger = logging.getLogger("prll.dbg")
_trace_logger = logging.getLogger("prll.trace")
_vrb_logger = logging.getLogger("prll.vrb")

_CHANNEL_LEVELS = {
    "debug": (_dbg_logger, logging.DEBUG),
    "trace": (_trace_logger, logging.DEBUG),
    "verbose": (_vrb_logger, logging.INFO),
}

# None = not set explicitly, fall back to config
_flags: dict[str, bool | None] = {"debug": None, "trace": None, "verbose": None}

_repr = reprlib.Repr()
_repr.maxstring = 60
_repr.maxother = 60

_local = threading.local()

F = TypeVar("F", bound=Callable[..., Any])


def _ensure_channel(name: str) -> None:
    channel_logger, level = _CHANNEL_LEVELS[name]
    channel_logger.setLevel(level)
    package_logger = logging.getLogger("prll")
    if not package_logger.hasHandlers():
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        package_logger.addHandler(handler)


def _flag(name: str, value: bool | None) -> bool:
    if value is not None:
        _flags[name] = bool(value)
        if value:
            _ensure_channel(name)
    current = _flags[name]
    if current is None:
        current = getattr(get_config(), name)
        if current:
            _flags[name] = True
            _ensure_channel(name)
    return bool(current)


def debug(flag: bool | None = None) -> bool:
    """Set the debug flag when ``flag`` is given; return its value."""
    return _flag("debug", flag)


def trace(flag: bool | None = None) -> bool:
    """Set the trace flag when ``flag`` is given; return it (or debug)."""
    current = _flag("trace", flag)
    return current or debug()


def verbose(flag: bool | None = None) -> bool:
    """Set the verbose flag when ``flag`` is given; return it (or debug)."""
    current = _flag("verbose", flag)
    return current or debug()


def reset() -> None:
    """Forget explicit settings so the next query reads the config again."""
    for name in _flags:
        _flags[name] = None


def dbg(*parts: Any) -> None:
    """Write the concatenated ``parts`` to the debug channel."""
    if debug():
        _ensure_channel("debug")
        _dbg_logger.debug("".join(str(part) for part in parts))


def vrb(*parts: Any) -> None:
    """Write the concatenated ``parts`` to the verbose channel."""
    if verbose():
        _ensure_channel("verbose")
        _vrb_logger.info("".join(str(part) for part in parts))


def _render_args(args: tuple[Any, ...], kwargs: dict[str, Any]) -> str:
    rendered = [_repr.repr(arg) for arg in args]
    rendered.extend(f"{key}={_repr.repr(value)}" for key, value in kwargs.items())
    return ", ".join(rendered)


def traced(func: F) -> F:
    """Log entry (with call site and arguments) and exit (with result) of ``func``.

    Nested traced calls are indented by depth, per thread. When the trace
    channel is off the wrapper only pays for one flag lookup.
    """
    name = func.__qualname__

    @functools.wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        if not trace():
            return func(*args, **kwargs)

        _ensure_channel("trace")
        caller = inspect.currentframe()
        caller = caller.f_back if caller is not None else None
        site = f"{caller.f_code.co_filename}:{caller.f_lineno}" if caller else "?"
        del caller

        depth = getattr(_local, "depth", 0)
        indent = "  " * depth
        _trace_logger.debug(f"{indent}-> {name}({_render_args(args, kwargs)}) at {site}")
        _local.depth = depth + 1
        try:
            result = func(*args, **kwargs)
        except BaseException as e:
            _trace_logger.debug(f"{indent}<- {name} raised {type(e).__name__}: {e}")
            raise
        finally:
            _local.depth = depth
        _trace_logger.debug(f"{indent}<- {name} = {_repr.repr(result)}")
        return result

    return wrapper  # type: ignore[return-value]

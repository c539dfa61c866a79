"""Callback-to-collection adapters for generator functions.

A producer reports its results by calling the ``emit`` function it is given
as first argument, instead of returning them:

    def squares(emit, n):
        for i in range(n):
            emit(i * i)

    collect(squares, 4)            # [0, 1, 4, 9]

    handle, results = pcollect(supervisor, squares, 4)
    supervisor.wait(handle)
    list(results)                  # [0, 1, 4, 9]

    square_list = as_collector(squares)
    square_list(4)                 # [0, 1, 4, 9]

``emit(x)`` records ``x``; ``emit(a, b, ...)`` records the tuple
``(a, b, ...)``; a bare ``emit()`` records ``()``.
"""

from __future__ import annotations

import functools
import logging
import pickle
import tempfile
from collections.abc import Callable, Sequence
from typing import IO, Any

from .debug import dbg, traced
from .errors import CollectionPendingError
from .supervisor import Liveness, Supervisor

__all__ = [
    "Emit",
    "Producer",
    "PendingCollection",
    "collect",
    "pcollect",
    "as_collector",
]

logger = logging.getLogger(__name__)

Emit = Callable[..., None]
Producer = Callable[..., Any]


def _item(values: tuple[Any, ...]) -> Any:
    if len(values) == 1:
        return values[0]
    return values


class _Accumulator:
    """The ``emit`` handed to a producer by collect()."""

    def __init__(self) -> None:
        self.items: list[Any] = []
        self.closed = False

    def __call__(self, *values: Any) -> None:
        if self.closed:
            raise RuntimeError("emit() called after the producer returned")
        self.items.append(_item(values))


@traced
def collect(producer: Producer, *args: Any, **kwargs: Any) -> list[Any]:
    """Run ``producer(emit, *args, **kwargs)`` here and return what it emitted.

    Exceptions raised by the producer propagate unchanged.
    """
    emit = _Accumulator()
    try:
        producer(emit, *args, **kwargs)
    finally:
        emit.closed = True
    return emit.items


def as_collector(producer: Producer) -> Callable[..., list[Any]]:
    """Wrap ``producer`` so that calling the result is ``collect(producer, ...)``."""

    @functools.wraps(producer)
    def collector(*args: Any, **kwargs: Any) -> list[Any]:
        return collect(producer, *args, **kwargs)

    return collector


def _spool_items(spool: IO[bytes], producer: Producer, args: tuple[Any, ...], kwargs: dict[str, Any]) -> None:
    """Child side of pcollect(): one pickle frame per emitted item."""

    def emit(*values: Any) -> None:
        # Pickle first so a failing item never leaves a torn frame behind
        frame = pickle.dumps(_item(values), protocol=pickle.HIGHEST_PROTOCOL)
        spool.write(frame)
        spool.flush()

    producer(emit, *args, **kwargs)


class PendingCollection(Sequence):
    """Items emitted by a pcollect() child, readable once it is reaped.

    Reading (len, indexing, iteration, comparison) before the handle is
    reaped raises CollectionPendingError. After that the items are loaded
    once and frozen. A producer that failed leaves the items it emitted
    before failing.

    Attributes:
        supervisor: Supervisor that spawned the child
        handle: The child's pid
    """

    def __init__(self, supervisor: Supervisor, handle: int, spool: IO[bytes]) -> None:
        self.supervisor = supervisor
        self.handle = handle
        self._spool: IO[bytes] | None = spool
        self._items: tuple[Any, ...] | None = None

    @property
    def ready(self) -> bool:
        """Whether the child has been reaped."""
        return self.supervisor.state(self.handle) is Liveness.REAPED

    @property
    def items(self) -> tuple[Any, ...]:
        """All emitted items.

        Raises:
            CollectionPendingError: The child has not been reaped yet
        """
        if self._items is None:
            if not self.ready:
                raise CollectionPendingError(self.handle)
            self._items = self._load()
        return self._items

    def _load(self) -> tuple[Any, ...]:
        spool = self._spool
        if spool is None:
            return ()
        items: list[Any] = []
        try:
            spool.seek(0)
            while True:
                try:
                    items.append(pickle.load(spool))
                except EOFError:
                    break
                except pickle.UnpicklingError as e:
                    logger.warning(f"Discarding unreadable output of {self.handle} after {len(items)} item(s): {e}")
                    break
        finally:
            spool.close()
            self._spool = None
        dbg(f"loaded {len(items)} item(s) from {self.handle}")
        return tuple(items)

    def close(self) -> None:
        """Release the spool without reading it."""
        if self._spool is not None:
            self._spool.close()
            self._spool = None

    def __getitem__(self, index: Any) -> Any:
        return self.items[index]

    def __len__(self) -> int:
        return len(self.items)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, PendingCollection):
            return self.items == other.items
        if isinstance(other, Sequence) and not isinstance(other, (str, bytes)):
            return list(self.items) == list(other)
        return NotImplemented

    __hash__ = None  # type: ignore[assignment]

    def __repr__(self) -> str:
        if self._items is not None:
            return f"PendingCollection(handle={self.handle}, items={list(self._items)!r})"
        return f"PendingCollection(handle={self.handle}, ready={self.ready})"


@traced
def pcollect(
    supervisor: Supervisor,
    producer: Producer,
    *args: Any,
    **kwargs: Any,
) -> tuple[int, PendingCollection]:
    """Run ``producer(emit, *args, **kwargs)`` in a child spawned by ``supervisor``.

    Returns at once. Call ``supervisor.wait(handle)`` before reading the
    collection.

    Returns:
        (handle, collection)

    Raises:
        SpawnError: fork() failed
    """
    spool = tempfile.TemporaryFile()
    try:
        handle = supervisor.spawn_callable(_spool_items, spool, producer, args, kwargs)
    except BaseException:
        spool.close()
        raise
    return handle, PendingCollection(supervisor, handle, spool)

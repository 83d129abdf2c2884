"""
Folding of the migration engine's event stream into a stack state snapshot.
"""

import logging
import queue
import threading
import time
from enum import Enum
from typing import Any, Callable, Dict, Iterable, Iterator, Optional

from .engine import AppliedChange, Diagnostic, MigrationEvent
from .errors import EngineError, MigrationCancelled, MigrationError, ProtocolError
from .snapshot import FORMAT_VERSION, StackStateSnapshot

logger = logging.getLogger(__name__)


class AggregatorState(Enum):
    """Lifecycle of an aggregation run. Both closed states are terminal."""
    OPEN = "open"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class _SnapshotBuilder:
    """Mutable accumulator owned by exactly one aggregator."""

    def __init__(self):
        self.raw: Dict[str, bytes] = {}
        self.descriptions: Dict[str, Dict[str, Any]] = {}

    def apply(self, change: AppliedChange) -> None:
        # later writes win
        for key, payload in change.raw:
            if key in self.raw:
                logger.debug(f"Raw entry {key} overwritten by a later change")
            self.raw[key] = payload

        for key, description in change.descriptions:
            if key in self.descriptions:
                logger.debug(f"Description {key} overwritten by a later change")
            self.descriptions[key] = description

    def build(self) -> StackStateSnapshot:
        return StackStateSnapshot(
            raw=self.raw,
            descriptions=self.descriptions,
            format_version=FORMAT_VERSION,
        )


class EventAggregator:
    """
    Fail-fast fold of migration events.

    Applied changes accumulate until the stream ends. A diagnostic or an
    event of unknown type closes the aggregator as failed and drops
    everything accumulated so far.
    """

    def __init__(self):
        self.state = AggregatorState.OPEN
        self.changes_applied = 0
        self._builder: Optional[_SnapshotBuilder] = _SnapshotBuilder()
        self._snapshot: Optional[StackStateSnapshot] = None

    def _ensure_open(self) -> None:
        if self.state is not AggregatorState.OPEN:
            raise ProtocolError(f"aggregator is already closed ({self.state.value})")

    def _fail(self) -> None:
        self.state = AggregatorState.FAILED
        self._builder = None

    def feed(self, event: MigrationEvent) -> None:
        """
        Apply one event.

        Raises:
            ProtocolError: On a diagnostic, an unknown event, or a closed aggregator
        """
        self._ensure_open()

        if isinstance(event, AppliedChange):
            self._builder.apply(event)
            self.changes_applied += 1
        elif isinstance(event, Diagnostic):
            self._fail()
            message = f"diagnostic ({event.kind}): {event.summary}"
            if event.detail:
                message += f": {event.detail}"
            raise ProtocolError(message)
        else:
            self._fail()
            raise ProtocolError(f"received unexpected event: {type(event).__name__}")

    def finish(self) -> StackStateSnapshot:
        """Close the stream successfully and return the final snapshot."""
        self._ensure_open()
        self._snapshot = self._builder.build()
        self._builder = None
        self.state = AggregatorState.SUCCEEDED
        logger.info(
            f"Event stream closed after {self.changes_applied} changes: "
            f"{len(self._snapshot.raw)} raw entries, {len(self._snapshot.descriptions)} descriptions"
        )
        return self._snapshot

    def abort(self) -> None:
        """Discard the partial snapshot. No-op once closed."""
        if self.state is AggregatorState.OPEN:
            self._fail()

    @property
    def snapshot(self) -> Optional[StackStateSnapshot]:
        """The final snapshot, only available after a successful finish."""
        return self._snapshot if self.state is AggregatorState.SUCCEEDED else None


_NEXT = object()
_STOP = object()
_END = object()

# how often a waiting receive re-checks the cancel event
_POLL_INTERVAL = 0.05
# how long a cancelled receiver gets to close the stream before it is abandoned
_CLOSE_GRACE = 0.25


def _receive(iterator: Iterator[MigrationEvent], demand: "queue.Queue", received: "queue.Queue") -> None:
    """Receiver thread: one ``next()`` per request, until stopped or the stream ends."""
    try:
        while demand.get() is _NEXT:
            try:
                event = next(iterator)
            except StopIteration:
                received.put((_END, None))
                return
            except BaseException as e:
                received.put((None, e))
                return
            received.put((event, None))
    finally:
        close = getattr(iterator, "close", None)
        if close is not None:
            try:
                close()
            except Exception as e:
                logger.warning(f"Failed to close the event stream: {e}")


def aggregate_events(
    events: Iterable[MigrationEvent],
    cancel: Optional[threading.Event] = None,
    timeout: Optional[float] = None,
    on_change: Optional[Callable[[AppliedChange], None]] = None,
) -> StackStateSnapshot:
    """
    Drain an event stream into a snapshot.

    One receive per iteration; exhaustion of the stream is the success
    marker. Receives run on a separate thread so that a receive blocked
    inside the engine still gives way to the cancel event and the timeout.
    Both are checked once more after the stream ends, so a cancelled or
    timed out run never yields a snapshot.

    Args:
        events: Event stream returned by the engine
        cancel: Set from another thread to cancel the run
        timeout: Seconds the whole stream may take
        on_change: Called after each applied change

    Returns:
        The final snapshot

    Raises:
        ProtocolError: On a diagnostic or unknown event
        MigrationCancelled: If cancelled or timed out
        EngineError: If receiving from the stream fails
    """
    aggregator = EventAggregator()
    deadline = time.monotonic() + timeout if timeout is not None else None

    def check_cancelled() -> None:
        if cancel is not None and cancel.is_set():
            raise MigrationCancelled("migration cancelled while streaming events")
        if deadline is not None and time.monotonic() > deadline:
            raise MigrationCancelled(f"migration timed out after {timeout}s")

    def wait_for_event():
        while True:
            check_cancelled()
            wait = _POLL_INTERVAL
            if deadline is not None:
                wait = max(0.0, min(wait, deadline - time.monotonic()))
            try:
                return received.get(timeout=wait)
            except queue.Empty:
                continue

    demand: "queue.Queue" = queue.Queue()
    received: "queue.Queue" = queue.Queue()
    receiver = threading.Thread(
        target=_receive,
        args=(iter(events), demand, received),
        name="stackmigrate-receive",
        daemon=True,
    )
    receiver.start()

    try:
        while True:
            check_cancelled()
            demand.put(_NEXT)
            event, error = wait_for_event()

            if error is not None:
                if isinstance(error, MigrationError) or not isinstance(error, Exception):
                    raise error
                raise EngineError(f"error receiving event: {error}", phase="receive") from error
            if event is _END:
                break

            aggregator.feed(event)
            if on_change is not None:
                on_change(event)

        check_cancelled()
    except BaseException:
        aggregator.abort()
        raise
    finally:
        demand.put(_STOP)
        receiver.join(_CLOSE_GRACE)
        if receiver.is_alive():
            logger.warning("Event receiver is still blocked; abandoning it")

    return aggregator.finish()

"""
In-memory kiosk counters and the session ledger.

The ``KioskMetricsStore`` is the single owner of per-kiosk counters and of
the bounded ledger of recent generation sessions.  It is created once in
the application lifespan and injected into the generation worker (which
writes to it) and the monitoring routes (which read it).

Concurrency contract
--------------------
All mutation happens on the event loop, and every mutating method is a
single synchronous step with no suspension point.  Reads from the
monitoring endpoint therefore always observe a state between two whole
mutations, and no lock is required.

Counter invariants
------------------
For every kiosk, at any instant::

    total == completed + failed + in_flight

``total`` and ``in_flight`` rise together when a session opens;
``in_flight`` falls and exactly one of ``completed``/``failed`` rises when
it closes.  ``rejected`` tallies admission and capacity rejections and is
deliberately outside that equation: rejected requests never become
sessions.  Counters only reset with the process.

Sessions are closed through the ``Session`` object rather than looked up
by identifier, so a session swept from the ledger while still processing
still closes its counters correctly when its worker finishes.
"""

import asyncio
import collections
import collections.abc
import contextlib
import dataclasses
import datetime
import enum
import typing

import structlog

import photobooth.exceptions

logger = structlog.get_logger()

DEFAULT_MAXIMUM_LEDGER_SESSIONS = 1_000


def utc_now() -> datetime.datetime:
    return datetime.datetime.now(datetime.UTC)


class SessionStatus(str, enum.Enum):
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclasses.dataclass
class Session:
    """
    One tracked attempt to produce one output image for one kiosk request.

    A session is created when its queued task starts executing and is
    owned by that task until it reaches a terminal status.  Status moves
    ``processing → completed | failed`` exactly once; ``completed_at`` is
    set in the same step.
    """

    session_identifier: str
    kiosk_identifier: str
    background_identifier: str
    demographic_attribute: str
    priority: int
    created_at: datetime.datetime
    prominence: str = "medium"
    status: SessionStatus = SessionStatus.PROCESSING
    completed_at: datetime.datetime | None = None
    output_reference: str | None = None
    error_description: str | None = None

    @property
    def is_terminal(self) -> bool:
        """True once the session is completed or failed."""
        return self.status is not SessionStatus.PROCESSING

    @property
    def duration_milliseconds(self) -> int | None:
        """Creation to terminal update, in milliseconds; ``None`` while processing."""
        if self.completed_at is None:
            return None
        return round((self.completed_at - self.created_at).total_seconds() * 1000)

    def _ensure_processing(self) -> None:
        if self.is_terminal:
            raise photobooth.exceptions.SessionTransitionError(
                f"Session {self.session_identifier} is already {self.status.value}.",
            )

    def mark_completed(self, output_reference: str, completed_at: datetime.datetime) -> None:
        """Move to ``completed``; raises ``SessionTransitionError`` if already terminal."""
        self._ensure_processing()
        self.status = SessionStatus.COMPLETED
        self.output_reference = output_reference
        self.completed_at = completed_at

    def mark_failed(self, error_description: str, completed_at: datetime.datetime) -> None:
        """Move to ``failed``; an empty description is recorded as ``Unknown error.``"""
        self._ensure_processing()
        self.status = SessionStatus.FAILED
        self.error_description = error_description or "Unknown error."
        self.completed_at = completed_at

    def to_summary(self) -> dict[str, typing.Any]:
        """Compact JSON-ready view used by the monitoring endpoint."""
        return {
            "id": self.session_identifier[:8],
            "kiosk_id": self.kiosk_identifier,
            "status": self.status.value,
            "background": self.background_identifier,
            "priority": self.priority,
            "created_at": self.created_at.isoformat(),
            "duration_milliseconds": self.duration_milliseconds,
            "error": self.error_description,
        }


@dataclasses.dataclass
class KioskCounters:
    """
    Lifetime tallies for one kiosk.

    ``rejected`` counts refused requests and sits outside
    ``total == completed + failed + in_flight``.  ``last_active`` is the
    creation time of the kiosk's most recent session.
    """

    total: int = 0
    completed: int = 0
    failed: int = 0
    rejected: int = 0
    in_flight: int = 0
    last_active: datetime.datetime | None = None

    def to_dict(self) -> dict[str, typing.Any]:
        """Counters as JSON-ready values, ``last_active`` in ISO 8601."""
        return {
            "total": self.total,
            "completed": self.completed,
            "failed": self.failed,
            "rejected": self.rejected,
            "in_flight": self.in_flight,
            "last_active": self.last_active.isoformat() if self.last_active else None,
        }


def describe_failure(error: BaseException) -> str:
    """Turn an exception escaping a generation attempt into a ledger message."""
    if isinstance(error, photobooth.exceptions.ServiceError):
        return error.detail
    if isinstance(error, asyncio.CancelledError):
        return "Generation was cancelled before completion."
    message = str(error)
    return f"{type(error).__name__}: {message}" if message else type(error).__name__


class KioskMetricsStore:
    """
    Owns per-kiosk counters and the bounded session ledger.

    Counters are pre-provisioned for every identifier passed in; asking
    for any other kiosk raises ``UnknownKioskError``.

    Args:
        kiosk_identifiers: The fixed kiosk population.
        maximum_sessions: Ledger capacity.  When exceeded, the oldest
            terminal session is evicted first, then the oldest session of
            any status.
        clock: Wall-clock source returning aware UTC datetimes.
    """

    def __init__(
        self,
        kiosk_identifiers: collections.abc.Iterable[str],
        maximum_sessions: int = DEFAULT_MAXIMUM_LEDGER_SESSIONS,
        clock: typing.Callable[[], datetime.datetime] = utc_now,
    ) -> None:
        if maximum_sessions < 1:
            raise ValueError("maximum_sessions must be at least 1.")
        self._counters_by_kiosk: dict[str, KioskCounters] = {
            kiosk_identifier: KioskCounters() for kiosk_identifier in kiosk_identifiers
        }
        self._sessions: collections.OrderedDict[str, Session] = collections.OrderedDict()
        self._maximum_sessions = maximum_sessions
        self._clock = clock
        self.started_at = clock()

    # ── Counters ──────────────────────────────────────────────────────────

    @property
    def kiosk_identifiers(self) -> list[str]:
        """Every provisioned kiosk, in registration order."""
        return list(self._counters_by_kiosk)

    def is_known_kiosk(self, kiosk_identifier: str | None) -> bool:
        """Whether ``kiosk_identifier`` has provisioned counters."""
        return kiosk_identifier is not None and kiosk_identifier in self._counters_by_kiosk

    def counters_for(self, kiosk_identifier: str) -> KioskCounters:
        """The live counters for ``kiosk_identifier``; raises ``UnknownKioskError`` for any other kiosk."""
        try:
            return self._counters_by_kiosk[kiosk_identifier]
        except KeyError:
            raise photobooth.exceptions.UnknownKioskError(
                detail=f"Kiosk '{kiosk_identifier}' is not registered with this service.",
            ) from None

    def record_rejection(self, kiosk_identifier: str | None) -> None:
        """Tally an admission or capacity rejection; unknown kiosks are ignored."""
        if self.is_known_kiosk(kiosk_identifier):
            self._counters_by_kiosk[kiosk_identifier].rejected += 1

    # ── Session lifecycle ─────────────────────────────────────────────────

    def open_session(
        self,
        session_identifier: str,
        kiosk_identifier: str,
        background_identifier: str,
        demographic_attribute: str,
        priority: int = 0,
        prominence: str = "medium",
    ) -> Session:
        """
        Create a ``processing`` session and count it against the kiosk.

        Raises:
            UnknownKioskError: When the kiosk has no provisioned counters.
            ValueError: When the session identifier is already in the ledger.
        """
        counters = self.counters_for(kiosk_identifier)
        if session_identifier in self._sessions:
            raise ValueError(f"Session {session_identifier} already exists.")

        now = self._clock()
        session = Session(
            session_identifier=session_identifier,
            kiosk_identifier=kiosk_identifier,
            background_identifier=background_identifier,
            demographic_attribute=demographic_attribute,
            priority=priority,
            prominence=prominence,
            created_at=now,
        )
        counters.total += 1
        counters.in_flight += 1
        counters.last_active = now
        self._sessions[session_identifier] = session
        self._evict_overflow()
        return session

    def complete_session(self, session: Session, output_reference: str) -> None:
        """
        Mark ``session`` completed and move its kiosk's counters from
        ``in_flight`` to ``completed``.

        Raises:
            SessionTransitionError: When the session is already terminal;
                counters are left untouched.
        """
        session.mark_completed(output_reference, self._clock())
        counters = self._counters_by_kiosk[session.kiosk_identifier]
        counters.completed += 1
        counters.in_flight -= 1

    def fail_session(self, session: Session, error_description: str) -> None:
        """Mark ``session`` failed and move its kiosk from ``in_flight`` to ``failed``."""
        session.mark_failed(error_description, self._clock())
        counters = self._counters_by_kiosk[session.kiosk_identifier]
        counters.failed += 1
        counters.in_flight -= 1

    @contextlib.contextmanager
    def track_session(
        self,
        session_identifier: str,
        kiosk_identifier: str,
        background_identifier: str,
        demographic_attribute: str,
        priority: int = 0,
        prominence: str = "medium",
    ) -> collections.abc.Iterator[Session]:
        """
        Open a session and guarantee it is terminal when the block exits.

        The block is expected to call ``complete_session`` on success.  Any
        exception leaving the block, cancellation included, marks the
        session failed with a description of the error and is re-raised.
        A block that exits normally without recording an outcome is also
        marked failed, so no session is left ``processing`` by its owner.
        """
        session = self.open_session(
            session_identifier=session_identifier,
            kiosk_identifier=kiosk_identifier,
            background_identifier=background_identifier,
            demographic_attribute=demographic_attribute,
            priority=priority,
            prominence=prominence,
        )
        try:
            yield session
        except BaseException as error:
            if not session.is_terminal:
                self.fail_session(session, describe_failure(error))
            raise
        if not session.is_terminal:
            self.fail_session(session, "Session ended without a recorded outcome.")

    # ── Ledger queries and housekeeping ───────────────────────────────────

    def get_session(self, session_identifier: str) -> Session | None:
        """Look up a ledger session; ``None`` once swept or evicted."""
        return self._sessions.get(session_identifier)

    @property
    def session_count(self) -> int:
        """Number of sessions currently held in the ledger."""
        return len(self._sessions)

    def recent_sessions(self, limit: int = 20) -> list[Session]:
        """Return up to ``limit`` most recently created sessions, oldest first."""
        if limit <= 0:
            return []
        return list(self._sessions.values())[-limit:]

    def sweep_sessions_created_before(self, cutoff: datetime.datetime) -> int:
        """
        Delete every session created before ``cutoff`` regardless of status.

        Stale ``processing`` sessions are removed too; their counters are
        left alone and still settle when (if) the owning worker finishes.
        """
        stale_identifiers = [
            session_identifier
            for session_identifier, session in self._sessions.items()
            if session.created_at < cutoff
        ]
        for session_identifier in stale_identifiers:
            del self._sessions[session_identifier]
        return len(stale_identifiers)

    def _evict_overflow(self) -> None:
        while len(self._sessions) > self._maximum_sessions:
            evicted_identifier = next(
                (identifier for identifier, session in self._sessions.items() if session.is_terminal),
                None,
            )
            if evicted_identifier is None:
                evicted_identifier = next(iter(self._sessions))
                logger.warning("session_ledger_evicted_processing_session", session_identifier=evicted_identifier)
            del self._sessions[evicted_identifier]

    def snapshot(self) -> dict[str, dict[str, typing.Any]]:
        """
        Return a JSON-ready copy of every kiosk's counters.

        The copy is taken in one synchronous step, so each kiosk's entry
        satisfies the counter equation even while sessions are running.
        """
        return {
            kiosk_identifier: counters.to_dict() for kiosk_identifier, counters in self._counters_by_kiosk.items()
        }

    def uptime_seconds(self) -> float:
        """Seconds since the store was created."""
        return (self._clock() - self.started_at).total_seconds()

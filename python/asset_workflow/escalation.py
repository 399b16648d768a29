"""
Escalation Scheduler.

A polling sweep that pushes stalled requests past their current stage once
the SLA window has elapsed. ``tick()`` runs a single sweep and is what tests
drive; ``start()``/``stop()`` run it on a background thread every
``sweep_interval_seconds`` until told to stop.

Each request is escalated in its own transaction. A failure is logged and the
sweep moves on; the request is picked up again on the next tick.
"""

import threading
from datetime import datetime
from typing import Callable

from sqlalchemy.orm import Session

from shared.logging import get_logger

from .approval import ApprovalStateMachine
from .clock import Clock, SystemClock, as_utc
from .config import WorkflowConfig
from .events import EventDispatcher
from .models import Request
from .reservation import ReservationCoordinator
from .store import AssetLedger, RequestStore

logger = get_logger(__name__)


def elapsed_hours(now: datetime, since: datetime) -> float:
    return (as_utc(now) - as_utc(since)).total_seconds() / 3600.0


def is_due(request: Request, now: datetime) -> bool:
    """True once ``escalate_after_hours`` have passed since the last action."""
    if request.last_action_at is None or not request.escalate_after_hours:
        return False
    return elapsed_hours(now, request.last_action_at) >= request.escalate_after_hours


class EscalationScheduler:
    """Periodic SLA sweep over pending requests."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        config: WorkflowConfig | None = None,
        clock: Clock | None = None,
        events: EventDispatcher | None = None,
    ):
        self._session_factory = session_factory
        self.config = config or WorkflowConfig()
        self._clock = clock or SystemClock()
        self._events = events or EventDispatcher()
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    def tick(self) -> int:
        """Run one sweep. Returns how many requests were escalated."""
        session = self._session_factory()
        try:
            return self._sweep(session)
        finally:
            session.close()

    def start(self) -> None:
        """Run the sweep on a background thread."""
        if self._thread is not None and self._thread.is_alive():
            return

        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run_loop,
            name="escalation-scheduler",
            daemon=True,
        )
        self._thread.start()
        logger.info(f"Escalation scheduler started (every {self.config.sweep_interval_seconds}s)")

    def stop(self, timeout: float = 30.0) -> None:
        """Signal stop and wait for the current sweep to finish."""
        self._stop_event.set()
        if self._thread is not None and self._thread.is_alive():
            self._thread.join(timeout=timeout)
        logger.info("Escalation scheduler stopped")

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------

    def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.tick()
            except Exception:
                logger.exception("Escalation sweep failed")
            self._stop_event.wait(timeout=self.config.sweep_interval_seconds)

    def _machine(self, session: Session) -> ApprovalStateMachine:
        requests = RequestStore(session)
        coordinator = ReservationCoordinator(
            AssetLedger(session), requests, self.config, self._clock, self._events
        )
        return ApprovalStateMachine(requests, coordinator, self.config, self._clock, self._events)

    def _sweep(self, session: Session) -> int:
        now = self._clock.now()
        stages = [stage.value for stage in self.config.escalatable_stages]
        # Snapshot first so a request escalated in this sweep is not seen again
        due = [
            (r.id, r.current_level, r.version)
            for r in RequestStore(session).escalation_candidates(stages)
            if is_due(r, now)
        ]
        session.commit()

        machine = self._machine(session)
        escalated = 0
        for request_id, level, version in due:
            if self._stop_event.is_set():
                break
            try:
                result = machine.escalate(request_id, expected_level=level, expected_version=version)
                session.commit()
                if result is not None:
                    escalated += 1
            except Exception:
                session.rollback()
                logger.exception(f"Escalation of request {request_id} failed; retrying next sweep")

        if due:
            logger.info(f"Escalation sweep escalated {escalated} of {len(due)} due request(s)")
        return escalated

"""Keeps the dashboard report current.

A refresh fetches incidents, aggregates and scores them synchronously and
publishes the numbers straight away. The AI narrative follows after a quiet
period: every refresh restarts the debounce timer, and while one AI request is
running new triggers do not start another. Polls only restart it when the
incidents in the window differ from the ones the last summary was built from.
"""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Callable, Optional, Sequence

from ai import GENERAL_REPORT_LABEL, SUMMARY_UNAVAILABLE, request_ai_summary
from identity import canonical_key_map
from incident_stats import DateRange, IncidentStats, aggregate, filter_by_range, teacher_outliers
from scoring import (
    AT_RISK_MIN_SEVERE,
    DEFAULT_WEIGHTS,
    STANDOUT_LIMIT,
    ScoringWeights,
    StudentScore,
    rank_at_risk,
    rank_standouts,
)
from settings import REPORT_DEBOUNCE_SECONDS, REPORT_POLL_SECONDS
from text_reconstructor import REPORT_HEADER_RE, split_into_items

logger = logging.getLogger(__name__)

STATE_IDLE = "idle"
STATE_FETCHING = "fetching"
STATE_AGGREGATING = "aggregating"
STATE_REQUESTING_AI = "requesting_ai"
STATE_RENDERING = "rendering"
STATE_ERROR = "error"


@dataclass
class ReportSnapshot:
    date_range: DateRange
    stats: IncidentStats
    standouts: list[StudentScore]
    at_risk: list[StudentScore]
    teacher_outliers: list[dict[str, Any]]
    generated_at: datetime
    summary_items: list[str] = field(default_factory=list)
    recommendation_items: list[str] = field(default_factory=list)
    alert_items: list[str] = field(default_factory=list)
    ai_pending: bool = False
    ai_error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "date_range": self.date_range.to_dict(),
            "stats": self.stats.to_dict(),
            "standouts": [item.to_dict() for item in self.standouts],
            "at_risk": [item.to_dict() for item in self.at_risk],
            "teacher_outliers": list(self.teacher_outliers),
            "generated_at": self.generated_at.isoformat(),
            "summary_items": list(self.summary_items),
            "recommendation_items": list(self.recommendation_items),
            "alert_items": list(self.alert_items),
            "ai_pending": self.ai_pending,
            "ai_error": self.ai_error,
        }


def build_snapshot(
    incidents: Sequence,
    students: Sequence = (),
    date_range: Optional[DateRange] = None,
    weights: ScoringWeights = DEFAULT_WEIGHTS,
    standout_limit: int = STANDOUT_LIMIT,
    at_risk_min_severe: int = AT_RISK_MIN_SEVERE,
) -> tuple[ReportSnapshot, list]:
    """Aggregate and rank ``incidents``; returns the snapshot and the incidents in the window."""
    date_range = date_range or DateRange()
    keys = canonical_key_map(incidents, students)
    stats = aggregate(incidents, date_range, keys=keys)
    window, _ = filter_by_range(incidents, date_range)
    snapshot = ReportSnapshot(
        date_range=date_range,
        stats=stats,
        standouts=rank_standouts(window, limit=standout_limit, weights=weights, keys=keys),
        at_risk=rank_at_risk(window, min_severe=at_risk_min_severe, weights=weights, keys=keys),
        teacher_outliers=teacher_outliers(window),
        generated_at=datetime.utcnow(),
    )
    return snapshot, window


def _window_fingerprint(date_range: DateRange, window: Sequence) -> tuple:
    """Identity of what an AI summary was built from: range plus incident ids and states."""
    return (
        date_range,
        tuple(sorted((incident.id, incident.status, bool(incident.resolved)) for incident in window)),
    )


class ReportOrchestrator:
    def __init__(
        self,
        fetch_incidents: Callable[[], Sequence],
        fetch_students: Callable[[], Sequence] | None = None,
        summarize: Callable[..., dict] = request_ai_summary,
        settings_source=None,
        debounce_seconds: float = REPORT_DEBOUNCE_SECONDS,
        timer_factory: Callable[..., Any] = threading.Timer,
    ):
        self._fetch_incidents = fetch_incidents
        self._fetch_students = fetch_students or (lambda: [])
        self._summarize = summarize
        self._settings_source = settings_source
        self.debounce_seconds = debounce_seconds
        self._timer_factory = timer_factory
        self._lock = threading.RLock()
        self._listeners: list[Callable[[str, Optional[ReportSnapshot]], None]] = []
        self._state = STATE_IDLE
        self._date_range = DateRange()
        self._snapshot: Optional[ReportSnapshot] = None
        self._window: list = []
        self._last_error: Optional[str] = None
        self._debounce_timer = None
        self._poll_timer = None
        self._poll_interval = REPORT_POLL_SECONDS
        self._polling = False
        self._ai_in_flight = False
        self._ai_fingerprint: Optional[tuple] = None

    @property
    def state(self) -> str:
        return self._state

    @property
    def snapshot(self) -> Optional[ReportSnapshot]:
        return self._snapshot

    @property
    def last_error(self) -> Optional[str]:
        return self._last_error

    @property
    def date_range(self) -> DateRange:
        return self._date_range

    @property
    def ai_in_flight(self) -> bool:
        return self._ai_in_flight

    def subscribe(self, listener: Callable[[str, Optional[ReportSnapshot]], None]) -> Callable[[], None]:
        """Register ``listener(state, snapshot)``; returns a function that removes it."""
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def _notify(self) -> None:
        with self._lock:
            listeners = list(self._listeners)
            state, snapshot = self._state, self._snapshot
        for listener in listeners:
            try:
                listener(state, snapshot)
            except Exception:
                logger.exception("Report listener failed")

    def _set_state(self, state: str) -> None:
        with self._lock:
            logger.debug("Report state %s -> %s", self._state, state)
            self._state = state

    def _scoring_options(self) -> dict[str, Any]:
        if self._settings_source is None:
            return {}
        return {
            "weights": self._settings_source.weights(),
            "standout_limit": self._settings_source.standout_limit,
            "at_risk_min_severe": self._settings_source.at_risk_min_severe,
        }

    def set_date_range(self, date_range: DateRange) -> Optional[ReportSnapshot]:
        with self._lock:
            self._date_range = date_range
        return self.refresh()

    def refresh(self) -> Optional[ReportSnapshot]:
        """Fetch, aggregate and publish; then (re)arm the AI debounce."""
        return self._refresh(force_ai=True)

    def _refresh(self, force_ai: bool) -> Optional[ReportSnapshot]:
        with self._lock:
            self._set_state(STATE_FETCHING)
            date_range = self._date_range
        self._notify()
        try:
            incidents = list(self._fetch_incidents())
            students = list(self._fetch_students())
        except Exception as exc:
            self._fail(f"could not load incidents: {exc}")
            return self._snapshot

        self._set_state(STATE_AGGREGATING)
        snapshot, window = build_snapshot(incidents, students, date_range, **self._scoring_options())
        with self._lock:
            previous = self._snapshot
            if previous is not None and previous.date_range == date_range:
                snapshot.summary_items = previous.summary_items
                snapshot.recommendation_items = previous.recommendation_items
                snapshot.alert_items = previous.alert_items
            fingerprint = _window_fingerprint(date_range, window)
            run_ai = bool(window) and (force_ai or fingerprint != self._ai_fingerprint)
            if not run_ai and previous is not None and previous.date_range == date_range:
                snapshot.ai_error = previous.ai_error
            snapshot.ai_pending = run_ai or self._ai_in_flight
            self._snapshot = snapshot
            self._window = window
            self._last_error = None
            self._set_state(STATE_RENDERING)
        self._notify()
        logger.info(
            "Report rendered: %s incidents, %s standouts, %s at risk",
            snapshot.stats.total,
            len(snapshot.standouts),
            len(snapshot.at_risk),
        )
        with self._lock:
            self._set_state(STATE_REQUESTING_AI if self._ai_in_flight else STATE_IDLE)
            if run_ai:
                self._schedule_ai()
        self._notify()
        return snapshot

    def retry(self) -> Optional[ReportSnapshot]:
        return self.refresh()

    def invalidate(self) -> Optional[ReportSnapshot]:
        """Explicit "data changed" signal from writers, e.g. after a new incident."""
        return self.refresh()

    def _schedule_ai(self) -> None:
        with self._lock:
            if self._ai_in_flight:
                logger.debug("AI request in flight, ignoring trigger")
                return
            if self._debounce_timer is not None:
                self._debounce_timer.cancel()
            timer = self._timer_factory(self.debounce_seconds, self._run_ai)
            timer.daemon = True
            self._debounce_timer = timer
            timer.start()

    def _run_ai(self) -> None:
        with self._lock:
            self._debounce_timer = None
            if self._ai_in_flight or self._snapshot is None:
                return
            self._ai_in_flight = True
            window = list(self._window)
            date_range = self._snapshot.date_range
            self._ai_fingerprint = _window_fingerprint(date_range, window)
            self._set_state(STATE_REQUESTING_AI)
        self._notify()
        try:
            result = self._summarize(incidents=window, student_label=GENERAL_REPORT_LABEL)
        except Exception as exc:
            logger.exception("AI summary request failed")
            result = {"error": str(exc)}
        finally:
            with self._lock:
                self._ai_in_flight = False

        with self._lock:
            current = self._snapshot
            if current is None or current.date_range != date_range:
                # the window changed while the request ran
                logger.info("Discarding AI summary for stale range %s", date_range)
                self._set_state(STATE_IDLE)
                if current is not None:
                    self._schedule_ai()
                stale = True
            else:
                stale = False
        if stale:
            self._notify()
            return

        error = result.get("error")
        self._set_state(STATE_RENDERING)
        with self._lock:
            self._snapshot = replace(
                current,
                summary_items=split_into_items(result.get("resumen"), REPORT_HEADER_RE) or [SUMMARY_UNAVAILABLE],
                recommendation_items=split_into_items(result.get("recomendaciones"), REPORT_HEADER_RE),
                alert_items=split_into_items(result.get("alertas"), REPORT_HEADER_RE),
                ai_pending=False,
                ai_error=error,
            )
            if error:
                self._last_error = f"AI summary unavailable: {error}"
                self._set_state(STATE_ERROR)
            else:
                self._set_state(STATE_IDLE)
        self._notify()

    def _fail(self, message: str) -> None:
        logger.warning("Report refresh failed: %s", message)
        with self._lock:
            self._last_error = message
            self._set_state(STATE_ERROR)
        self._notify()

    def start(self, poll_interval: Optional[float] = None) -> None:
        """Refresh now and then every ``poll_interval`` seconds until :meth:`stop`."""
        with self._lock:
            if poll_interval is not None:
                self._poll_interval = poll_interval
            self._polling = True
        self.refresh()
        self._schedule_poll()

    def _schedule_poll(self) -> None:
        with self._lock:
            if not self._polling:
                return
            timer = self._timer_factory(self._poll_interval, self._poll)
            timer.daemon = True
            self._poll_timer = timer
            timer.start()

    def _poll(self) -> None:
        if not self._polling:
            return
        # polling only asks the AI again when the window changed
        self._refresh(force_ai=False)
        self._schedule_poll()

    def stop(self) -> None:
        with self._lock:
            self._polling = False
            for timer in (self._poll_timer, self._debounce_timer):
                if timer is not None:
                    timer.cancel()
            self._poll_timer = None
            self._debounce_timer = None

from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta
from typing import Iterable, List, Optional

from apscheduler.schedulers.background import BackgroundScheduler

from application.events import (
    BettingClosed,
    BettingClosingSoon,
    PayoutsSettled,
    RaceEvent,
    RaceEventListener,
    RaceFinished,
    RaceOpened,
)
from application.race_engine import FinishOutcome, RaceEngine, utc_now
from domain.models import Race, RaceStatus

logger = logging.getLogger(__name__)

TICK_JOB_ID = "race-tick"
WARNING_JOB_ID = "race-warning"
MAINTENANCE_JOB_ID = "maintenance"


class RaceScheduler:
    """
    Time-driven driver of the race engine.

    Every tick finishes the current race and opens the next one; a warning
    job fires `warning_lead` before each tick and a maintenance job sweeps
    up stale races and expired picks. What happened is reported to the
    listeners as events; the scheduler itself never talks to Telegram.
    """

    def __init__(
        self,
        engine: RaceEngine,
        interval: timedelta = timedelta(minutes=10),
        warning_lead: timedelta = timedelta(minutes=1),
        maintenance_interval: timedelta = timedelta(minutes=30),
        listeners: Optional[Iterable[RaceEventListener]] = None,
        scheduler: Optional[BackgroundScheduler] = None,
        clock=utc_now,
    ) -> None:
        self._engine = engine
        self._interval = interval
        self._warning_lead = warning_lead
        self._maintenance_interval = maintenance_interval
        self._listeners: List[RaceEventListener] = list(listeners or [])
        self._scheduler = scheduler or BackgroundScheduler(timezone="UTC")
        self._clock = clock
        # One tick, warning or maintenance pass at a time in this process.
        self._lock = threading.RLock()

    def add_listener(self, listener: RaceEventListener) -> None:
        self._listeners.append(listener)

    def start(self) -> None:
        first_tick = self.reconcile_on_startup()
        interval_seconds = int(self._interval.total_seconds())

        self._scheduler.add_job(
            self.run_tick,
            "interval",
            seconds=interval_seconds,
            next_run_time=first_tick,
            id=TICK_JOB_ID,
            coalesce=True,
            max_instances=1,
            replace_existing=True,
        )

        if timedelta(0) < self._warning_lead < self._interval:
            first_warning = first_tick - self._warning_lead
            if first_warning <= self._clock():
                first_warning += self._interval
            self._scheduler.add_job(
                self.send_warning,
                "interval",
                seconds=interval_seconds,
                next_run_time=first_warning,
                id=WARNING_JOB_ID,
                coalesce=True,
                max_instances=1,
                replace_existing=True,
            )

        self._scheduler.add_job(
            self.run_maintenance,
            "interval",
            seconds=int(self._maintenance_interval.total_seconds()),
            id=MAINTENANCE_JOB_ID,
            coalesce=True,
            max_instances=1,
            replace_existing=True,
        )

        self._scheduler.start()
        logger.info(
            "Race scheduler started: races every %s, first tick at %s",
            self._interval,
            first_tick.isoformat(),
        )

    def shutdown(self) -> None:
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
            logger.info("Race scheduler stopped")

    def run_tick(self) -> Optional[Race]:
        """Finish the current race (if any) and open a new one."""

        with self._lock:
            try:
                current = self._engine.get_open_race()
                if current is not None:
                    self._finish(current.race_id, recovered=False)
                return self._open_race()
            except Exception:
                logger.exception("Scheduled race tick failed")
                return None

    def run_manual_tick(self) -> Optional[Race]:
        """
        Tick now, then move the tick and warning jobs so the new race gets
        a full betting window.
        """

        race = self.run_tick()
        if race is not None:
            self._reschedule(self._clock() + self._interval)
        return race

    def next_tick_at(self) -> Optional[datetime]:
        job = self._scheduler.get_job(TICK_JOB_ID)
        if job is None:
            return None
        return job.next_run_time

    def _reschedule(self, next_tick: datetime) -> None:
        if self._scheduler.get_job(TICK_JOB_ID) is not None:
            self._scheduler.modify_job(TICK_JOB_ID, next_run_time=next_tick)
        if self._scheduler.get_job(WARNING_JOB_ID) is not None:
            self._scheduler.modify_job(
                WARNING_JOB_ID, next_run_time=next_tick - self._warning_lead
            )
        logger.info("Next race tick moved to %s", next_tick.isoformat())

    def send_warning(self) -> None:
        with self._lock:
            try:
                race = self._engine.get_open_race()
            except Exception:
                logger.exception("Could not load the open race for the warning")
                return
            if race is None or race.status != RaceStatus.BETTING_OPEN:
                return
            minutes_left = max(int(self._warning_lead.total_seconds() // 60), 1)
            self._emit(BettingClosingSoon(race=race, minutes_left=minutes_left))

    def run_maintenance(self) -> List[FinishOutcome]:
        with self._lock:
            try:
                outcomes = self._engine.recover_stale_races()
                for outcome in outcomes:
                    self._emit_outcome(outcome, recovered=True)
                self._engine.cleanup_expired_selections()
                return outcomes
            except Exception:
                logger.exception("Maintenance pass failed")
                return []

    def reconcile_on_startup(self) -> datetime:
        """
        Bring storage back to a sane state after a restart and return when
        the first tick should run.

        A race whose closing time already passed is finished now, exactly
        once; a younger one is left open and the first tick is lined up
        with its closing time.
        """

        with self._lock:
            now = self._clock()
            for outcome in self._engine.recover_stale_races():
                self._emit_outcome(outcome, recovered=True)

            current = self._engine.get_open_race()
            if current is not None:
                closes_at = current.start_time + self._interval
                if closes_at > now:
                    logger.info(
                        "Resuming race %s, betting closes at %s",
                        current.race_id,
                        closes_at.isoformat(),
                    )
                    return closes_at
                logger.warning("Race %s overran its closing time; finishing it", current.race_id)
                self._finish(current.race_id, recovered=True)

            self._open_race()
            return now + self._interval

    def _finish(self, race_id: str, recovered: bool) -> Optional[FinishOutcome]:
        outcome = self._engine.finish_race(race_id)
        if outcome is not None:
            self._emit_outcome(outcome, recovered=recovered)
        return outcome

    def _open_race(self) -> Optional[Race]:
        result = self._engine.create_race()
        if not result.success:
            return None
        self._emit(RaceOpened(race=result.race))
        return result.race

    def _emit_outcome(self, outcome: FinishOutcome, recovered: bool) -> None:
        if outcome.betting_closed:
            self._emit(BettingClosed(race=outcome.race))
        self._emit(RaceFinished(race=outcome.race, recovered=recovered))
        self._emit(PayoutsSettled(race=outcome.race, report=outcome.report))

    def _emit(self, event: RaceEvent) -> None:
        for listener in self._listeners:
            try:
                listener(event)
            except Exception:
                logger.exception("Listener failed on %s", type(event).__name__)

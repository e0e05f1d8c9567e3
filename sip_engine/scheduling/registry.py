"""Durable schedule registry and job transport backed by the database.

Triggers live in ``schedule_triggers``, one row per plan, keyed by
``sip-scheduler-<plan_id>``. Each trigger carries a cron pattern and a
fixed payload. enqueue_due() turns due triggers into rows in
``execution_jobs``; the dispatch worker claims jobs one at a time.

Delivery is at-least-once: a claimed job holds a lease, and a job whose
lease expires without complete()/fail() (process crash, shutdown mid-job)
is handed out again. fail() implements the transport-level retry with
exponential backoff, independent of the execution engine's own retries.

All operations take the registry lock and use their own short-lived
session, so the reconciler and the worker can call them concurrently.
"""

import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from croniter import croniter
from loguru import logger
from sqlalchemy import and_, func, or_
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from sip_engine.config.scheduler import RegistryConfig
from sip_engine.data.models import ExecutionJob, ScheduleTrigger
from sip_engine.errors import RegistryClosedError
from sip_engine.utils.cadence import cron_pattern
from sip_engine.utils.timezone import utc_now

JOB_PENDING = "pending"
JOB_ACTIVE = "active"
JOB_COMPLETED = "completed"
JOB_FAILED = "failed"


@dataclass(frozen=True)
class TriggerInfo:
    """Read-only view of a registered trigger."""

    id: str
    plan_id: int
    pattern: str
    payload: dict
    next_fire_at: datetime
    anchor_at: Optional[datetime] = None


@dataclass(frozen=True)
class JobInfo:
    """A claimed job handed to the dispatch worker."""

    id: int
    trigger_id: Optional[str]
    plan_id: int
    payload: dict
    attempts_made: int
    max_attempts: int
    redelivered: bool = False


class ScheduleRegistry:
    """Recurring triggers plus a leased job queue.

    Example:
        >>> registry = ScheduleRegistry(get_session_factory())
        >>> registry.upsert_trigger(plan)
        'sip-scheduler-42'
        >>> [t.id for t in registry.list_triggers()]
        ['sip-scheduler-42']
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        config: Optional[RegistryConfig] = None,
        clock: Callable[[], datetime] = utc_now,
        owned_engine: Optional[Engine] = None,
    ):
        """Initialize the registry.

        Args:
            session_factory: Factory for registry sessions
            config: Registry/transport settings
            clock: Naive-UTC clock, injectable for tests
            owned_engine: Engine to dispose on close(), if the registry owns it
        """
        self.session_factory = session_factory
        self.config = config or RegistryConfig()
        self._clock = clock
        self._owned_engine = owned_engine
        self._lock = threading.RLock()
        self._closed = False

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @property
    def closed(self) -> bool:
        return self._closed

    @contextmanager
    def _session(self) -> Iterator[Session]:
        with self._lock:
            if self._closed:
                raise RegistryClosedError("Schedule registry is closed")
            session = self.session_factory()
            try:
                yield session
                session.commit()
            except Exception:
                session.rollback()
                raise
            finally:
                session.close()

    def trigger_id_for(self, plan_id: int) -> str:
        return f"{self.config.trigger_prefix}{plan_id}"

    def plan_id_from_trigger(self, trigger_id: str) -> Optional[int]:
        """Plan id encoded in a trigger id, or None for foreign triggers."""
        if not trigger_id.startswith(self.config.trigger_prefix):
            return None
        suffix = trigger_id[len(self.config.trigger_prefix):]
        try:
            return int(suffix)
        except ValueError:
            return None

    def pattern_for(self, cadence: str, anchor: datetime) -> str:
        """Cron pattern for a cadence at the anchor's time, honoring the override."""
        if self.config.pattern_override:
            return self.config.pattern_override
        return cron_pattern(cadence, anchor)

    @staticmethod
    def next_fire_after(pattern: str, after: datetime) -> datetime:
        return croniter(pattern, after).get_next(datetime)

    def retry_delay(self, attempts_made: int) -> float:
        """Transport backoff after the given number of failed attempts."""
        return self.config.job_backoff_seconds * (2 ** (attempts_made - 1))

    @staticmethod
    def _to_info(trigger: ScheduleTrigger) -> TriggerInfo:
        return TriggerInfo(
            id=trigger.id,
            plan_id=trigger.plan_id,
            pattern=trigger.pattern,
            payload=dict(trigger.payload or {}),
            next_fire_at=trigger.next_fire_at,
            anchor_at=trigger.anchor_at,
        )

    # ------------------------------------------------------------------
    # Triggers
    # ------------------------------------------------------------------

    def upsert_trigger(self, plan) -> str:
        """Create or update the trigger for a plan.

        Registering the same plan twice updates the existing row in place.
        A new trigger is anchored at the plan's next_execution; refreshes
        keep that anchor while the cadence is unchanged, so settlement delays
        never move the fire time. The next fire time is only recomputed when
        the pattern changes.

        Args:
            plan: Object with id, cadence and next_execution (a Plan row)

        Returns:
            The trigger id
        """
        trigger_id = self.trigger_id_for(plan.id)
        anchor = plan.next_execution or self._clock()
        payload = {
            "plan_id": plan.id,
            "cadence": plan.cadence,
            "scheduled_time": (
                plan.next_execution.isoformat() if plan.next_execution else None
            ),
        }

        try:
            created, pattern = self._write_trigger(trigger_id, plan.id, anchor, payload)
        except IntegrityError:
            # Lost an insert race; the row exists now, so update it
            created, pattern = self._write_trigger(trigger_id, plan.id, anchor, payload)

        if created:
            logger.info(f"Created scheduler {trigger_id} with pattern: {pattern}")
        else:
            logger.debug(f"Updated scheduler {trigger_id} with pattern: {pattern}")
        return trigger_id

    def _write_trigger(
        self, trigger_id: str, plan_id: int, anchor: datetime, payload: dict
    ) -> tuple[bool, str]:
        now = self._clock()
        cadence = payload["cadence"]
        with self._session() as db:
            trigger = db.get(ScheduleTrigger, trigger_id)
            if trigger is None:
                pattern = self.pattern_for(cadence, anchor)
                db.add(
                    ScheduleTrigger(
                        id=trigger_id,
                        queue_name=self.config.queue_name,
                        plan_id=plan_id,
                        pattern=pattern,
                        anchor_at=anchor,
                        payload=payload,
                        next_fire_at=self.next_fire_after(pattern, now),
                        created_at=now,
                        updated_at=now,
                    )
                )
                return True, pattern

            if trigger.anchor_at is not None and (trigger.payload or {}).get("cadence") == cadence:
                anchor = trigger.anchor_at
            pattern = self.pattern_for(cadence, anchor)

            if trigger.pattern != pattern:
                trigger.next_fire_at = self.next_fire_after(pattern, now)
            trigger.pattern = pattern
            trigger.anchor_at = anchor
            trigger.plan_id = plan_id
            trigger.payload = payload
            trigger.updated_at = now
            return False, pattern

    def remove_trigger(self, plan_id: int) -> bool:
        """Remove a plan's trigger and its not-yet-started jobs.

        Removing a trigger that does not exist is not an error.

        Returns:
            True if a trigger was removed
        """
        trigger_id = self.trigger_id_for(plan_id)
        with self._session() as db:
            trigger = db.get(ScheduleTrigger, trigger_id)
            if trigger is not None:
                db.delete(trigger)
            dropped = (
                db.query(ExecutionJob)
                .filter(
                    ExecutionJob.trigger_id == trigger_id,
                    ExecutionJob.status == JOB_PENDING,
                )
                .delete(synchronize_session=False)
            )

        if trigger is not None:
            logger.info(f"Removed scheduler for SIP {plan_id} ({dropped} pending jobs dropped)")
            return True
        logger.debug(f"No scheduler to remove for SIP {plan_id}")
        return False

    def get_trigger(self, plan_id: int) -> Optional[TriggerInfo]:
        with self._session() as db:
            trigger = db.get(ScheduleTrigger, self.trigger_id_for(plan_id))
            return self._to_info(trigger) if trigger else None

    def list_triggers(self) -> list[TriggerInfo]:
        """All triggers on this registry's queue."""
        with self._session() as db:
            triggers = (
                db.query(ScheduleTrigger)
                .filter(ScheduleTrigger.queue_name == self.config.queue_name)
                .order_by(ScheduleTrigger.id)
                .all()
            )
            return [self._to_info(t) for t in triggers]

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    def enqueue(
        self,
        plan_id: int,
        payload: dict,
        trigger_id: Optional[str] = None,
        delay_seconds: float = 0.0,
    ) -> int:
        """Add a single job to the queue.

        Returns:
            The job id
        """
        now = self._clock()
        with self._session() as db:
            job = self._new_job(plan_id, payload, trigger_id, now + timedelta(seconds=delay_seconds))
            db.add(job)
            db.flush()
            return job.id

    def _new_job(
        self, plan_id: int, payload: dict, trigger_id: Optional[str], available_at: datetime
    ) -> ExecutionJob:
        return ExecutionJob(
            queue_name=self.config.queue_name,
            name="execute-sip",
            trigger_id=trigger_id,
            plan_id=plan_id,
            payload=payload,
            status=JOB_PENDING,
            attempts_made=0,
            max_attempts=self.config.job_attempts,
            backoff_seconds=self.config.job_backoff_seconds,
            available_at=available_at,
            created_at=self._clock(),
        )

    def enqueue_due(self, now: Optional[datetime] = None) -> int:
        """Fire every trigger whose next fire time has passed.

        A trigger that still has an unfinished job is advanced without
        enqueueing another one, so missed fires never pile up.

        Returns:
            Number of jobs enqueued
        """
        now = now or self._clock()
        enqueued = 0
        with self._session() as db:
            due = (
                db.query(ScheduleTrigger)
                .filter(
                    ScheduleTrigger.queue_name == self.config.queue_name,
                    ScheduleTrigger.next_fire_at <= now,
                )
                .all()
            )
            for trigger in due:
                outstanding = (
                    db.query(ExecutionJob.id)
                    .filter(
                        ExecutionJob.trigger_id == trigger.id,
                        ExecutionJob.status.in_([JOB_PENDING, JOB_ACTIVE]),
                    )
                    .first()
                )
                if outstanding is None:
                    payload = dict(trigger.payload or {})
                    payload["fired_at"] = trigger.next_fire_at.isoformat()
                    db.add(self._new_job(trigger.plan_id, payload, trigger.id, now))
                    enqueued += 1
                else:
                    logger.debug(f"{trigger.id} still has job {outstanding.id} in flight")
                trigger.next_fire_at = self.next_fire_after(trigger.pattern, now)

        if enqueued:
            logger.debug(f"Enqueued {enqueued} due jobs")
        return enqueued

    def claim_next(self, now: Optional[datetime] = None) -> Optional[JobInfo]:
        """Lease the next available job.

        Pending jobs whose backoff has elapsed come first by availability;
        active jobs with an expired lease are re-delivered.
        """
        now = now or self._clock()
        with self._session() as db:
            job = (
                db.query(ExecutionJob)
                .filter(
                    ExecutionJob.queue_name == self.config.queue_name,
                    or_(
                        and_(
                            ExecutionJob.status == JOB_PENDING,
                            ExecutionJob.available_at <= now,
                        ),
                        and_(
                            ExecutionJob.status == JOB_ACTIVE,
                            ExecutionJob.locked_until <= now,
                        ),
                    ),
                )
                .order_by(ExecutionJob.available_at, ExecutionJob.id)
                .first()
            )
            if job is None:
                return None

            redelivered = job.status == JOB_ACTIVE
            if redelivered:
                logger.warning(f"Re-delivering job {job.id} for SIP {job.plan_id} (lease expired)")
            job.status = JOB_ACTIVE
            job.locked_until = now + timedelta(seconds=self.config.lease_seconds)

            return JobInfo(
                id=job.id,
                trigger_id=job.trigger_id,
                plan_id=job.plan_id,
                payload=dict(job.payload or {}),
                attempts_made=job.attempts_made,
                max_attempts=job.max_attempts,
                redelivered=redelivered,
            )

    def complete(self, job_id: int, result: Optional[dict] = None) -> None:
        """Acknowledge a job as done."""
        with self._session() as db:
            job = db.get(ExecutionJob, job_id)
            if job is None:
                return
            if self.config.remove_on_complete:
                db.delete(job)
            else:
                job.status = JOB_COMPLETED
                job.result = result
                job.locked_until = None
                job.finished_at = self._clock()

    def fail(self, job_id: int, error: str, retryable: bool = True) -> bool:
        """Record a failed attempt.

        Args:
            job_id: Job that failed
            error: Failure description
            retryable: False to fail the job without further attempts

        Returns:
            True if another attempt was scheduled
        """
        now = self._clock()
        with self._session() as db:
            job = db.get(ExecutionJob, job_id)
            if job is None:
                return False

            job.attempts_made += 1
            job.last_error = error
            job.locked_until = None

            if retryable and job.attempts_made < job.max_attempts:
                delay = self.retry_delay(job.attempts_made)
                job.status = JOB_PENDING
                job.available_at = now + timedelta(seconds=delay)
                logger.info(
                    f"Job {job.id} for SIP {job.plan_id} failed "
                    f"(attempt {job.attempts_made}/{job.max_attempts}); retry in {delay:.1f}s"
                )
                return True

            job.status = JOB_FAILED
            job.finished_at = now
            db.flush()
            self._prune_failed(db)
            return False

    def _prune_failed(self, db: Session) -> None:
        """Keep only the newest keep_failed_jobs failed jobs."""
        keep = self.config.keep_failed_jobs
        stale_ids = [
            row.id
            for row in db.query(ExecutionJob.id)
            .filter(
                ExecutionJob.queue_name == self.config.queue_name,
                ExecutionJob.status == JOB_FAILED,
            )
            .order_by(ExecutionJob.finished_at.desc(), ExecutionJob.id.desc())
            .offset(keep)
            .all()
        ]
        if stale_ids:
            db.query(ExecutionJob).filter(ExecutionJob.id.in_(stale_ids)).delete(
                synchronize_session=False
            )

    def job_counts(self) -> dict[str, int]:
        """Count jobs by status."""
        with self._session() as db:
            results = (
                db.query(ExecutionJob.status, func.count(ExecutionJob.id))
                .filter(ExecutionJob.queue_name == self.config.queue_name)
                .group_by(ExecutionJob.status)
                .all()
            )
            return {status: count for status, count in results}

    def close(self) -> None:
        """Close the registry. Leased jobs stay leased and are re-delivered later."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            if self._owned_engine is not None:
                self._owned_engine.dispose()
        logger.info("Schedule registry closed")

"""Dispatch worker: consumes execution jobs one at a time.

For every job the worker re-checks the plan against the store (the
trigger may be older than the last sweep), runs the execution engine and
turns the result into a DispatchOutcome:

- EXECUTED: trade settled, job acknowledged
- DEREGISTERED: plan missing, inactive, out of funds, or paused by the
  engine after its own retries ran out; the trigger is removed and the job
  acknowledged with a failure flag, never retried
- RETRY: a failure that left the plan active (a store error, say); handed
  to the transport's own retry policy. When that is exhausted too, the
  plan is paused and its trigger removed.

Concurrency is fixed at one job per process, and dispatch is rate limited
(1 job per second by default) to respect the trade service's limits.
"""

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from loguru import logger
from sqlalchemy.orm import sessionmaker

from sip_engine.config.logging import plan_context
from sip_engine.config.scheduler import WorkerConfig
from sip_engine.data.models import PlanStatus
from sip_engine.data.repositories import PlanRepository
from sip_engine.errors import ErrorKind, RegistryClosedError, classify_error
from sip_engine.execution.engine import ExecutionEngine, ExecutionResult
from sip_engine.scheduling.rate_limiter import RateLimiter
from sip_engine.scheduling.reconciler import Reconciler
from sip_engine.scheduling.registry import JobInfo, ScheduleRegistry

# Failures that end a plan's schedule instead of retrying the job
TERMINAL_KINDS = (ErrorKind.NOT_FOUND, ErrorKind.NOT_ACTIVE, ErrorKind.INSUFFICIENT_FUNDS)


class OutcomeType(str, Enum):
    """How a dispatched job ended."""

    EXECUTED = "executed"
    DEREGISTERED = "deregistered"
    RETRY = "retry"


@dataclass
class DispatchOutcome:
    """Tagged result of dispatching one job."""

    type: OutcomeType
    plan_id: int
    result: Optional[ExecutionResult] = None
    error_kind: Optional[ErrorKind] = None
    message: str = ""

    @classmethod
    def executed(cls, plan_id: int, result: ExecutionResult) -> "DispatchOutcome":
        return cls(OutcomeType.EXECUTED, plan_id, result=result)

    @classmethod
    def deregistered(cls, plan_id: int, kind: ErrorKind, message: str) -> "DispatchOutcome":
        return cls(OutcomeType.DEREGISTERED, plan_id, error_kind=kind, message=message)

    @classmethod
    def retry(cls, plan_id: int, kind: ErrorKind, message: str) -> "DispatchOutcome":
        return cls(OutcomeType.RETRY, plan_id, error_kind=kind, message=message)

    def to_dict(self) -> dict:
        data = {
            "outcome": self.type.value,
            "plan_id": self.plan_id,
            "success": self.type == OutcomeType.EXECUTED,
        }
        if self.result is not None:
            data["result"] = self.result.to_dict()
        if self.error_kind is not None:
            data["error_kind"] = self.error_kind.value
            data["message"] = self.message
        if self.type == OutcomeType.DEREGISTERED:
            data["remove_scheduler"] = True
        return data


class DispatchWorker:
    """Sequential consumer of the registry's job queue."""

    def __init__(
        self,
        registry: ScheduleRegistry,
        reconciler: Reconciler,
        engine: ExecutionEngine,
        session_factory: sessionmaker,
        config: Optional[WorkerConfig] = None,
        rate_limiter: Optional[RateLimiter] = None,
    ):
        """Initialize the worker.

        Args:
            registry: Job transport to consume from
            reconciler: Used to deregister triggers of dead plans
            engine: Execution engine
            session_factory: Factory for plan store sessions
            config: Worker settings (concurrency, rate limit, polling)
            rate_limiter: Override the limiter built from config
        """
        self.registry = registry
        self.reconciler = reconciler
        self.engine = engine
        self.session_factory = session_factory
        self.config = config or WorkerConfig()
        self.rate_limiter = rate_limiter or RateLimiter(
            max_calls=self.config.rate_limit_max,
            duration=self.config.rate_limit_duration_seconds,
        )
        self.jobs_processed = 0

    def _load_plan_status(self, plan_id: int) -> Optional[str]:
        session = self.session_factory()
        try:
            plan = PlanRepository(session).get_by_id(plan_id)
            return plan.status if plan else None
        finally:
            session.close()

    async def process(self, job: JobInfo) -> DispatchOutcome:
        """Validate and execute one job. Does not touch the job's transport state."""
        plan_id = job.plan_id
        scheduled = job.payload.get("scheduled_time")
        logger.info(f"Processing SIP execution for ID: {plan_id} scheduled for {scheduled}")

        status = self._load_plan_status(plan_id)
        if status is None:
            self.reconciler.deregister(plan_id)
            return DispatchOutcome.deregistered(
                plan_id, ErrorKind.NOT_FOUND, f"SIP {plan_id} not found"
            )
        if status != PlanStatus.ACTIVE:
            self.reconciler.deregister(plan_id)
            return DispatchOutcome.deregistered(
                plan_id, ErrorKind.NOT_ACTIVE, f"SIP {plan_id} is {status}"
            )

        try:
            result = await self.engine.execute(plan_id)
        except Exception as e:
            kind = classify_error(e)
            # The engine reports the status it left the plan in
            resulting = getattr(e, "status", None)
            if kind in TERMINAL_KINDS or (resulting is not None and resulting != PlanStatus.ACTIVE):
                logger.warning(f"SIP {plan_id} stopped ({kind.value}): {e}")
                self.reconciler.deregister(plan_id)
                return DispatchOutcome.deregistered(plan_id, kind, str(e))
            logger.error(f"Error executing SIP {plan_id}: {e}")
            return DispatchOutcome.retry(plan_id, kind, str(e))

        logger.info(f"Successfully executed SIP {plan_id}")
        return DispatchOutcome.executed(plan_id, result)

    async def handle(self, job: JobInfo) -> DispatchOutcome:
        """Process a job and settle it with the transport."""
        with plan_context(job.plan_id, job.id):
            return await self._handle(job)

    async def _handle(self, job: JobInfo) -> DispatchOutcome:
        outcome = await self.process(job)

        if outcome.type == OutcomeType.RETRY:
            retried = self.registry.fail(job.id, outcome.message, retryable=True)
            if not retried:
                logger.error(f"Job {job.id} failed for SIP {job.plan_id}: retries exhausted")
                self._give_up(job.plan_id)
        else:
            self.registry.complete(job.id, outcome.to_dict())
            logger.info(f"Job {job.id} completed for SIP {job.plan_id} ({outcome.type.value})")

        self.jobs_processed += 1
        return outcome

    def _give_up(self, plan_id: int) -> None:
        """Pause a still-active plan and remove its trigger."""
        session = self.session_factory()
        try:
            repo = PlanRepository(session)
            plan = repo.get_by_id(plan_id)
            if plan is not None and plan.status == PlanStatus.ACTIVE:
                repo.update_fields(plan_id, status=PlanStatus.PAUSED)
                logger.warning(f"SIP {plan_id} paused after transport retries were exhausted")
            session.commit()
        finally:
            session.close()
        self.reconciler.deregister(plan_id)

    async def run_once(self) -> Optional[DispatchOutcome]:
        """Fire due triggers, then dispatch at most one job."""
        self.registry.enqueue_due()
        job = self.registry.claim_next()
        if job is None:
            return None

        await self.rate_limiter.acquire()
        try:
            return await self.handle(job)
        except RegistryClosedError:
            raise
        except Exception as e:
            # Left leased; the transport re-delivers it after the lease expires
            logger.error(f"Unhandled error dispatching job {job.id}: {e}")
            return None

    async def run(self, stop_event: asyncio.Event) -> None:
        """Consume jobs until stop_event is set.

        A job in progress when stop is requested runs to completion.
        """
        logger.info(
            f"Dispatch worker started (concurrency={self.config.concurrency}, "
            f"limit={self.config.rate_limit_max}/{self.config.rate_limit_duration_seconds}s)"
        )
        while not stop_event.is_set():
            try:
                outcome = await self.run_once()
            except RegistryClosedError:
                logger.info("Registry closed, dispatch worker stopping")
                break
            except Exception as e:
                logger.error(f"Dispatch worker error: {e}")
                outcome = None

            if outcome is None:
                try:
                    await asyncio.wait_for(
                        stop_event.wait(), timeout=self.config.poll_interval_seconds
                    )
                except asyncio.TimeoutError:
                    pass  # Normal polling timeout

        logger.info(f"Dispatch worker stopped ({self.jobs_processed} jobs processed)")

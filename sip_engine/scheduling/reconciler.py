"""Reconciliation between the plan store and the schedule registry.

The plan store is the source of intent; the registry only holds timing.
A sweep converges the two:

1. every active plan gets a trigger (created if missing)
2. existing triggers of active plans are refreshed, which picks up
   cadence changes written straight to the store
3. triggers whose plan is no longer active (deleted, paused, completed,
   insufficient funds) are removed

Sweeps are not transactional across the two stores. A plan created or
deleted mid-sweep is picked up by the next sweep, so registry state lags
the store by at most one sweep interval.

The Reconciler is the only writer of triggers. Other components ask it to
register or deregister a plan.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from loguru import logger
from sqlalchemy.orm import sessionmaker

from sip_engine.config.scheduler import ReconcilerConfig
from sip_engine.data.models import PlanStatus
from sip_engine.data.repositories import PlanRepository
from sip_engine.scheduling.registry import ScheduleRegistry
from sip_engine.utils.timezone import utc_now


@dataclass(frozen=True)
class PlanRef:
    """The fields a trigger is built from."""

    id: int
    cadence: str
    next_execution: Optional[datetime]

    @classmethod
    def from_plan(cls, plan) -> "PlanRef":
        return cls(id=plan.id, cadence=plan.cadence, next_execution=plan.next_execution)


@dataclass
class ReconcileReport:
    """Outcome of one sweep."""

    started_at: datetime
    active_plans: int = 0
    created: list[int] = field(default_factory=list)
    refreshed: list[int] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    errors: dict[str, str] = field(default_factory=dict)
    finished_at: Optional[datetime] = None

    @property
    def total_changes(self) -> int:
        return len(self.created) + len(self.removed)

    def summary(self) -> str:
        return (
            f"{self.active_plans} active, {len(self.created)} created, "
            f"{len(self.refreshed)} refreshed, {len(self.removed)} removed, "
            f"{len(self.errors)} errors"
        )


class Reconciler:
    """Keeps registry triggers in line with active plans."""

    def __init__(
        self,
        registry: ScheduleRegistry,
        session_factory: sessionmaker,
        config: Optional[ReconcilerConfig] = None,
    ):
        """Initialize the reconciler.

        Args:
            registry: Schedule registry this reconciler owns
            session_factory: Factory for plan store sessions
            config: Sweep interval settings
        """
        self.registry = registry
        self.session_factory = session_factory
        self.config = config or ReconcilerConfig()
        self.last_report: Optional[ReconcileReport] = None

    def _active_plans(self) -> list[PlanRef]:
        session = self.session_factory()
        try:
            plans = PlanRepository(session).list_by_status(PlanStatus.ACTIVE)
            return [PlanRef.from_plan(p) for p in plans]
        finally:
            session.close()

    def reconcile(self) -> ReconcileReport:
        """Run one sweep.

        Per-plan registry failures are recorded in the report and do not
        stop the sweep; a failure to read either store raises.

        Returns:
            ReconcileReport describing what changed
        """
        report = ReconcileReport(started_at=utc_now())

        plans = self._active_plans()
        report.active_plans = len(plans)
        logger.info(f"Found {len(plans)} active SIPs")

        existing_ids = {t.id for t in self.registry.list_triggers()}

        active_trigger_ids = set()
        for plan in plans:
            trigger_id = self.registry.trigger_id_for(plan.id)
            active_trigger_ids.add(trigger_id)
            try:
                self.registry.upsert_trigger(plan)
            except Exception as e:
                logger.error(f"Error scheduling SIP {plan.id}: {e}")
                report.errors[trigger_id] = str(e)
                continue

            if trigger_id in existing_ids:
                report.refreshed.append(plan.id)
            else:
                logger.info(f"Created missing scheduler for SIP {plan.id}")
                report.created.append(plan.id)

        for trigger_id in sorted(existing_ids - active_trigger_ids):
            plan_id = self.registry.plan_id_from_trigger(trigger_id)
            if plan_id is None:
                continue
            try:
                self.registry.remove_trigger(plan_id)
            except Exception as e:
                logger.error(f"Error removing scheduler {trigger_id}: {e}")
                report.errors[trigger_id] = str(e)
                continue
            logger.info(f"Removed scheduler for inactive SIP: {trigger_id}")
            report.removed.append(trigger_id)

        report.finished_at = utc_now()
        self.last_report = report
        logger.info(f"Reconciliation complete: {report.summary()}")
        return report

    def register(self, plan) -> str:
        """Create or refresh the trigger for an active plan."""
        return self.registry.upsert_trigger(PlanRef.from_plan(plan))

    def deregister(self, plan_id: int) -> bool:
        """Remove a plan's trigger (idempotent)."""
        return self.registry.remove_trigger(plan_id)

    async def run_periodic(
        self, stop_event: asyncio.Event, run_immediately: bool = True
    ) -> None:
        """Sweep on a fixed interval until stop_event is set.

        Sweep failures are logged and retried on the next interval.
        """
        interval = self.config.sweep_interval_seconds
        if not run_immediately:
            if await self._wait(stop_event, interval):
                return

        while not stop_event.is_set():
            logger.info("Running periodic scheduler check...")
            try:
                self.reconcile()
            except Exception as e:
                logger.error(f"Error reconciling SIP schedules: {e}")

            if await self._wait(stop_event, interval):
                return

    @staticmethod
    async def _wait(stop_event: asyncio.Event, timeout: float) -> bool:
        """Wait for the interval; True if stop was requested meanwhile."""
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            return False

"""Repository layer over the plan store.

Repositories wrap a caller-owned Session. Mutating methods flush, and the
caller decides when to commit (get_db_session() commits on exit).
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from sip_engine.data.models import Plan, PlanExecution
from sip_engine.utils.timezone import utc_now


class PlanRepository:
    """Data access for SIP plans."""

    def __init__(self, session: Session):
        self.session = session

    def get_by_id(self, plan_id: int) -> Optional[Plan]:
        return self.session.get(Plan, plan_id)

    def get_for_wallet(self, plan_id: int, wallet_id: str) -> Optional[Plan]:
        """Get a plan only if it belongs to the wallet."""
        return (
            self.session.query(Plan)
            .filter(Plan.id == plan_id, Plan.wallet_id == wallet_id)
            .one_or_none()
        )

    def list_by_status(self, status: str) -> list[Plan]:
        return (
            self.session.query(Plan)
            .filter(Plan.status == status)
            .order_by(Plan.id)
            .all()
        )

    def list_by_wallet(self, wallet_id: str) -> list[Plan]:
        """Plans for a wallet, newest first."""
        return (
            self.session.query(Plan)
            .filter(Plan.wallet_id == wallet_id)
            .order_by(Plan.created_at.desc(), Plan.id.desc())
            .all()
        )

    def list_all(self) -> list[Plan]:
        return self.session.query(Plan).order_by(Plan.id).all()

    def create(self, plan: Plan) -> Plan:
        self.session.add(plan)
        self.session.flush()
        self.session.refresh(plan)
        return plan

    def update_fields(self, plan_id: int, wallet_id: Optional[str] = None, **fields) -> int:
        """Atomic single-row update by id.

        Args:
            plan_id: Plan to update
            wallet_id: When given, the row must also belong to this wallet
            **fields: Column values to set

        Returns:
            Number of rows updated (0 or 1)
        """
        fields.setdefault("updated_at", utc_now())
        stmt = update(Plan).where(Plan.id == plan_id)
        if wallet_id is not None:
            stmt = stmt.where(Plan.wallet_id == wallet_id)
        result = self.session.execute(
            stmt.values(**fields).execution_options(synchronize_session="fetch")
        )
        self.session.flush()
        return result.rowcount

    def record_success(self, plan_id: int, executed_at: datetime, next_execution: datetime) -> int:
        """Bookkeeping after a settled trade.

        total_executions is incremented in SQL so concurrent writers never
        lose an increment. Status is left alone: a plan paused while its
        trade was settling stays paused.
        """
        return self.update_fields(
            plan_id,
            last_execution=executed_at,
            next_execution=next_execution,
            total_executions=Plan.total_executions + 1,
            last_error=None,
        )

    def delete(self, plan_id: int, wallet_id: Optional[str] = None) -> bool:
        """Delete a plan. Returns False if no matching row existed."""
        plan = (
            self.get_for_wallet(plan_id, wallet_id)
            if wallet_id is not None
            else self.get_by_id(plan_id)
        )
        if plan is None:
            return False
        self.session.delete(plan)
        self.session.flush()
        return True


class PlanExecutionRepository:
    """Execution history for plans."""

    def __init__(self, session: Session):
        self.session = session

    def create(self, execution: PlanExecution) -> PlanExecution:
        self.session.add(execution)
        self.session.flush()
        return execution

    def list_for_plan(self, plan_id: int, limit: int = 20) -> list[PlanExecution]:
        return (
            self.session.query(PlanExecution)
            .filter(PlanExecution.plan_id == plan_id)
            .order_by(PlanExecution.started_at.desc(), PlanExecution.id.desc())
            .limit(limit)
            .all()
        )

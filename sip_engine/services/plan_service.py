"""Plan administration: create, update, pause/resume, delete, execute.

Every mutation keeps the schedule in step with the plan: activating a plan
registers its trigger, any other status removes it, and deletion removes
it too. Failures are raised as typed SIPErrors so a boundary layer can map
them to status codes with status_code_for().
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Callable, Optional

from loguru import logger
from sqlalchemy.orm import sessionmaker

from sip_engine.config.logging import plan_context
from sip_engine.data.database import session_scope
from sip_engine.data.models import Plan, PlanStatus
from sip_engine.data.repositories import PlanExecutionRepository, PlanRepository
from sip_engine.errors import (
    ErrorKind,
    PlanNotFoundError,
    PlanValidationError,
    classify_error,
)
from sip_engine.execution.engine import ExecutionEngine, ExecutionResult
from sip_engine.execution.trade_client import TradeClient
from sip_engine.scheduling.reconciler import PlanRef, Reconciler
from sip_engine.utils.cadence import advance, parse_cadence
from sip_engine.utils.timezone import utc_now

UPDATABLE_FIELDS = ("amount", "cadence", "status")

# Owner-initiated status changes. completed is terminal. The engine's own
# moves out of active (paused, insufficient_funds) do not pass through here.
ALLOWED_TRANSITIONS = {
    PlanStatus.ACTIVE: {PlanStatus.PAUSED, PlanStatus.COMPLETED},
    PlanStatus.PAUSED: {PlanStatus.ACTIVE, PlanStatus.COMPLETED},
    PlanStatus.INSUFFICIENT_FUNDS: {PlanStatus.ACTIVE, PlanStatus.COMPLETED},
    PlanStatus.COMPLETED: set(),
}


@dataclass
class CreatePlanResult:
    """A newly stored plan and the outcome of its initial trade."""

    plan: dict
    initial_trade: Optional[dict] = None
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None

    @property
    def succeeded(self) -> bool:
        return self.error is None


def parse_amount(value) -> Decimal:
    """Parse a positive decimal amount."""
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise PlanValidationError(f"Invalid amount {value!r}") from None
    if not amount.is_finite() or amount <= 0:
        raise PlanValidationError("Amount must be greater than 0")
    return amount


def parse_status(value) -> str:
    status = str(value).strip().lower()
    if status not in PlanStatus.ALL:
        raise PlanValidationError(
            f"Invalid status. Must be one of: {', '.join(PlanStatus.ALL)}"
        )
    return status


def check_transition(current: str, new: str) -> None:
    """Raise PlanValidationError unless current -> new is a legal status change.

    Setting the status a plan already has is a no-op and always allowed.
    """
    if new == current or new in ALLOWED_TRANSITIONS.get(current, ()):
        return
    raise PlanValidationError(f"Cannot change SIP status from {current} to {new}")


class PlanService:
    """Owner-facing operations on plans."""

    def __init__(
        self,
        session_factory: sessionmaker,
        trade_client: TradeClient,
        reconciler: Reconciler,
        engine: ExecutionEngine,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.session_factory = session_factory
        self.trade_client = trade_client
        self.reconciler = reconciler
        self.engine = engine
        self._clock = clock

    def _sync_schedule(self, ref: PlanRef, status: str) -> None:
        if status == PlanStatus.ACTIVE:
            self.reconciler.register(ref)
        else:
            self.reconciler.deregister(ref.id)

    async def create_plan(
        self,
        wallet_id: str,
        from_asset: str,
        to_asset: str,
        amount,
        cadence: str,
    ) -> CreatePlanResult:
        """Create a plan, executing its first trade immediately.

        A plan row is written whatever the trade outcome: active when the
        trade settled, insufficient_funds or paused when it failed.

        Raises:
            PlanValidationError: Missing field, bad amount or cadence
        """
        if not wallet_id or not from_asset or not to_asset or amount in (None, "") or not cadence:
            raise PlanValidationError(
                "wallet_id, from_asset, to_asset, amount, and cadence are required"
            )
        cadence = parse_cadence(cadence).value
        amount = parse_amount(amount)

        trade = None
        error: Optional[Exception] = None
        try:
            trade = await self.trade_client.execute_trade(wallet_id, amount, from_asset, to_asset)
        except Exception as e:
            logger.error(f"Trade error during SIP creation for wallet {wallet_id}: {e}")
            error = e

        now = self._clock()
        kind = classify_error(error) if error is not None else None
        if error is None:
            status = PlanStatus.ACTIVE
        elif kind == ErrorKind.INSUFFICIENT_FUNDS:
            status = PlanStatus.INSUFFICIENT_FUNDS
        else:
            status = PlanStatus.PAUSED

        with session_scope(self.session_factory) as db:
            plan = PlanRepository(db).create(
                Plan(
                    wallet_id=wallet_id,
                    from_asset=from_asset,
                    to_asset=to_asset,
                    amount=amount,
                    cadence=cadence,
                    status=status,
                    last_execution=now if error is None else None,
                    next_execution=advance(cadence, now),
                    total_executions=1 if error is None else 0,
                    last_error=str(error) if error is not None else None,
                    created_at=now,
                    updated_at=now,
                )
            )
            ref = PlanRef.from_plan(plan)
            data = plan.to_dict()

        if status == PlanStatus.ACTIVE:
            self.reconciler.register(ref)

        logger.info(f"Created SIP {data['id']} for wallet {wallet_id} (status={status})")

        if error is None:
            return CreatePlanResult(plan=data, initial_trade=trade.to_dict())
        message = (
            "Insufficient funds for initial trade"
            if kind == ErrorKind.INSUFFICIENT_FUNDS
            else "Failed to execute initial trade"
        )
        return CreatePlanResult(plan=data, error=message, error_kind=kind)

    def get_plan(self, plan_id: int, wallet_id: Optional[str] = None) -> dict:
        with session_scope(self.session_factory) as db:
            repo = PlanRepository(db)
            plan = (
                repo.get_for_wallet(plan_id, wallet_id)
                if wallet_id is not None
                else repo.get_by_id(plan_id)
            )
            if plan is None:
                raise PlanNotFoundError("SIP not found", plan_id=plan_id)
            return plan.to_dict()

    def list_plans(self, wallet_id: Optional[str] = None) -> list[dict]:
        """Plans for a wallet (newest first), or every plan."""
        with session_scope(self.session_factory) as db:
            repo = PlanRepository(db)
            plans = repo.list_by_wallet(wallet_id) if wallet_id else repo.list_all()
            return [p.to_dict() for p in plans]

    def update_status(self, plan_id: int, wallet_id: str, status: str) -> dict:
        """Set a plan's status and register or deregister its trigger."""
        return self.update_plan(plan_id, wallet_id, status=status)

    def pause(self, plan_id: int, wallet_id: str) -> dict:
        return self.update_status(plan_id, wallet_id, PlanStatus.PAUSED)

    def resume(self, plan_id: int, wallet_id: str) -> dict:
        return self.update_status(plan_id, wallet_id, PlanStatus.ACTIVE)

    def update_plan(self, plan_id: int, wallet_id: str, **updates) -> dict:
        """Update amount, cadence and/or status.

        All values are validated before anything is written. A cadence
        change recomputes next_execution from now.

        Raises:
            PlanValidationError: Unknown field or invalid value
            PlanNotFoundError: No such plan for this wallet
        """
        unknown = set(updates) - set(UPDATABLE_FIELDS)
        if unknown:
            raise PlanValidationError(f"Invalid field(s): {', '.join(sorted(unknown))}")

        values = {}
        if updates.get("status") is not None:
            values["status"] = parse_status(updates["status"])
        if updates.get("cadence") is not None:
            values["cadence"] = parse_cadence(updates["cadence"]).value
            values["next_execution"] = advance(values["cadence"], self._clock())
        if updates.get("amount") is not None:
            values["amount"] = parse_amount(updates["amount"])
        if not values:
            raise PlanValidationError("No updates provided")

        with session_scope(self.session_factory) as db:
            repo = PlanRepository(db)
            current = repo.get_for_wallet(plan_id, wallet_id)
            if current is None:
                raise PlanNotFoundError("SIP not found", plan_id=plan_id)
            check_transition(current.status, values.get("status", current.status))

            repo.update_fields(plan_id, wallet_id=wallet_id, **values)
            plan = repo.get_by_id(plan_id)
            ref = PlanRef.from_plan(plan)
            data = plan.to_dict()

        self._sync_schedule(ref, data["status"])

        logger.info(f"Updated SIP {plan_id}: {', '.join(f'{k}={v}' for k, v in values.items())}")
        return data

    def delete_plan(self, plan_id: int, wallet_id: str) -> None:
        """Delete a plan and remove its trigger.

        Raises:
            PlanNotFoundError: No such plan for this wallet
        """
        with session_scope(self.session_factory) as db:
            deleted = PlanRepository(db).delete(plan_id, wallet_id=wallet_id)
        if not deleted:
            raise PlanNotFoundError("SIP not found", plan_id=plan_id)
        self.reconciler.deregister(plan_id)
        logger.info(f"Deleted SIP {plan_id}")

    async def execute_now(self, plan_id: int) -> ExecutionResult:
        """Run a plan immediately, outside its schedule.

        Terminal failures (missing, inactive, out of funds) and exhausted
        retries remove the plan's trigger before the error is re-raised.
        """
        with plan_context(plan_id):
            try:
                return await self.engine.execute(plan_id)
            except Exception as e:
                kind = classify_error(e)
                status = getattr(e, "status", None)
                if kind in (ErrorKind.NOT_FOUND, ErrorKind.NOT_ACTIVE, ErrorKind.INSUFFICIENT_FUNDS) or (
                    status is not None and status != PlanStatus.ACTIVE
                ):
                    self.reconciler.deregister(plan_id)
                raise

    def history(self, plan_id: int, limit: int = 20) -> list[dict]:
        """Recent executions of a plan, newest first."""
        with session_scope(self.session_factory) as db:
            return [
                {
                    "id": e.id,
                    "outcome": e.outcome,
                    "attempts": e.attempts,
                    "trade_id": e.trade_id,
                    "transaction_hash": e.transaction_hash,
                    "error_kind": e.error_kind,
                    "error_message": e.error_message,
                    "resulting_status": e.resulting_status,
                    "started_at": e.started_at.isoformat() if e.started_at else None,
                    "finished_at": e.finished_at.isoformat() if e.finished_at else None,
                }
                for e in PlanExecutionRepository(db).list_for_plan(plan_id, limit=limit)
            ]

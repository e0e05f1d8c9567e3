"""Execution engine: one plan execution with bounded retries.

execute(plan_id) loads the plan, attempts the trade up to
``max_attempts`` times and writes the bookkeeping:

- success: last_execution, next_execution (one cadence unit from now),
  total_executions + 1; status is not touched, so an owner pause made
  while the trade settled wins
- exhaustion: status insufficient_funds (fund-related final error) or
  paused (anything else), then ExecutionFailedError

Backoff after a failed attempt is ``base * 2**(attempt-1)`` and is waited
before deciding whether to retry. When another attempt follows, a fixed
inter-attempt delay is waited as well. Insufficient funds stops the loop
immediately after its backoff.

A crash between settlement and bookkeeping can lead to a duplicate trade
when the job is re-delivered; trade submission is not exactly-once.
"""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional

from loguru import logger
from sqlalchemy.orm import sessionmaker

from sip_engine.config.logging import log_trade
from sip_engine.config.scheduler import EngineConfig
from sip_engine.data.models import PlanExecution, PlanStatus
from sip_engine.data.repositories import PlanExecutionRepository, PlanRepository
from sip_engine.errors import (
    ErrorKind,
    ExecutionFailedError,
    PlanNotActiveError,
    PlanNotFoundError,
    classify_error,
)
from sip_engine.execution.trade_client import SettledTrade, TradeClient
from sip_engine.utils.cadence import advance
from sip_engine.utils.timezone import utc_now


@dataclass
class ExecutionResult:
    """Successful execution of a plan."""

    plan_id: int
    trade: SettledTrade
    next_execution: datetime
    attempts: int

    def to_dict(self) -> dict:
        return {
            "plan_id": self.plan_id,
            "trade": self.trade.to_dict(),
            "next_execution": self.next_execution.isoformat(),
            "attempts": self.attempts,
        }


@dataclass(frozen=True)
class _PlanTerms:
    """What to trade, read once before the attempts start."""

    wallet_id: str
    amount: Decimal
    from_asset: str
    to_asset: str
    cadence: str


class ExecutionEngine:
    """Executes a plan's trade with retry and updates the plan store."""

    def __init__(
        self,
        session_factory: sessionmaker,
        trade_client: TradeClient,
        config: Optional[EngineConfig] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], datetime] = utc_now,
    ):
        """Initialize the engine.

        Args:
            session_factory: Factory for short-lived plan store sessions
            trade_client: Trade primitive (blocks until settlement)
            config: Retry policy
            sleep: Awaitable sleep, injectable for tests
            clock: Naive-UTC clock, injectable for tests
        """
        self.session_factory = session_factory
        self.trade_client = trade_client
        self.config = config or EngineConfig()
        self._sleep = sleep
        self._clock = clock

    def backoff_delay(self, attempt: int) -> float:
        """Exponential backoff after the given (1-based) attempt."""
        return self.config.backoff_base_seconds * (2 ** (attempt - 1))

    async def execute(self, plan_id: int) -> ExecutionResult:
        """Execute one trade for the plan.

        Raises:
            PlanNotFoundError: Plan does not exist (or vanished before bookkeeping)
            PlanNotActiveError: Plan is not active
            ExecutionFailedError: All attempts failed; status hint attached
        """
        started_at = self._clock()
        terms = self._load_terms(plan_id)

        max_attempts = self.config.max_attempts
        last_error: Optional[Exception] = None
        attempts = 0

        for attempt in range(1, max_attempts + 1):
            attempts = attempt
            try:
                trade = await self.trade_client.execute_trade(
                    terms.wallet_id, terms.amount, terms.from_asset, terms.to_asset
                )
            except Exception as e:
                await self._sleep(self.backoff_delay(attempt))
                last_error = e
                kind = classify_error(e)
                logger.warning(
                    f"SIP {plan_id} trade attempt {attempt}/{max_attempts} failed "
                    f"({kind.value}): {e}"
                )

                if attempt == max_attempts or kind == ErrorKind.INSUFFICIENT_FUNDS:
                    break

                await self._sleep(self.config.inter_attempt_delay_seconds)
                continue

            return self._record_success(plan_id, terms, trade, attempts, started_at)

        raise self._record_failure(plan_id, last_error, attempts, started_at)

    def _load_terms(self, plan_id: int) -> _PlanTerms:
        session = self.session_factory()
        try:
            plan = PlanRepository(session).get_by_id(plan_id)
            if plan is None:
                raise PlanNotFoundError(f"SIP {plan_id} not found", plan_id=plan_id)
            if plan.status != PlanStatus.ACTIVE:
                raise PlanNotActiveError(
                    f"SIP {plan_id} is not active (status={plan.status})",
                    plan_id=plan_id,
                    status=plan.status,
                )
            return _PlanTerms(
                wallet_id=plan.wallet_id,
                amount=Decimal(str(plan.amount)),
                from_asset=plan.from_asset,
                to_asset=plan.to_asset,
                cadence=plan.cadence,
            )
        finally:
            session.close()

    def _record_success(
        self,
        plan_id: int,
        terms: _PlanTerms,
        trade: SettledTrade,
        attempts: int,
        started_at: datetime,
    ) -> ExecutionResult:
        executed_at = self._clock()
        next_execution = advance(terms.cadence, executed_at)

        session = self.session_factory()
        try:
            repo = PlanRepository(session)
            updated = repo.record_success(plan_id, executed_at, next_execution)
            if not updated:
                session.rollback()
                logger.error(
                    f"SIP {plan_id} was deleted while trade {trade.trade_id} settled; "
                    f"bookkeeping skipped"
                )
                raise PlanNotFoundError(
                    f"SIP {plan_id} not found after trade settled", plan_id=plan_id
                )

            status = repo.get_by_id(plan_id).status
            if status != PlanStatus.ACTIVE:
                logger.warning(
                    f"SIP {plan_id} became {status} while trade {trade.trade_id} settled; "
                    f"trade recorded, status kept"
                )

            PlanExecutionRepository(session).create(
                PlanExecution(
                    plan_id=plan_id,
                    outcome="succeeded",
                    attempts=attempts,
                    trade_id=trade.trade_id,
                    transaction_hash=trade.transaction_hash,
                    network=trade.network,
                    resulting_status=status,
                    started_at=started_at,
                    finished_at=executed_at,
                )
            )
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

        log_trade(plan_id, trade, attempts)
        logger.info(
            f"SIP {plan_id} executed (attempts={attempts}), "
            f"next execution {next_execution.isoformat()}"
        )
        return ExecutionResult(
            plan_id=plan_id,
            trade=trade,
            next_execution=next_execution,
            attempts=attempts,
        )

    def _record_failure(
        self,
        plan_id: int,
        last_error: Optional[Exception],
        attempts: int,
        started_at: datetime,
    ) -> ExecutionFailedError:
        kind = classify_error(last_error)
        if kind == ErrorKind.INSUFFICIENT_FUNDS:
            new_status = PlanStatus.INSUFFICIENT_FUNDS
            message = "Insufficient funds for SIP execution"
        else:
            new_status = PlanStatus.PAUSED
            message = "Failed to execute SIP trade after multiple attempts"

        logger.error(
            f"All retry attempts failed for SIP {plan_id} "
            f"({attempts} attempts, {kind.value}); status -> {new_status}"
        )

        session = self.session_factory()
        try:
            updated = PlanRepository(session).update_fields(
                plan_id, status=new_status, last_error=str(last_error)
            )
            if updated:
                PlanExecutionRepository(session).create(
                    PlanExecution(
                        plan_id=plan_id,
                        outcome="failed",
                        attempts=attempts,
                        error_kind=kind.value,
                        error_message=str(last_error),
                        resulting_status=new_status,
                        started_at=started_at,
                        finished_at=self._clock(),
                    )
                )
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

        return ExecutionFailedError(
            message,
            plan_id=plan_id,
            status=new_status,
            cause=last_error,
            attempts=attempts,
        )

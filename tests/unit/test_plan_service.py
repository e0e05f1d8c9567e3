"""Unit tests for plan administration."""

from datetime import timedelta
from decimal import Decimal

import pytest

from sip_engine.config.scheduler import EngineConfig, RegistryConfig
from sip_engine.data.models import PlanStatus
from sip_engine.errors import (
    ErrorKind,
    ExecutionFailedError,
    InsufficientFundsError,
    PlanNotFoundError,
    PlanValidationError,
    TransientError,
    status_code_for,
)
from sip_engine.execution.engine import ExecutionEngine
from sip_engine.scheduling.reconciler import Reconciler
from sip_engine.scheduling.registry import ScheduleRegistry
from sip_engine.services.plan_service import PlanService, check_transition, parse_amount
from tests.conftest import NOW


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def registry(session_factory, clock):
    return ScheduleRegistry(session_factory, RegistryConfig(), clock=clock)


@pytest.fixture
def service(session_factory, trade_client, registry, no_sleep, clock):
    reconciler = Reconciler(registry, session_factory)
    engine = ExecutionEngine(session_factory, trade_client, EngineConfig(), sleep=no_sleep, clock=clock)
    return PlanService(session_factory, trade_client, reconciler, engine, clock=clock)


async def _create(service, **overrides):
    params = dict(
        wallet_id="wallet-1",
        from_asset="ETH",
        to_asset="USDC",
        amount="10",
        cadence="daily",
    )
    params.update(overrides)
    return await service.create_plan(**params)


# ---------------------------------------------------------------------------
# Tests: create_plan
# ---------------------------------------------------------------------------


class TestCreatePlan:
    """Initial trade and the resulting plan row."""

    @pytest.mark.asyncio
    async def test_success_creates_active_scheduled_plan(self, service, registry, trade_client):
        result = await _create(service)

        assert result.succeeded
        plan = result.plan
        assert plan["status"] == PlanStatus.ACTIVE
        assert plan["total_executions"] == 1
        assert plan["last_execution"] == NOW.isoformat()
        assert plan["next_execution"] == (NOW + timedelta(days=1)).isoformat()
        assert result.initial_trade["trade_id"] == "trade-1"
        trade_client.execute_trade.assert_awaited_once_with("wallet-1", Decimal("10"), "ETH", "USDC")
        assert registry.get_trigger(plan["id"]) is not None

    @pytest.mark.asyncio
    async def test_insufficient_funds_creates_unscheduled_plan(self, service, registry, trade_client):
        trade_client.execute_trade.side_effect = InsufficientFundsError("Insufficient ETH")

        result = await _create(service)

        assert not result.succeeded
        assert result.error == "Insufficient funds for initial trade"
        assert result.error_kind == ErrorKind.INSUFFICIENT_FUNDS
        assert result.plan["status"] == PlanStatus.INSUFFICIENT_FUNDS
        assert result.plan["total_executions"] == 0
        assert result.plan["last_error"] == "Insufficient ETH"
        assert registry.list_triggers() == []

    @pytest.mark.asyncio
    async def test_other_failure_creates_paused_plan(self, service, registry, trade_client):
        trade_client.execute_trade.side_effect = TransientError("timeout")

        result = await _create(service)

        assert result.error == "Failed to execute initial trade"
        assert result.error_kind == ErrorKind.TRANSIENT
        assert result.plan["status"] == PlanStatus.PAUSED
        assert registry.list_triggers() == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "overrides",
        [
            {"wallet_id": ""},
            {"from_asset": None},
            {"amount": None},
            {"amount": "0"},
            {"amount": "-5"},
            {"amount": "ten"},
            {"amount": "NaN"},
            {"cadence": "hourly"},
        ],
    )
    async def test_validation_errors(self, service, trade_client, overrides):
        with pytest.raises(PlanValidationError) as exc_info:
            await _create(service, **overrides)
        assert exc_info.value.status_code == 400
        trade_client.execute_trade.assert_not_awaited()
        assert service.list_plans() == []


# ---------------------------------------------------------------------------
# Tests: reads
# ---------------------------------------------------------------------------


class TestReads:
    @pytest.mark.asyncio
    async def test_get_plan(self, service):
        created = (await _create(service)).plan
        assert service.get_plan(created["id"]) == created
        assert service.get_plan(created["id"], wallet_id="wallet-1")["id"] == created["id"]

    @pytest.mark.asyncio
    async def test_get_plan_other_wallet(self, service):
        created = (await _create(service)).plan
        with pytest.raises(PlanNotFoundError):
            service.get_plan(created["id"], wallet_id="wallet-2")

    def test_get_missing_plan(self, service):
        with pytest.raises(PlanNotFoundError) as exc_info:
            service.get_plan(123)
        assert exc_info.value.status_code == 404

    @pytest.mark.asyncio
    async def test_list_plans_newest_first(self, service, clock):
        first = (await _create(service)).plan
        clock.now = NOW + timedelta(minutes=1)
        second = (await _create(service, cadence="weekly")).plan
        await _create(service, wallet_id="wallet-2")

        plans = service.list_plans("wallet-1")
        assert [p["id"] for p in plans] == [second["id"], first["id"]]
        assert len(service.list_plans()) == 3


# ---------------------------------------------------------------------------
# Tests: status and updates
# ---------------------------------------------------------------------------


class TestUpdates:
    """Status transitions keep the schedule in step."""

    @pytest.mark.asyncio
    async def test_pause_deregisters(self, service, registry):
        plan_id = (await _create(service)).plan["id"]
        plan = service.pause(plan_id, "wallet-1")
        assert plan["status"] == PlanStatus.PAUSED
        assert registry.get_trigger(plan_id) is None

    @pytest.mark.asyncio
    async def test_resume_reregisters(self, service, registry):
        plan_id = (await _create(service)).plan["id"]
        service.pause(plan_id, "wallet-1")
        plan = service.resume(plan_id, "wallet-1")
        assert plan["status"] == PlanStatus.ACTIVE
        assert registry.get_trigger(plan_id) is not None

    @pytest.mark.asyncio
    async def test_resume_after_insufficient_funds(self, service, registry, trade_client):
        trade_client.execute_trade.side_effect = InsufficientFundsError("Insufficient ETH")
        plan_id = (await _create(service)).plan["id"]

        service.update_status(plan_id, "wallet-1", "active")
        assert registry.get_trigger(plan_id) is not None

    @pytest.mark.asyncio
    async def test_completed_deregisters(self, service, registry):
        plan_id = (await _create(service)).plan["id"]
        service.update_status(plan_id, "wallet-1", "completed")
        assert registry.get_trigger(plan_id) is None

    @pytest.mark.asyncio
    async def test_invalid_status(self, service, registry):
        plan_id = (await _create(service)).plan["id"]
        with pytest.raises(PlanValidationError):
            service.update_status(plan_id, "wallet-1", "deleted")
        assert service.get_plan(plan_id)["status"] == PlanStatus.ACTIVE
        assert registry.get_trigger(plan_id) is not None

    @pytest.mark.asyncio
    async def test_completed_plan_cannot_be_resumed(self, service, registry):
        plan_id = (await _create(service)).plan["id"]
        service.update_status(plan_id, "wallet-1", "completed")

        with pytest.raises(PlanValidationError) as exc_info:
            service.resume(plan_id, "wallet-1")

        assert status_code_for(exc_info.value) == 400
        assert service.get_plan(plan_id)["status"] == PlanStatus.COMPLETED
        assert registry.get_trigger(plan_id) is None

    @pytest.mark.asyncio
    async def test_out_of_funds_plan_cannot_be_paused(self, service, trade_client):
        trade_client.execute_trade.side_effect = InsufficientFundsError("Insufficient ETH")
        plan_id = (await _create(service)).plan["id"]

        with pytest.raises(PlanValidationError):
            service.pause(plan_id, "wallet-1")
        assert service.get_plan(plan_id)["status"] == PlanStatus.INSUFFICIENT_FUNDS

    @pytest.mark.asyncio
    async def test_rejected_transition_writes_nothing(self, service):
        plan_id = (await _create(service)).plan["id"]
        service.update_status(plan_id, "wallet-1", "completed")

        with pytest.raises(PlanValidationError):
            service.update_plan(plan_id, "wallet-1", amount="99", status="active")
        assert Decimal(service.get_plan(plan_id)["amount"]) == Decimal("10")

    @pytest.mark.parametrize(
        "current,new,allowed",
        [
            ("active", "paused", True),
            ("active", "completed", True),
            ("active", "insufficient_funds", False),
            ("paused", "active", True),
            ("paused", "paused", True),
            ("insufficient_funds", "active", True),
            ("insufficient_funds", "paused", False),
            ("completed", "active", False),
            ("completed", "paused", False),
        ],
    )
    def test_transition_table(self, current, new, allowed):
        if allowed:
            check_transition(current, new)
        else:
            with pytest.raises(PlanValidationError):
                check_transition(current, new)

    @pytest.mark.asyncio
    async def test_cadence_change_recomputes_next_execution(self, service, registry, clock):
        plan_id = (await _create(service)).plan["id"]
        clock.now = NOW + timedelta(hours=2)

        plan = service.update_plan(plan_id, "wallet-1", cadence="weekly")

        assert plan["cadence"] == "weekly"
        assert plan["next_execution"] == (clock.now + timedelta(days=7)).isoformat()
        trigger = registry.get_trigger(plan_id)
        assert trigger.payload["cadence"] == "weekly"
        assert trigger.pattern == "30 11 * * 1"

    @pytest.mark.asyncio
    async def test_amount_update(self, service):
        plan_id = (await _create(service)).plan["id"]
        plan = service.update_plan(plan_id, "wallet-1", amount="25.5")
        assert Decimal(plan["amount"]) == Decimal("25.5")

    @pytest.mark.asyncio
    async def test_invalid_update_applies_nothing(self, service):
        plan_id = (await _create(service)).plan["id"]
        with pytest.raises(PlanValidationError):
            service.update_plan(plan_id, "wallet-1", amount="15", cadence="yearly")
        assert Decimal(service.get_plan(plan_id)["amount"]) == Decimal("10")

    @pytest.mark.asyncio
    async def test_unknown_field(self, service):
        plan_id = (await _create(service)).plan["id"]
        with pytest.raises(PlanValidationError):
            service.update_plan(plan_id, "wallet-1", wallet_id="wallet-9")

    def test_empty_update(self, service):
        with pytest.raises(PlanValidationError):
            service.update_plan(1, "wallet-1")

    @pytest.mark.asyncio
    async def test_update_other_wallet(self, service):
        plan_id = (await _create(service)).plan["id"]
        with pytest.raises(PlanNotFoundError):
            service.update_plan(plan_id, "wallet-2", amount="5")


# ---------------------------------------------------------------------------
# Tests: delete and execute
# ---------------------------------------------------------------------------


class TestDeleteAndExecute:
    @pytest.mark.asyncio
    async def test_delete_deregisters(self, service, registry):
        plan_id = (await _create(service)).plan["id"]
        service.delete_plan(plan_id, "wallet-1")

        assert registry.get_trigger(plan_id) is None
        with pytest.raises(PlanNotFoundError):
            service.get_plan(plan_id)

    def test_delete_missing(self, service):
        with pytest.raises(PlanNotFoundError):
            service.delete_plan(42, "wallet-1")

    @pytest.mark.asyncio
    async def test_execute_now(self, service, clock):
        plan_id = (await _create(service)).plan["id"]
        clock.now = NOW + timedelta(hours=1)

        result = await service.execute_now(plan_id)

        assert result.next_execution == clock.now + timedelta(days=1)
        assert service.get_plan(plan_id)["total_executions"] == 2

    @pytest.mark.asyncio
    async def test_execute_now_out_of_funds_deregisters(self, service, registry, trade_client):
        plan_id = (await _create(service)).plan["id"]
        trade_client.execute_trade.side_effect = InsufficientFundsError("Insufficient ETH")

        with pytest.raises(ExecutionFailedError) as exc_info:
            await service.execute_now(plan_id)

        assert exc_info.value.status_code == 402
        assert registry.get_trigger(plan_id) is None

    @pytest.mark.asyncio
    async def test_execute_now_exhausted_deregisters(self, service, registry, trade_client):
        plan_id = (await _create(service)).plan["id"]
        trade_client.execute_trade.side_effect = TransientError("timeout")

        with pytest.raises(ExecutionFailedError) as exc_info:
            await service.execute_now(plan_id)

        assert exc_info.value.status == PlanStatus.PAUSED
        assert registry.get_trigger(plan_id) is None

    @pytest.mark.asyncio
    async def test_execute_now_missing(self, service):
        with pytest.raises(PlanNotFoundError):
            await service.execute_now(77)

    @pytest.mark.asyncio
    async def test_history(self, service, trade_client):
        plan_id = (await _create(service)).plan["id"]
        await service.execute_now(plan_id)
        trade_client.execute_trade.side_effect = TransientError("timeout")
        with pytest.raises(ExecutionFailedError):
            await service.execute_now(plan_id)

        history = service.history(plan_id)
        assert [h["outcome"] for h in history] == ["failed", "succeeded"]
        assert history[0]["error_kind"] == "transient"


class TestParseAmount:
    def test_parses_decimal(self):
        assert parse_amount("0.0001") == Decimal("0.0001")
        assert parse_amount(5) == Decimal("5")

    @pytest.mark.parametrize("value", ["0", "-1", "abc", "inf"])
    def test_rejects(self, value):
        with pytest.raises(PlanValidationError):
            parse_amount(value)

"""Unit tests for the error taxonomy and failure classifier."""

import pytest

from sip_engine.errors import (
    ErrorKind,
    ExecutionFailedError,
    InsufficientFundsError,
    PlanNotActiveError,
    PlanNotFoundError,
    PlanValidationError,
    RegistryClosedError,
    TransientError,
    classify_error,
    is_insufficient_funds,
    status_code_for,
)


class TestTypedClassification:
    """Errors raised by the engine classify by their tag."""

    @pytest.mark.parametrize(
        "error, kind",
        [
            (PlanNotFoundError("gone"), ErrorKind.NOT_FOUND),
            (PlanNotActiveError("paused"), ErrorKind.NOT_ACTIVE),
            (InsufficientFundsError("short"), ErrorKind.INSUFFICIENT_FUNDS),
            (PlanValidationError("bad"), ErrorKind.VALIDATION),
            (TransientError("blip"), ErrorKind.TRANSIENT),
            (RegistryClosedError("closed"), ErrorKind.TRANSIENT),
        ],
    )
    def test_tag_wins(self, error, kind):
        assert classify_error(error) == kind

    def test_tag_wins_over_misleading_message(self):
        """A typed transient error mentioning 'balance' stays transient."""
        assert classify_error(TransientError("balance service timed out")) == ErrorKind.TRANSIENT

    def test_execution_failed_takes_kind_of_cause(self):
        cause = InsufficientFundsError("Insufficient USDC")
        error = ExecutionFailedError("gave up", plan_id=3, status="insufficient_funds", cause=cause)
        assert error.kind == ErrorKind.INSUFFICIENT_FUNDS
        assert error.status_code == 402
        assert error.plan_id == 3
        assert error.status == "insufficient_funds"

    def test_execution_failed_without_cause_is_transient(self):
        assert ExecutionFailedError("gave up").kind == ErrorKind.TRANSIENT


class TestKeywordFallback:
    """Plain exceptions classify by keyword."""

    @pytest.mark.parametrize(
        "message",
        [
            "Insufficient funds in wallet",
            "Not enough funds to cover trade",
            "ETH balance too low",
            "INSUFFICIENT LIQUIDITY",
        ],
    )
    def test_insufficient_funds_keywords(self, message):
        assert classify_error(Exception(message)) == ErrorKind.INSUFFICIENT_FUNDS

    def test_not_found_keyword(self):
        assert classify_error(LookupError("Wallet not found")) == ErrorKind.NOT_FOUND

    def test_not_active_keyword(self):
        assert classify_error(RuntimeError("plan is not active")) == ErrorKind.NOT_ACTIVE

    @pytest.mark.parametrize(
        "message",
        ["amount is required", "missing field: to_token", "Invalid token", "not valid", "incorrect format"],
    )
    def test_validation_keywords(self, message):
        assert classify_error(ValueError(message)) == ErrorKind.VALIDATION

    def test_funds_checked_before_validation(self):
        assert classify_error(Exception("invalid: insufficient balance")) == ErrorKind.INSUFFICIENT_FUNDS

    def test_keywords_in_args_are_seen(self):
        """Structured error args are inspected, not just str()."""
        error = Exception("trade failed", {"reason": "insufficient_funds"})
        assert classify_error(error) == ErrorKind.INSUFFICIENT_FUNDS

    def test_unknown_is_transient(self):
        assert classify_error(ConnectionError("connection reset by peer")) == ErrorKind.TRANSIENT

    def test_none_is_transient(self):
        assert classify_error(None) == ErrorKind.TRANSIENT


class TestStatusCodes:
    """Every kind maps to a status code without string parsing."""

    def test_status_codes(self):
        assert status_code_for(PlanNotFoundError("x")) == 404
        assert status_code_for(InsufficientFundsError("x")) == 402
        assert status_code_for(PlanValidationError("x")) == 400
        assert status_code_for(PlanNotActiveError("x")) == 500
        assert status_code_for(TransientError("x")) == 500
        assert status_code_for(Exception("something broke")) == 500

    def test_is_insufficient_funds(self):
        assert is_insufficient_funds(Exception("not enough funds"))
        assert not is_insufficient_funds(TimeoutError("timeout"))

    def test_to_dict(self):
        error = PlanNotFoundError("SIP not found", plan_id=9)
        assert error.to_dict() == {
            "error": "SIP not found",
            "kind": "not_found",
            "plan_id": 9,
            "status": None,
        }

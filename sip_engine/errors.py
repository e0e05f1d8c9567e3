"""Error taxonomy and failure classification.

Every failure the engine surfaces is one of five kinds. Errors raised by
this package carry their kind as a tag; anything else (errors from the
trade service, the database driver, third-party SDKs) is classified by
keyword inspection so older collaborators that only raise plain
exceptions still map onto the same kinds.
"""

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """Closed set of failure categories."""

    NOT_FOUND = "not_found"
    NOT_ACTIVE = "not_active"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    VALIDATION = "validation"
    TRANSIENT = "transient"


# Status codes the boundary layer should answer with
STATUS_CODES: dict[ErrorKind, int] = {
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.INSUFFICIENT_FUNDS: 402,
    ErrorKind.VALIDATION: 400,
    ErrorKind.NOT_ACTIVE: 500,
    ErrorKind.TRANSIENT: 500,
}

INSUFFICIENT_FUNDS_KEYWORDS = ("insufficient", "balance", "not enough funds")
NOT_FOUND_KEYWORDS = ("not found",)
NOT_ACTIVE_KEYWORDS = ("not active",)
VALIDATION_KEYWORDS = (
    "required",
    "missing field",
    "invalid",
    "not valid",
    "incorrect format",
)


class SIPError(Exception):
    """Base class for all engine errors.

    Attributes:
        plan_id: Plan the failure relates to, when known
        status: Plan status after the failure (status hint for callers)
    """

    kind: ErrorKind = ErrorKind.TRANSIENT

    def __init__(
        self,
        message: str,
        plan_id: Optional[int] = None,
        status: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.plan_id = plan_id
        self.status = status

    @property
    def status_code(self) -> int:
        return STATUS_CODES[self.kind]

    def to_dict(self) -> dict:
        return {
            "error": self.message,
            "kind": self.kind.value,
            "plan_id": self.plan_id,
            "status": self.status,
        }


class PlanNotFoundError(SIPError):
    """Plan (or its trigger) does not exist."""

    kind = ErrorKind.NOT_FOUND


class PlanNotActiveError(SIPError):
    """Plan exists but is not eligible for execution."""

    kind = ErrorKind.NOT_ACTIVE


class InsufficientFundsError(SIPError):
    """Wallet cannot cover the trade. Terminal, never retried."""

    kind = ErrorKind.INSUFFICIENT_FUNDS


class PlanValidationError(SIPError):
    """Malformed cadence, amount, status or missing field on a mutation."""

    kind = ErrorKind.VALIDATION


class TransientError(SIPError):
    """Retryable failure (network, settlement timeout, store hiccup)."""

    kind = ErrorKind.TRANSIENT


class RegistryClosedError(TransientError):
    """Schedule registry was used after close()."""


class ExecutionFailedError(SIPError):
    """Execution engine gave up on a plan.

    The kind follows the final underlying failure, and ``status`` holds the
    plan status the engine wrote (``insufficient_funds`` or ``paused``).
    """

    def __init__(
        self,
        message: str,
        plan_id: Optional[int] = None,
        status: Optional[str] = None,
        cause: Optional[BaseException] = None,
        attempts: int = 0,
    ):
        super().__init__(message, plan_id=plan_id, status=status)
        self.cause = cause
        self.attempts = attempts
        self.kind = classify_error(cause) if cause is not None else ErrorKind.TRANSIENT


def _matches(text: str, keywords: tuple[str, ...]) -> bool:
    return any(keyword in text for keyword in keywords)


def classify_error(error: Optional[BaseException]) -> ErrorKind:
    """Map any failure onto an ErrorKind.

    Typed errors are classified by their tag. Untyped errors fall back to a
    case-insensitive keyword match over the message and arguments.

    Args:
        error: The failure to classify (None classifies as transient)

    Returns:
        ErrorKind for the failure
    """
    if error is None:
        return ErrorKind.TRANSIENT

    if isinstance(error, SIPError):
        return error.kind

    text = f"{error} {error.args!r}".lower()

    if _matches(text, INSUFFICIENT_FUNDS_KEYWORDS):
        return ErrorKind.INSUFFICIENT_FUNDS
    if _matches(text, NOT_FOUND_KEYWORDS):
        return ErrorKind.NOT_FOUND
    if _matches(text, NOT_ACTIVE_KEYWORDS):
        return ErrorKind.NOT_ACTIVE
    if _matches(text, VALIDATION_KEYWORDS):
        return ErrorKind.VALIDATION
    return ErrorKind.TRANSIENT


def is_insufficient_funds(error: Optional[BaseException]) -> bool:
    """True when the failure is a terminal insufficient-funds condition."""
    return classify_error(error) == ErrorKind.INSUFFICIENT_FUNDS


def status_code_for(error: Optional[BaseException]) -> int:
    """HTTP-style status code for a failure (404/402/400/500)."""
    return STATUS_CODES[classify_error(error)]

"""SQLAlchemy models for plans, executions, triggers and jobs."""

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import declarative_base, relationship

from sip_engine.utils.timezone import utc_now

Base = declarative_base()


class PlanStatus:
    """Plan status values."""

    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    INSUFFICIENT_FUNDS = "insufficient_funds"

    ALL = (ACTIVE, PAUSED, COMPLETED, INSUFFICIENT_FUNDS)


class Plan(Base):
    """A recurring trade instruction (SIP)."""

    __tablename__ = "sip_plans"

    id = Column(Integer, primary_key=True, autoincrement=True)
    wallet_id = Column(String(100), nullable=False, index=True)
    from_asset = Column(String(100), nullable=False)
    to_asset = Column(String(100), nullable=False)
    amount = Column(Numeric(36, 18), nullable=False)
    cadence = Column(String(20), nullable=False)
    status = Column(String(30), nullable=False, default=PlanStatus.ACTIVE, index=True)

    last_execution = Column(DateTime, nullable=True)
    next_execution = Column(DateTime, nullable=False)
    total_executions = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)

    created_at = Column(DateTime, nullable=False, default=utc_now)
    updated_at = Column(
        DateTime, nullable=False, default=utc_now, onupdate=utc_now
    )

    executions = relationship(
        "PlanExecution",
        back_populates="plan",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "wallet_id": self.wallet_id,
            "from_asset": self.from_asset,
            "to_asset": self.to_asset,
            "amount": str(self.amount),
            "cadence": self.cadence,
            "status": self.status,
            "last_execution": self.last_execution.isoformat() if self.last_execution else None,
            "next_execution": self.next_execution.isoformat() if self.next_execution else None,
            "total_executions": self.total_executions,
            "last_error": self.last_error,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self) -> str:
        return (
            f"<Plan id={self.id} wallet={self.wallet_id} "
            f"{self.amount} {self.from_asset}->{self.to_asset} "
            f"{self.cadence} status={self.status}>"
        )


class PlanExecution(Base):
    """One execute() call against a plan: its outcome and trade details."""

    __tablename__ = "sip_plan_executions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    plan_id = Column(
        Integer, ForeignKey("sip_plans.id", ondelete="CASCADE"), nullable=False, index=True
    )
    outcome = Column(String(30), nullable=False)  # succeeded | failed
    attempts = Column(Integer, nullable=False, default=0)
    trade_id = Column(String(200), nullable=True)
    transaction_hash = Column(String(200), nullable=True)
    network = Column(String(50), nullable=True)
    error_kind = Column(String(30), nullable=True)
    error_message = Column(Text, nullable=True)
    resulting_status = Column(String(30), nullable=True)
    started_at = Column(DateTime, nullable=False, default=utc_now)
    finished_at = Column(DateTime, nullable=True)

    plan = relationship("Plan", back_populates="executions")


class ScheduleTrigger(Base):
    """Recurring-fire registration for one plan."""

    __tablename__ = "schedule_triggers"

    id = Column(String(120), primary_key=True)  # sip-scheduler-<plan_id>
    queue_name = Column(String(100), nullable=False, default="sip-execution")
    plan_id = Column(Integer, nullable=False, index=True)
    pattern = Column(String(100), nullable=False)
    # Time of day (and weekday or day of month) the pattern is built from
    anchor_at = Column(DateTime, nullable=True)
    payload = Column(JSON, nullable=False, default=dict)
    next_fire_at = Column(DateTime, nullable=False, index=True)
    created_at = Column(DateTime, nullable=False, default=utc_now)
    updated_at = Column(
        DateTime, nullable=False, default=utc_now, onupdate=utc_now
    )


class ExecutionJob(Base):
    """One delivered firing of a trigger."""

    __tablename__ = "execution_jobs"
    __table_args__ = (Index("ix_execution_jobs_status_available", "status", "available_at"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    queue_name = Column(String(100), nullable=False, default="sip-execution")
    name = Column(String(100), nullable=False, default="execute-sip")
    trigger_id = Column(String(120), nullable=True, index=True)
    plan_id = Column(Integer, nullable=False, index=True)
    payload = Column(JSON, nullable=False, default=dict)

    # pending -> active -> completed | failed (pending again on retry)
    status = Column(String(20), nullable=False, default="pending")
    attempts_made = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=3)
    backoff_seconds = Column(Numeric(10, 3), nullable=False, default=1)
    available_at = Column(DateTime, nullable=False, default=utc_now)
    locked_until = Column(DateTime, nullable=True)

    result = Column(JSON, nullable=True)
    last_error = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utc_now)
    finished_at = Column(DateTime, nullable=True)

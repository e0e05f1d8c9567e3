"""Logging configuration using loguru.

Every record carries the SIP and job it belongs to (``-`` outside a
dispatch), so a plan's history can be grepped out of the application log:

    2025-03-11 09:30:01 | INFO     | sip=7 job=42 | ...engine:execute:131 - ...

Sinks:

- console (optional, its own level)
- ``app.log``: everything at the configured level
- ``errors.log``: ERROR and above with full tracebacks
- ``trades.log``: one line per settled trade, written by log_trade()
"""

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Optional

from loguru import logger

NO_CONTEXT = "-"

_CONTEXT = "sip={extra[plan_id]} job={extra[job_id]}"
_CONSOLE_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | "
    "<magenta>" + _CONTEXT + "</magenta> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>"
)
_FILE_FORMAT = (
    "{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | " + _CONTEXT + " | "
    "{name}:{function}:{line} - {message}"
)
_TRADE_FORMAT = (
    "{time:YYYY-MM-DD HH:mm:ss} | sip={extra[plan_id]} wallet={extra[wallet_id]} "
    "trade={extra[trade_id]} tx={extra[tx_hash]} | {message}"
)

# Stdlib loggers of the HTTP and database stack
_QUIET_LOGGERS = ("httpx", "httpcore", "sqlalchemy.engine", "alembic")


def _is_trade(record) -> bool:
    return record["extra"].get("type") == "trade"


def _file_sinks(log_file: str, log_level: str) -> list[dict]:
    log_dir = Path(log_file).parent
    common = {"compression": "zip", "enqueue": True}
    return [
        dict(
            sink=log_file,
            level=log_level,
            format=_FILE_FORMAT,
            rotation="100 MB",
            retention="30 days",
            **common,
        ),
        dict(
            sink=str(log_dir / "errors.log"),
            level="ERROR",
            format=_FILE_FORMAT,
            rotation="50 MB",
            retention="60 days",
            backtrace=True,
            diagnose=True,
            **common,
        ),
        # Audit trail of executed trades, kept for a year
        dict(
            sink=str(log_dir / "trades.log"),
            level="INFO",
            format=_TRADE_FORMAT,
            rotation="50 MB",
            retention="1 year",
            filter=_is_trade,
            **common,
        ),
    ]


def setup_logging(
    log_level: str = "INFO",
    log_file: str = "logs/app.log",
    enable_console: bool = True,
    console_level: Optional[str] = None,
) -> None:
    """Configure loguru sinks for the scheduler.

    Calling it again replaces the previous sinks.

    Args:
        log_level: Level for the application log file
        log_file: Application log path; errors.log and trades.log go beside it
        enable_console: Also log to stdout
        console_level: Console level (defaults to log_level)
    """
    logger.remove()
    logger.configure(extra={"plan_id": NO_CONTEXT, "job_id": NO_CONTEXT})
    Path(log_file).parent.mkdir(parents=True, exist_ok=True)

    if enable_console:
        logger.add(
            sys.stdout,
            level=console_level or log_level,
            format=_CONSOLE_FORMAT,
            colorize=True,
        )
    for sink in _file_sinks(log_file, log_level):
        logger.add(**sink)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logger.info(
        f"Logging initialized: level={log_level}, file={log_file}, console={enable_console}"
    )


@contextmanager
def plan_context(plan_id: int, job_id: Optional[int] = None) -> Iterator[None]:
    """Tag every record logged inside the block with the SIP (and job) id."""
    with logger.contextualize(
        plan_id=plan_id, job_id=job_id if job_id is not None else NO_CONTEXT
    ):
        yield


def log_trade(plan_id: int, trade, attempts: int) -> None:
    """Write a settled trade to trades.log.

    Args:
        plan_id: SIP the trade was executed for
        trade: SettledTrade returned by the trade client
        attempts: Attempts the execution engine needed
    """
    logger.bind(
        type="trade",
        plan_id=plan_id,
        wallet_id=trade.wallet_id,
        trade_id=trade.trade_id,
        tx_hash=trade.transaction_hash or NO_CONTEXT,
    ).info(
        f"{trade.amount} {trade.from_asset} -> {trade.to_asset} "
        f"network={trade.network or NO_CONTEXT} attempts={attempts}"
    )


# Records logged before setup_logging() still need the context keys
logger.remove()
logger.configure(extra={"plan_id": NO_CONTEXT, "job_id": NO_CONTEXT})

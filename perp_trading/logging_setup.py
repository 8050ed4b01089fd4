"""Structured logging setup using loguru.

Trade-log entries are bound with ``engine`` and ``category`` extras (see
``TradeLog.push``); every other record carries ``-`` in both columns.
"""
import sys
from pathlib import Path
from typing import Optional

from loguru import logger as _logger


LOG_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<magenta>{extra[engine]: <5}</magenta> | <magenta>{extra[category]: <5}</magenta> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - "
    "<level>{message}</level>"
)

# One line per trade event, for tailing a running engine
TRADE_LOG_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {extra[engine]} | {extra[category]: <5} | {message}"

UNTAGGED = "-"


def is_trade_event(record) -> bool:
    return record["extra"].get("category", UNTAGGED) != UNTAGGED


def setup_logging(
    log_file: str = "perp_trading.log",
    level: str = "INFO",
    enable_console: bool = True,
    trade_log_file: Optional[str] = None,
) -> None:
    """Configure structured logging for the trading engines.

    Args:
        log_file: Path to log file (in project root by default)
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        enable_console: Whether to log to console as well
        trade_log_file: Optional file receiving only trade-log events
            (opens, closes, stop moves, order failures), at every level
    """
    _logger.remove()
    _logger.configure(extra={"engine": UNTAGGED, "category": UNTAGGED})

    log_path = Path(log_file)
    log_path.parent.mkdir(parents=True, exist_ok=True)
    _logger.add(
        str(log_path),
        format=LOG_FORMAT,
        level=level,
        rotation="100 MB",
        retention="7 days",
    )

    if trade_log_file:
        trade_path = Path(trade_log_file)
        trade_path.parent.mkdir(parents=True, exist_ok=True)
        _logger.add(
            str(trade_path),
            format=TRADE_LOG_FORMAT,
            level="DEBUG",
            filter=is_trade_event,
            rotation="1 day",
            retention="30 days",
        )

    if enable_console:
        _logger.add(
            sys.stdout,
            format=LOG_FORMAT,
            level=level,
            colorize=True,
        )


# Get logger for use in modules
logger = _logger

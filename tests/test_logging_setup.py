import sys

import pytest

from perp_trading.logging_setup import logger, setup_logging
from perp_trading.trade_log import TradeLog


@pytest.fixture
def restore_logger():
    yield
    logger.remove()
    logger.add(sys.stderr)


def test_trade_log_entries_show_engine_and_category(tmp_path, restore_logger):
    log_file = tmp_path / "logs" / "engine.log"
    setup_logging(log_file=str(log_file), level="INFO", enable_console=False)

    log = TradeLog(name="trend")
    log.push("warn", "STOP_MARKET operation timed out, lock released")
    logger.info("Stream started")
    logger.complete()

    lines = log_file.read_text().splitlines()
    warn_line = next(line for line in lines if "timed out" in line)
    assert "WARNING" in warn_line
    assert "| trend | warn  |" in warn_line
    assert warn_line.endswith("- STOP_MARKET operation timed out, lock released")
    plain_line = next(line for line in lines if "Stream started" in line)
    assert "| -     | -     |" in plain_line


def test_trade_log_file_receives_only_trade_events(tmp_path, restore_logger):
    log_file = tmp_path / "engine.log"
    trade_file = tmp_path / "trades" / "maker.log"
    setup_logging(log_file=str(log_file), level="WARNING", enable_console=False, trade_log_file=str(trade_file))

    log = TradeLog(name="maker")
    log.push("order", "Limit order placed | BUY @ 99.9")
    logger.warning("Rate limited, backing off")
    logger.complete()

    trades = trade_file.read_text()
    assert "| maker | order | Limit order placed | BUY @ 99.9" in trades
    assert "Rate limited" not in trades
    # INFO trade events stay out of the WARNING-level main log
    main = log_file.read_text()
    assert "Limit order placed" not in main
    assert "Rate limited, backing off" in main

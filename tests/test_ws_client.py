import pytest

from perp_trading.ws_client import RealTimeWebSocketClient, combined_stream_url


def test_combined_stream_url():
    url = combined_stream_url("wss://fstream.asterdex.com/", ["btcusdt@ticker", "btcusdt@depth20@100ms"])
    assert url == "wss://fstream.asterdex.com/stream?streams=btcusdt@ticker/btcusdt@depth20@100ms"


def test_backoff_is_capped():
    for attempt in range(8):
        delay = RealTimeWebSocketClient._jittered_backoff(attempt, max_backoff=4.0)
        assert 0 <= delay <= 4.0 * 1.25


@pytest.mark.asyncio
async def test_stop_before_start_is_safe():
    client = RealTimeWebSocketClient()
    assert not client.running
    await client.stop()
    assert not client.running

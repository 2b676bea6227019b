import logging
from unittest.mock import AsyncMock

import pytest

from core.command_handler import CommandService, normalize_command
from modules.engine import CycleResult

H = 3_600_000
T0 = 1_699_999_200_000


@pytest.fixture
def service(config, engine, store, notifier, clock):
    return CommandService(config, engine, store, notifier, logging.getLogger("test-commands"), clock=clock)


@pytest.mark.parametrize("text, expected", [
    ("/status", "/status"),
    ("/Scan@xsp_bot now", "/scan"),
    ("  /help", ""),
    ("hello", ""),
    ("", ""),
])
def test_normalize_command(text, expected):
    assert normalize_command(text) == expected


@pytest.mark.asyncio
async def test_offset_persisted_before_handling(service, store, notifier, engine):
    notifier.push(7, "/help")
    notifier.push(9, "/unknown")
    seen = {}

    async def help_handler(msg):
        seen["offset"] = store.get_runtime_int(engine.key_telegram_offset)

    service.handlers["/help"] = help_handler
    handled = await service.poll_once()

    assert handled == 1
    assert seen["offset"] == 10
    assert store.get_runtime_int(engine.key_telegram_offset) == 10


@pytest.mark.asyncio
async def test_no_updates_keeps_offset(service, store, engine):
    assert await service.poll_once() == 0
    assert store.get_runtime_int(engine.key_telegram_offset) == 0


@pytest.mark.asyncio
async def test_foreign_chat_ignored(service, notifier):
    notifier.push(1, "/status", chat_id="999")
    assert await service.poll_once() == 0
    assert notifier.sent == []


@pytest.mark.asyncio
async def test_status_lists_open_positions(service, notifier, make_position, store):
    pos = make_position("AAAUSDT", entry_ts=T0 + 8 * H)
    store.conn.execute(
        "UPDATE positions SET latest_leveraged_return_pct = 12.5 WHERE id = ?", (pos.id,)
    )
    notifier.push(1, "/xsp")

    await service.poll_once()

    chat_id, text = notifier.sent[-1]
    assert chat_id == "42"
    assert "XSP v16 Paper" in text
    assert "Tracked coins: 1" in text
    assert "AAAUSDT" in text
    assert "+12.50%" in text
    assert "| 2:00" in text
    assert "📊 Live Totals" in text


@pytest.mark.asyncio
async def test_status_empty_book(service, notifier):
    notifier.push(1, "/status")
    await service.poll_once()
    assert "(none)" in notifier.texts[-1]


@pytest.mark.asyncio
async def test_scan_reports_completion(service, notifier, engine):
    engine.run_cycle = AsyncMock(return_value=CycleResult(True))
    notifier.push(1, "/scan")

    await service.poll_once()

    engine.run_cycle.assert_awaited_once_with("manual")
    assert notifier.texts == ["Manual scan requested. Running now...", "Manual scan complete."]


@pytest.mark.asyncio
async def test_scan_reports_skip_reason(service, notifier, engine):
    async with engine._cycle_lock:
        notifier.push(1, "/scan")
        await service.poll_once()
    assert notifier.texts[-1] == "Manual scan skipped (cycle_in_progress)."


@pytest.mark.asyncio
async def test_alerts_replayed_oldest_first(service, notifier, store):
    for i in range(7):
        store.insert_alert("EXIT_TP", f"S{i}USDT", f"alert {i} <= x", None, None)
    notifier.push(1, "/alerts")

    await service.poll_once()

    assert notifier.texts == ["Resending last 5 alerts...", *(f"alert {i} ≤ x" for i in range(2, 7))]


@pytest.mark.asyncio
async def test_single_alert_preface_is_singular(service, notifier, store):
    store.insert_alert("ENTRY_OPEN_SHORT", "AUSDT", "entry", None, None)
    notifier.push(1, "/alerts")

    await service.poll_once()

    assert notifier.texts == ["Resending last 1 alert...", "entry"]


@pytest.mark.asyncio
async def test_alerts_empty(service, notifier):
    notifier.push(1, "/alerts")
    await service.poll_once()
    assert notifier.texts == ["No alerts found in DB yet."]


@pytest.mark.asyncio
async def test_failing_command_does_not_stop_batch(service, notifier):
    async def boom(msg):
        raise RuntimeError("boom")

    service.handlers["/status"] = boom
    notifier.push(1, "/status")
    notifier.push(2, "/help")

    assert await service.poll_once() == 1
    assert "/scan" in notifier.texts[-1]


def test_start_is_noop_when_disabled(config, engine, store, notifier):
    notifier.enabled = False
    svc = CommandService(config, engine, store, notifier)
    svc.start()
    assert svc.scheduler.running is False

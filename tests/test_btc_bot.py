import threading
from unittest.mock import MagicMock

import pandas as pd
import pytest
import requests

import btc_bot
import market_data
from http_client import BadStatus, MalformedPayload, TransportError
from top_assets import AssetRecord


class FakeSink:
    def __init__(self, batches, stop):
        self.batches = list(batches)
        self.stop = stop
        self.offsets = []
        self.sent = []

    def get_updates(self, offset, timeout):
        self.offsets.append(offset)
        if self.batches:
            return self.batches.pop(0)
        self.stop.set()
        return []

    def send_message(self, chat_id, text):
        self.sent.append((chat_id, text))
        return True


def update(update_id, text, chat_id=42):
    return {"update_id": update_id, "message": {"text": text, "chat": {"id": chat_id}}}


def test_fmt_usd_abbrev():
    assert btc_bot.fmt_usd_abbrev(1.5e12) == "$1.50T"
    assert btc_bot.fmt_usd_abbrev(9.5e8) == "$950.00M"
    assert btc_bot.fmt_usd_abbrev(2.4e10) == "$24.00B"
    assert btc_bot.fmt_usd_abbrev(2345.0) == "$2,345.00"


def test_format_top_assets():
    text = btc_bot.format_top_assets([AssetRecord(1, "Bitcoin", "BTC", 1.3e12),
                                      AssetRecord(2, "Solana", "", 8e10)])
    assert text.splitlines() == ["Top assets by market cap:",
                                 "1. Bitcoin (BTC): $1.30T",
                                 "2. Solana: $80.00B"]


@pytest.mark.parametrize("text, expected", [
    ("/btc", ("btc", 42)),
    ("/Fees@BtcStatsBot", ("fees", 42)),
    ("/top now please", ("top", 42)),
    ("hello", None),
    ("/", None),
])
def test_parse_command(text, expected):
    assert btc_bot.parse_command(update(1, text)) == expected


def test_parse_command_ignores_non_message_updates():
    assert btc_bot.parse_command({"update_id": 1, "edited_message": {}}) is None


def test_run_command_sends_reply(monkeypatch):
    monkeypatch.setattr(market_data, "btc_price", lambda session=None: 64250.5)
    sink = MagicMock()
    btc_bot.run_command("btc", 42, sink)
    sink.send_message.assert_called_once_with(42, "Current BTC price: $64,250.50")


def test_total_failure_sends_exactly_one_apology(fake_session):
    sink = MagicMock()
    btc_bot.run_command("top", 42, sink, session=fake_session({}))
    sink.send_message.assert_called_once()
    chat_id, text = sink.send_message.call_args[0]
    assert chat_id == 42
    assert text == btc_bot.apology("top assets by market cap")
    assert "http" not in text


def test_unexpected_error_still_apologizes(monkeypatch):
    def boom(session=None):
        raise ZeroDivisionError("internal detail")
    monkeypatch.setattr(market_data, "block_height", boom)
    sink = MagicMock()
    btc_bot.run_command("block", 7, sink)
    sink.send_message.assert_called_once_with(7, btc_bot.apology("BTC block number"))


def test_unknown_command_is_ignored():
    sink = MagicMock()
    btc_bot.run_command("moon", 42, sink)
    sink.send_message.assert_not_called()


def test_cmd_ath_formats_date(monkeypatch):
    when = pd.Timestamp("2024-03-04T07:10:36Z")
    monkeypatch.setattr(market_data, "all_time_high", lambda session=None: (73738.0, when))
    assert btc_bot.cmd_ath() == "Bitcoin All-Time High: $73,738.00 (reached on March 4, 2024)"


def test_cmd_change_lists_periods_in_order(monkeypatch):
    monkeypatch.setattr(market_data, "btc_price", lambda session=None: 110.0)
    monkeypatch.setattr(market_data, "price_history", lambda session=None: pd.Series(dtype=float))
    monkeypatch.setattr(market_data, "price_changes",
                        lambda current, history: {"1 Year": 50.0, "1 Day": -1.25})
    assert btc_bot.cmd_change().splitlines() == ["Percentage changes in BTC price:",
                                                 "1 Day: -1.25%", "1 Year: +50.00%"]


def test_help_lists_commands():
    text = btc_bot.cmd_help()
    assert "/top" in text and "/hashrate" in text
    assert "/start" not in text


def test_poll_dispatches_commands_and_advances_offset(monkeypatch):
    monkeypatch.setitem(btc_bot.COMMANDS, "btc", ("BTC price", lambda session: "price!"))
    stop = threading.Event()
    sink = FakeSink([[update(10, "/btc"), update(11, "just chatting")],
                     [update(12, "/btc", chat_id=99)]], stop)

    btc_bot.poll_forever(sink, stop=stop)

    assert sink.offsets == [None, 12, 13]
    assert sorted(sink.sent) == [(42, "price!"), (99, "price!")]


# -----------------------------
# transport / bootstrap
# -----------------------------
def test_send_message_retries_once_on_429(monkeypatch, response):
    limited = response(status=429, json_data={"ok": False, "parameters": {"retry_after": 2}})
    limited.headers = {}
    calls, sleeps = [], []

    def fake_post(url, json=None, timeout=None):
        calls.append(json)
        return limited if len(calls) == 1 else response(status=200, json_data={"ok": True})

    monkeypatch.setattr(btc_bot.requests, "post", fake_post)
    monkeypatch.setattr(btc_bot.time, "sleep", sleeps.append)

    assert btc_bot.TelegramSink("TOKEN").send_message(42, "hi") is True
    assert len(calls) == 2
    assert sleeps == [2.5]


def test_send_message_returns_false_on_request_error(monkeypatch):
    def fake_post(url, json=None, timeout=None):
        raise requests.ConnectionError(f"cannot reach {url}")

    monkeypatch.setattr(btc_bot.requests, "post", fake_post)
    assert btc_bot.TelegramSink("TOKEN").send_message(42, "hi") is False


@pytest.mark.parametrize("headers, body, expected", [
    ({"Retry-After": "3"}, None, 3.0),
    ({"Retry-After": "Wed, 21 Oct 2015 07:28:00 GMT"}, {"parameters": {"retry_after": 5}}, 5.0),
    ({"Retry-After": "Wed, 21 Oct 2015 07:28:00 GMT"}, None, 1.0),
    ({}, {"ok": False}, 1.0),
])
def test_retry_after_sec(response, headers, body, expected):
    r = response(status=429, json_data=body)
    r.headers = headers
    assert btc_bot.retry_after_sec(r) == expected


def test_get_updates_returns_result(monkeypatch, response):
    seen = {}

    def fake_get(url, params=None, timeout=None):
        seen.update(params)
        return response(json_data={"ok": True, "result": [update(5, "/btc")]})

    monkeypatch.setattr(btc_bot.requests, "get", fake_get)
    assert btc_bot.TelegramSink("TOKEN").get_updates(5, 30) == [update(5, "/btc")]
    assert seen["offset"] == 5


@pytest.mark.parametrize("outcome, error", [
    ({"status": 502}, BadStatus),
    ({"json_data": {"ok": False, "description": "Unauthorized"}}, MalformedPayload),
    ({"text": "<html>"}, MalformedPayload),
])
def test_get_updates_errors(monkeypatch, response, outcome, error):
    monkeypatch.setattr(btc_bot.requests, "get", lambda url, params=None, timeout=None: response(**outcome))
    with pytest.raises(error):
        btc_bot.TelegramSink("TOKEN").get_updates(None, 30)


def test_get_updates_transport_error_hides_token(monkeypatch):
    def fake_get(url, params=None, timeout=None):
        raise requests.Timeout(f"{url} timed out")

    monkeypatch.setattr(btc_bot.requests, "get", fake_get)
    with pytest.raises(TransportError) as exc:
        btc_bot.TelegramSink("SECRET").get_updates(None, 30)
    assert "SECRET" not in str(exc.value)


def test_poll_keeps_going_after_polling_error(monkeypatch):
    monkeypatch.setitem(btc_bot.CONFIG["telegram"], "sleep_after_poll_error_sec", 0)
    monkeypatch.setitem(btc_bot.COMMANDS, "btc", ("BTC price", lambda session: "price!"))
    stop = threading.Event()

    class FlakySink(FakeSink):
        def get_updates(self, offset, timeout):
            if not self.offsets:
                self.offsets.append(offset)
                raise TransportError("telegram getUpdates: ConnectionError")
            return super().get_updates(offset, timeout)

    sink = FlakySink([[update(3, "/btc")]], stop)
    btc_bot.poll_forever(sink, stop=stop)

    assert sink.offsets == [None, None, 4]
    assert sink.sent == [(42, "price!")]


def test_main_requires_bot_token(monkeypatch):
    monkeypatch.setitem(btc_bot.CONFIG["telegram"], "bot_token", "")
    assert btc_bot.main() == 1


def test_main_rejects_non_numeric_health_port(monkeypatch):
    monkeypatch.setitem(btc_bot.CONFIG["telegram"], "bot_token", "TOKEN")
    monkeypatch.setitem(btc_bot.CONFIG["health"], "port", "eighty")
    started = []
    monkeypatch.setattr(btc_bot, "start_health_server", started.append)
    assert btc_bot.main() == 1
    assert started == []


def test_health_endpoint():
    httpd = btc_bot.start_health_server(0)
    try:
        r = requests.get(f"http://127.0.0.1:{httpd.server_address[1]}/", timeout=5)
    finally:
        httpd.shutdown()
        httpd.server_close()
    assert r.status_code == 200
    assert r.text == "Hello, this is the BTC Bot!"

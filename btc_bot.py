# -*- coding: utf-8 -*-
"""
btc_bot.py – Telegram bot answering /commands with Bitcoin market statistics

Commands
  /btc       spot price (CoinGecko)
  /block     current block height (mempool.space)
  /fees      low / medium / high fee of an average tx in USD
  /marketcap BTC market cap (top-assets fallback chain)
  /top       top 10 assets by market cap (top-assets fallback chain)
  /hashrate  network hashrate
  /change    % price change over 1d … 1y
  /ath       all-time high and its date
  /start, /help

Each incoming command is handled on its own worker thread; a failed fetch
answers with one short apology, never with error details.

Environment:
  BOT_TOKEN                (required)
  COINGECKO_DEMO_API_KEY   (optional)  or  COINGECKO_PRO_API_KEY
  HEALTH_PORT              (default 8080)
  LOG_LEVEL                (default INFO)
"""

import logging
import os
import sys
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from http.server import BaseHTTPRequestHandler, HTTPServer
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import requests

import market_data
from http_client import BadStatus, MalformedPayload, MarketDataError, TransportError
from top_assets import AssetRecord, btc_market_cap, fetch_top_assets

# -----------------------------
# CONFIG
# -----------------------------
CONFIG = {
    "telegram": {
        "bot_token": os.getenv("BOT_TOKEN", "").strip(),
        "api_base": "https://api.telegram.org",
        "poll_timeout_sec": 60,
        "send_timeout_sec": 20,
        "workers": 8,                      # concurrent command handlers
        "sleep_after_poll_error_sec": 3.0,
    },
    "health": {
        "port": os.getenv("HEALTH_PORT", "8080").strip() or "8080",
    },
    "hashrate": {"display_unit": "EH/s"},
    "logging": {"level": os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO"},
}

# -----------------------------
# LOGGING
# -----------------------------
logging.basicConfig(level=getattr(logging, CONFIG["logging"]["level"], logging.INFO),
                    format="%(asctime)s [%(levelname)s] %(message)s")
logger = logging.getLogger("btc_bot")

# -----------------------------
# TELEGRAM
# -----------------------------
def retry_after_sec(r: requests.Response) -> float:
    """Retry-After header, else Telegram's parameters.retry_after, else 1s."""
    try:
        return float(r.headers.get("Retry-After", ""))
    except (TypeError, ValueError):
        pass
    try:
        return float(r.json()["parameters"]["retry_after"])
    except (KeyError, TypeError, ValueError):
        return 1.0


class TelegramSink:
    """send_message(chat_id, text) over the Bot API; also pulls updates via long polling."""

    def __init__(self, token: str, api_base: str = CONFIG["telegram"]["api_base"]):
        self._url = f"{api_base}/bot{token}"

    def send_message(self, chat_id: int, text: str) -> bool:
        payload = {"chat_id": chat_id, "text": text, "disable_web_page_preview": True}
        timeout = CONFIG["telegram"]["send_timeout_sec"]
        try:
            r = requests.post(f"{self._url}/sendMessage", json=payload, timeout=timeout)
            if r.status_code == 429:
                time.sleep(retry_after_sec(r) + 0.5)
                r = requests.post(f"{self._url}/sendMessage", json=payload, timeout=timeout)
            if r.status_code == 200:
                logger.info(f"Message sent to {chat_id}")
                return True
            logger.error(f"Telegram sendMessage error {r.status_code}: {r.text[:200]}")
        except requests.RequestException as e:
            # the exception text embeds the bot token in the URL
            logger.error(f"Telegram sendMessage failed: {type(e).__name__}")
        return False

    def get_updates(self, offset: Optional[int], timeout: int) -> List[Dict[str, Any]]:
        params = {"timeout": timeout, "allowed_updates": '["message"]'}
        if offset is not None:
            params["offset"] = offset
        try:
            r = requests.get(f"{self._url}/getUpdates", params=params, timeout=timeout + 10)
        except requests.RequestException as e:
            raise TransportError(f"telegram getUpdates: {type(e).__name__}") from e
        if r.status_code != 200:
            raise BadStatus("telegram getUpdates", r.status_code)
        try:
            data = r.json()
        except ValueError as e:
            raise MalformedPayload("telegram getUpdates: invalid JSON") from e
        if not isinstance(data, dict) or not data.get("ok"):
            raise MalformedPayload("telegram getUpdates: ok=false")
        return data.get("result") or []


# -----------------------------
# FORMATTING
# -----------------------------
def fmt_usd_abbrev(v: float) -> str:
    if v >= 1e12:
        return f"${v / 1e12:.2f}T"
    if v >= 1e9:
        return f"${v / 1e9:.2f}B"
    if v >= 1e6:
        return f"${v / 1e6:.2f}M"
    return f"${v:,.2f}"


def format_top_assets(records: Sequence[AssetRecord]) -> str:
    lines = ["Top assets by market cap:"]
    for rec in records:
        label = f"{rec.name} ({rec.symbol})" if rec.symbol else rec.name
        lines.append(f"{rec.rank}. {label}: {fmt_usd_abbrev(rec.market_cap_usd)}")
    return "\n".join(lines)


def format_changes(changes: Dict[str, float]) -> str:
    lines = ["Percentage changes in BTC price:"]
    for label, _days in market_data.PERIODS:
        if label in changes:
            lines.append(f"{label}: {changes[label]:+.2f}%")
    return "\n".join(lines)


# -----------------------------
# COMMANDS (each returns the reply text)
# -----------------------------
def cmd_btc(session: Optional[requests.Session] = None) -> str:
    return f"Current BTC price: ${market_data.btc_price(session):,.2f}"


def cmd_block(session: Optional[requests.Session] = None) -> str:
    return f"Current BTC block number: {market_data.block_height(session):,}"


def cmd_fees(session: Optional[requests.Session] = None) -> str:
    fees = market_data.recommended_fees(session=session)
    return ("BTC Transaction Fees:\n"
            f"Low: ${fees['low']:.2f}\nMedium: ${fees['medium']:.2f}\nHigh: ${fees['high']:.2f}")


def cmd_marketcap(session: Optional[requests.Session] = None) -> str:
    return f"Current BTC market cap: {fmt_usd_abbrev(btc_market_cap(session))}"


def cmd_top(session: Optional[requests.Session] = None) -> str:
    return format_top_assets(fetch_top_assets(session).records)


def cmd_hashrate(session: Optional[requests.Session] = None) -> str:
    unit = CONFIG["hashrate"]["display_unit"]
    return f"Current BTC hashrate: {market_data.hashrate(unit, session=session):,.2f} {unit}"


def cmd_change(session: Optional[requests.Session] = None) -> str:
    current = market_data.btc_price(session)
    changes = market_data.price_changes(current, market_data.price_history(session=session))
    if not changes:
        raise MalformedPayload("price history covers none of the periods")
    return format_changes(changes)


def cmd_ath(session: Optional[requests.Session] = None) -> str:
    ath, when = market_data.all_time_high(session)
    msg = f"Bitcoin All-Time High: ${ath:,.2f}"
    if when is not None:
        msg += f" (reached on {when:%B} {when.day}, {when.year})"
    return msg


def cmd_help(session: Optional[requests.Session] = None) -> str:
    lines = ["Available commands:"]
    lines += [f"/{name} – {what}" for name, (what, _fn) in COMMANDS.items()
              if name not in ("start", "help")]
    return "\n".join(lines)


# name -> (what the user asked for, reply builder)
COMMANDS: Dict[str, Tuple[str, Callable[[Optional[requests.Session]], str]]] = {
    "btc": ("BTC price", cmd_btc),
    "block": ("BTC block number", cmd_block),
    "fees": ("BTC fees", cmd_fees),
    "marketcap": ("BTC market cap", cmd_marketcap),
    "top": ("top assets by market cap", cmd_top),
    "hashrate": ("BTC hashrate", cmd_hashrate),
    "change": ("BTC price changes", cmd_change),
    "ath": ("BTC all-time high", cmd_ath),
    "start": ("help", cmd_help),
    "help": ("help", cmd_help),
}


def apology(what: str) -> str:
    return f"Sorry, I couldn't fetch the {what} right now. Please try again later."


def run_command(command: str, chat_id: int, sink: Any,
                session: Optional[requests.Session] = None) -> None:
    entry = COMMANDS.get(command)
    if entry is None:
        logger.info(f"Unknown command received: /{command}")
        return
    what, build = entry
    logger.info(f"Received /{command} command from {chat_id}")
    try:
        text = build(session)
    except MarketDataError as e:
        logger.warning(f"/{command} failed: {e}")
        sink.send_message(chat_id, apology(what))
        return
    except Exception as e:
        logger.exception(f"/{command} crashed: {e}")
        sink.send_message(chat_id, apology(what))
        return
    sink.send_message(chat_id, text)


# -----------------------------
# POLLING
# -----------------------------
def parse_command(update: Dict[str, Any]) -> Optional[Tuple[str, int]]:
    """('btc', chat_id) for a '/btc' or '/btc@SomeBot args' message, else None."""
    msg = update.get("message") or {}
    text = (msg.get("text") or "").strip()
    chat_id = (msg.get("chat") or {}).get("id")
    if not text.startswith("/") or chat_id is None:
        return None
    command = text.split()[0][1:].split("@", 1)[0].lower()
    return (command, chat_id) if command else None


def poll_forever(sink: Any, session: Optional[requests.Session] = None,
                 stop: Optional[threading.Event] = None) -> None:
    cfg = CONFIG["telegram"]
    stop = stop or threading.Event()
    offset: Optional[int] = None

    with ThreadPoolExecutor(max_workers=cfg["workers"]) as pool:
        while not stop.is_set():
            try:
                updates = sink.get_updates(offset, cfg["poll_timeout_sec"])
            except MarketDataError as e:
                logger.warning(f"Polling error: {e}")
                stop.wait(cfg["sleep_after_poll_error_sec"])
                continue
            for update in updates:
                offset = max(offset or 0, int(update.get("update_id", 0)) + 1)
                parsed = parse_command(update)
                if parsed:
                    pool.submit(run_command, parsed[0], parsed[1], sink, session)


# -----------------------------
# HEALTH ENDPOINT
# -----------------------------
class HealthHandler(BaseHTTPRequestHandler):
    def do_GET(self):
        body = b"Hello, this is the BTC Bot!"
        self.send_response(200)
        self.send_header("Content-Type", "text/plain; charset=utf-8")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def log_message(self, fmt, *args):
        logger.debug("health: " + fmt % args)


def start_health_server(port: int) -> HTTPServer:
    httpd = HTTPServer(("0.0.0.0", port), HealthHandler)
    threading.Thread(target=httpd.serve_forever, name="health", daemon=True).start()
    logger.info(f"Starting server on :{port}")
    return httpd


# -----------------------------
# MAIN
# -----------------------------
def main() -> int:
    token = CONFIG["telegram"]["bot_token"]
    if not token:
        logger.error("BOT_TOKEN environment variable is not set")
        return 1
    try:
        port = int(CONFIG["health"]["port"])
    except ValueError:
        logger.error(f"HEALTH_PORT must be a number, got {CONFIG['health']['port']!r}")
        return 1
    sink = TelegramSink(token)
    start_health_server(port)
    logger.info("Bot started and ready to receive commands!")
    try:
        poll_forever(sink)
    except KeyboardInterrupt:
        logger.info("Stopping.")
    return 0


if __name__ == "__main__":
    sys.exit(main())

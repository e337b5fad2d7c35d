# -*- coding: utf-8 -*-
"""
http_client.py – thin requests wrapper shared by every market data fetcher

Every failure reaching a provider is turned into one of the MarketDataError
subclasses below so callers can decide to fall back to the next source.
"""

import logging
import os
from typing import Any, Dict, Optional

import requests

log = logging.getLogger("http_client")

HDRS = {
    "User-Agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) btc-stats-bot/1.0",
}

DEFAULT_TIMEOUT_SEC = 10


# -----------------------------
# ERRORS
# -----------------------------
class MarketDataError(Exception):
    """Base class for anything that prevents a source from producing data."""


class TransportError(MarketDataError):
    """Connection failure or timeout."""


class BadStatus(MarketDataError):
    def __init__(self, url: str, status_code: int):
        super().__init__(f"{url} returned HTTP {status_code}")
        self.url = url
        self.status_code = status_code


class MalformedPayload(MarketDataError):
    """Payload arrived but could not be decoded into the expected shape."""


# -----------------------------
# REQUESTS
# -----------------------------
def http_get(url: str, params: Optional[Dict[str, Any]] = None,
             headers: Optional[Dict[str, str]] = None,
             session: Optional[requests.Session] = None,
             timeout: float = DEFAULT_TIMEOUT_SEC) -> requests.Response:
    hdrs = dict(HDRS)
    if headers:
        hdrs.update(headers)
    getter = session.get if session is not None else requests.get
    try:
        r = getter(url, params=params, headers=hdrs, timeout=timeout)
    except requests.RequestException as e:
        raise TransportError(f"{url}: {e}") from e
    log.debug(f"GET {url} -> {r.status_code}")
    if not 200 <= r.status_code < 300:
        raise BadStatus(url, r.status_code)
    return r


def get_json(url: str, params: Optional[Dict[str, Any]] = None,
             headers: Optional[Dict[str, str]] = None,
             session: Optional[requests.Session] = None,
             timeout: float = DEFAULT_TIMEOUT_SEC) -> Any:
    r = http_get(url, params=params, headers=headers, session=session, timeout=timeout)
    try:
        return r.json()
    except ValueError as e:
        raise MalformedPayload(f"{url}: invalid JSON ({e})") from e


def get_text(url: str, params: Optional[Dict[str, Any]] = None,
             headers: Optional[Dict[str, str]] = None,
             session: Optional[requests.Session] = None,
             timeout: float = DEFAULT_TIMEOUT_SEC) -> str:
    return http_get(url, params=params, headers=headers, session=session, timeout=timeout).text


# -----------------------------
# COINGECKO
# -----------------------------
CG_DEMO_KEY = os.getenv("COINGECKO_DEMO_API_KEY", "").strip()
CG_PRO_KEY  = os.getenv("COINGECKO_PRO_API_KEY", "").strip()

def cg_base() -> str:
    return "https://pro-api.coingecko.com/api/v3" if CG_PRO_KEY else "https://api.coingecko.com/api/v3"

def cg_headers() -> Dict[str, str]:
    return {"x-cg-pro-api-key": CG_PRO_KEY} if CG_PRO_KEY else ({"x-cg-demo-api-key": CG_DEMO_KEY} if CG_DEMO_KEY else {})

# -*- coding: utf-8 -*-
"""
market_data.py – one-shot BTC figures (price, block, fees, hashrate, ATH, % change)

Providers:
- CoinGecko:      spot price, all-time high, 365d price history
- mempool.space:  block height, recommended fee rates (sat/vB)
- blockchain.info: network hashrate (unit set per source in HASHRATE_SOURCE)
"""

import logging
from typing import Any, Dict, Optional, Tuple

import pandas as pd
import requests

from http_client import MalformedPayload, cg_base, cg_headers, get_json, get_text

log = logging.getLogger("market_data")

MEMPOOL_BASE = "https://mempool.space/api"

# Average transaction size used to turn sat/vB into a USD fee
AVG_TX_VBYTES = 250
SATS_PER_BTC = 100_000_000

HASH_UNITS = {
    "H/s": 1.0,
    "KH/s": 1e3,
    "MH/s": 1e6,
    "GH/s": 1e9,
    "TH/s": 1e12,
    "PH/s": 1e15,
    "EH/s": 1e18,
}

# blockchain.info/q/hashrate answers in GH/s
HASHRATE_SOURCE = {
    "url": "https://blockchain.info/q/hashrate",
    "unit": "GH/s",
}

# (label, days back), shortest first
PERIODS = [
    ("1 Day", 1),
    ("7 Days", 7),
    ("1 Month", 30),
    ("3 Months", 90),
    ("6 Months", 180),
    ("1 Year", 365),
]


def _dig(data: Any, *keys: str) -> Any:
    try:
        for k in keys:
            data = data[k]
        return data
    except (KeyError, TypeError, IndexError) as e:
        raise MalformedPayload(f"missing {'/'.join(keys)}") from e


# -----------------------------
# COINGECKO
# -----------------------------
def btc_price(session: Optional[requests.Session] = None) -> float:
    data = get_json(f"{cg_base()}/simple/price",
                    params={"ids": "bitcoin", "vs_currencies": "usd"},
                    headers=cg_headers(), session=session)
    try:
        return float(_dig(data, "bitcoin", "usd"))
    except (TypeError, ValueError) as e:
        raise MalformedPayload(f"bad BTC price: {e}") from e


def all_time_high(session: Optional[requests.Session] = None) -> Tuple[float, Optional[pd.Timestamp]]:
    """ATH in USD and when it was reached (None if the date is missing or unparsable)."""
    data = get_json(f"{cg_base()}/coins/bitcoin",
                    params={"localization": "false", "tickers": "false", "community_data": "false",
                            "developer_data": "false", "sparkline": "false"},
                    headers=cg_headers(), session=session)
    md = _dig(data, "market_data")
    try:
        ath = float(_dig(md, "ath", "usd"))
    except (TypeError, ValueError) as e:
        raise MalformedPayload(f"bad ATH value: {e}") from e

    raw_date = (md.get("ath_date") or {}).get("usd")
    if not raw_date:
        return ath, None
    try:
        when = pd.to_datetime(raw_date, utc=True)
    except (ValueError, TypeError):
        log.warning(f"Unparsable ATH date: {raw_date}")
        return ath, None
    return ath, when


def price_history(days: int = 365, session: Optional[requests.Session] = None) -> pd.Series:
    """USD close series indexed by UTC timestamp, oldest first."""
    data = get_json(f"{cg_base()}/coins/bitcoin/market_chart",
                    params={"vs_currency": "usd", "days": days},
                    headers=cg_headers(), session=session)
    prices = _dig(data, "prices")
    if not prices:
        raise MalformedPayload("empty price history")
    try:
        df = pd.DataFrame(prices, columns=["ts", "price"])
    except ValueError as e:
        raise MalformedPayload(f"bad price history rows: {e}") from e
    df["ts"] = pd.to_datetime(df["ts"], unit="ms", utc=True)
    df["price"] = pd.to_numeric(df["price"], errors="coerce")
    return df.sort_values("ts").set_index("ts")["price"].dropna()


def price_changes(current: float, history: pd.Series,
                  now: Optional[pd.Timestamp] = None) -> Dict[str, float]:
    """% change vs. the first price at or after each PERIODS cutoff; periods without data are left out."""
    now = now if now is not None else pd.Timestamp.now(tz="UTC")
    out: Dict[str, float] = {}
    for label, days in PERIODS:
        after = history[history.index >= now - pd.Timedelta(days=days)]
        if after.empty:
            continue
        past = float(after.iloc[0])
        if past == 0:
            continue
        out[label] = (current - past) / past * 100
    return out


# -----------------------------
# MEMPOOL / BLOCKCHAIN.INFO
# -----------------------------
def block_height(session: Optional[requests.Session] = None) -> int:
    text = get_text(f"{MEMPOOL_BASE}/blocks/tip/height", session=session)
    try:
        return int(text.strip())
    except ValueError as e:
        raise MalformedPayload(f"bad block height: {text[:50]!r}") from e


def sat_per_vbyte_to_usd(sat_per_vb: float, price: float) -> float:
    return sat_per_vb * AVG_TX_VBYTES * price / SATS_PER_BTC


def recommended_fees(price: Optional[float] = None,
                     session: Optional[requests.Session] = None) -> Dict[str, float]:
    """Low/medium/high USD cost of an average transaction."""
    if price is None:
        price = btc_price(session)
    fees = get_json(f"{MEMPOOL_BASE}/v1/fees/recommended", session=session)
    try:
        return {
            "low": sat_per_vbyte_to_usd(float(_dig(fees, "hourFee")), price),
            "medium": sat_per_vbyte_to_usd(float(_dig(fees, "halfHourFee")), price),
            "high": sat_per_vbyte_to_usd(float(_dig(fees, "fastestFee")), price),
        }
    except (TypeError, ValueError) as e:
        raise MalformedPayload(f"bad fee payload: {e}") from e


def hashrate(unit: str = "EH/s", source: Optional[Dict[str, str]] = None,
             session: Optional[requests.Session] = None) -> float:
    source = source or HASHRATE_SOURCE
    if source["unit"] not in HASH_UNITS or unit not in HASH_UNITS:
        raise ValueError(f"unknown hashrate unit: {source['unit']} -> {unit}")
    text = get_text(source["url"], session=session)
    try:
        raw = float(text.strip())
    except ValueError as e:
        raise MalformedPayload(f"bad hashrate: {text[:50]!r}") from e
    return raw * HASH_UNITS[source["unit"]] / HASH_UNITS[unit]

# -*- coding: utf-8 -*-
"""
top_assets.py – Top 10 assets by market cap with an API -> HTML scrape fallback chain

Sources (tried in this order, each exactly once per call):
- primary-api:   CoinGecko /coins/markets
- secondary-api: CoinPaprika /v1/tickers
- scrape:        CoinMarketCap listing page, several table selectors in priority order

The first source producing at least one valid record wins. If every source
fails, AllSourcesExhausted is raised; a partial or made-up list is never returned.
"""

import logging
import math
from typing import Any, Dict, List, NamedTuple, Optional, Sequence, Tuple

import requests
from bs4 import BeautifulSoup

from http_client import (
    MalformedPayload,
    MarketDataError,
    cg_base,
    cg_headers,
    get_json,
    get_text,
)

log = logging.getLogger("top_assets")

MAX_RECORDS = 10

# Checked in this order; a string can only end with one of them.
MAGNITUDES = (("T", 1e12), ("B", 1e9), ("M", 1e6))
CURRENCY_SYMBOLS = "$€£¥"


class AssetRecord(NamedTuple):
    rank: int
    name: str
    symbol: str
    market_cap_usd: float


class TopAssets(NamedTuple):
    records: Tuple[AssetRecord, ...]
    source: str  # primary-api | secondary-api | scrape:<selector>


class NoRowsFound(MarketDataError):
    def __init__(self, selectors: Sequence[str], title: str, table_count: int):
        super().__init__(f"no rows for selectors {list(selectors)} "
                         f"(title={title!r}, tables={table_count})")
        self.selectors = list(selectors)
        self.title = title
        self.table_count = table_count


class AllSourcesExhausted(MarketDataError):
    def __init__(self, attempts: List[Tuple[str, str]]):
        detail = "; ".join(f"{name}: {err}" for name, err in attempts)
        super().__init__(f"all top-asset sources failed ({detail})")
        self.attempts = attempts


# -----------------------------
# NORMALIZATION
# -----------------------------
def _rank_of(value: Any) -> int:
    if isinstance(value, bool):
        raise ValueError("bool is not a rank")
    if isinstance(value, float):
        if not value.is_integer():
            raise ValueError(f"non-integral rank {value}")
        return int(value)
    return int(str(value).strip(), 10)


def _accept(rec: AssetRecord, out: List[AssetRecord]) -> bool:
    """Rank must be positive and strictly above the last accepted one."""
    if rec.rank < 1 or not rec.name:
        return False
    if not math.isfinite(rec.market_cap_usd) or rec.market_cap_usd < 0:
        return False
    return not out or rec.rank > out[-1].rank


def normalize_structured(entries: Any) -> Tuple[AssetRecord, ...]:
    """
    entries: list of {"rank", "name", "symbol", "marketCap"} dicts (already decoded
    from the provider's own shape). Only the first MAX_RECORDS entries are considered,
    re-ordered by rank; broken entries and duplicate ranks are skipped, not fatal.
    """
    if not isinstance(entries, list):
        raise MalformedPayload(f"expected a list of assets, got {type(entries).__name__}")

    parsed: List[AssetRecord] = []
    skipped = 0
    for e in entries[:MAX_RECORDS]:
        try:
            name = e["name"]
            if not isinstance(name, str):
                raise TypeError("name is not a string")
            rec = AssetRecord(rank=_rank_of(e["rank"]),
                              name=name.strip(),
                              symbol=str(e.get("symbol") or "").strip(),
                              market_cap_usd=float(e["marketCap"]))
        except (KeyError, TypeError, ValueError, AttributeError):
            skipped += 1
            continue
        parsed.append(rec)

    # market_cap_rank can lag the market_cap ordering by a place or two
    out: List[AssetRecord] = []
    for rec in sorted(parsed, key=lambda r: r.rank):
        if not _accept(rec, out):
            skipped += 1
            continue
        out.append(rec)

    if skipped:
        log.info(f"Structured payload: kept {len(out)}, skipped {skipped} entries")
    return tuple(out)


def split_name_symbol(text: str) -> Tuple[str, str]:
    """'Bitcoin\\nBTC' -> ('Bitcoin', 'BTC'); 'Tether USDt' -> ('Tether', 'USDt')."""
    text = text.strip()
    if "\n" in text:
        lines = [ln.strip() for ln in text.splitlines() if ln.strip()]
        return lines[0], (lines[1] if len(lines) > 1 else "")
    parts = text.rsplit(None, 1)
    if len(parts) == 2:
        return parts[0].strip(), parts[1]
    return text, ""


def parse_market_cap(text: str) -> float:
    """'$1.50T' -> 1.5e12, '$950.00M' -> 9.5e8, '$2,345.00' -> 2345.0. Raises ValueError."""
    lines = [ln.strip() for ln in text.splitlines() if ln.strip()]
    if not lines:
        raise ValueError("empty market cap cell")
    s = lines[0]
    if s[0] in CURRENCY_SYMBOLS:
        s = s[1:]
    s = s.replace(",", "").strip()

    factor = 1.0
    for suffix, mult in MAGNITUDES:
        if s.endswith(suffix):
            s = s[:-len(suffix)]
            factor = mult
            break

    value = float(s) * factor
    if not math.isfinite(value) or value < 0:
        raise ValueError(f"market cap out of range: {text!r}")
    return value


def normalize_scraped_rows(rows: Sequence[Sequence[str]],
                           market_cap_cell: int = 2) -> Tuple[AssetRecord, ...]:
    """
    rows: cell texts per table row. Cell 0 is the rank, cell 1 name/symbol,
    cell `market_cap_cell` the market cap. Unusable rows are skipped.
    """
    need = max(3, market_cap_cell + 1)
    out: List[AssetRecord] = []
    short = bad = 0

    for cells in rows:
        if len(out) >= MAX_RECORDS:
            break
        if len(cells) < need:
            short += 1
            continue
        try:
            rank = int(cells[0].strip(), 10)
            name, symbol = split_name_symbol(cells[1])
            rec = AssetRecord(rank, name, symbol, parse_market_cap(cells[market_cap_cell]))
        except ValueError:
            bad += 1
            continue
        if not _accept(rec, out):
            bad += 1
            continue
        out.append(rec)

    if short or bad:
        log.info(f"Scraped rows: kept {len(out)}, too few cells {short}, unparsable {bad}")
    return tuple(out)


def select_table_rows(html: str, selectors: Sequence[Dict[str, Any]]
                      ) -> Tuple[Dict[str, Any], List[List[str]]]:
    """
    Return (selector, cell texts per row) for the first selector matching any row.
    Rows from different selectors are never mixed.
    """
    soup = BeautifulSoup(html, "html.parser")
    for sel in selectors:
        found = soup.select(sel["rows"])
        if not found:
            log.debug(f"Selector '{sel['rows']}' matched no rows")
            continue
        first = int(sel.get("first_cell", 0))
        rows = [[td.get_text("\n", strip=True) for td in tr.find_all("td")][first:]
                for tr in found]
        return sel, rows

    title = soup.title.get_text(strip=True) if soup.title else ""
    raise NoRowsFound([s["rows"] for s in selectors], title, len(soup.find_all("table")))


# -----------------------------
# PROVIDER DECODERS
# -----------------------------
def decode_coingecko_markets(data: Any) -> List[Dict[str, Any]]:
    if not isinstance(data, list):
        raise MalformedPayload("CoinGecko markets: expected a JSON array")
    out = []
    for row in data:
        if not isinstance(row, dict):
            out.append({})
            continue
        out.append({
            "rank": row.get("market_cap_rank"),
            "name": row.get("name"),
            "symbol": str(row.get("symbol") or "").upper(),
            "marketCap": row.get("market_cap"),
        })
    return out


def decode_coinpaprika_tickers(data: Any) -> List[Dict[str, Any]]:
    if not isinstance(data, list):
        raise MalformedPayload("CoinPaprika tickers: expected a JSON array")
    out = []
    for row in data:
        if not isinstance(row, dict):
            out.append({})
            continue
        quotes = row.get("quotes")
        usd = quotes.get("USD") if isinstance(quotes, dict) else None
        out.append({
            "rank": row.get("rank"),
            "name": row.get("name"),
            "symbol": str(row.get("symbol") or ""),
            "marketCap": usd.get("market_cap") if isinstance(usd, dict) else None,
        })
    return out


# -----------------------------
# SOURCES (priority order)
# -----------------------------
SOURCES: List[Dict[str, Any]] = [
    {
        "name": "primary-api",
        "kind": "api",
        "url": f"{cg_base()}/coins/markets",
        "params": {"vs_currency": "usd", "order": "market_cap_desc",
                   "per_page": MAX_RECORDS, "page": 1, "sparkline": "false"},
        "headers": cg_headers(),
        "decode": decode_coingecko_markets,
    },
    {
        "name": "secondary-api",
        "kind": "api",
        "url": "https://api.coinpaprika.com/v1/tickers",
        "params": {"quotes": "USD"},
        "decode": decode_coinpaprika_tickers,
    },
    {
        "name": "scrape",
        "kind": "scrape",
        "url": "https://coinmarketcap.com/",
        # CMC rows start with a watchlist star cell, market cap is the 8th column
        "selectors": [
            {"rows": "table.cmc-table tbody tr", "first_cell": 1, "market_cap_cell": 6},
            {"rows": "div.cmc-table__table-wrapper-outer table tbody tr", "first_cell": 1, "market_cap_cell": 6},
            {"rows": "table tbody tr", "first_cell": 1, "market_cap_cell": 6},
        ],
    },
]

HTTP_TIMEOUT_SEC = 10


def _try_api(src: Dict[str, Any], session: Optional[requests.Session], timeout: float) -> TopAssets:
    data = get_json(src["url"], params=src.get("params"), headers=src.get("headers"),
                    session=session, timeout=timeout)
    try:
        entries = src["decode"](data)
    except (AttributeError, KeyError, TypeError, ValueError) as e:
        raise MalformedPayload(f"{src['url']}: undecodable payload ({e})") from e
    records = normalize_structured(entries)
    if not records:
        raise MalformedPayload(f"{src['url']}: no usable entries")
    return TopAssets(records, src["name"])


def _try_scrape(src: Dict[str, Any], session: Optional[requests.Session], timeout: float) -> TopAssets:
    html = get_text(src["url"], params=src.get("params"), headers=src.get("headers"),
                    session=session, timeout=timeout)
    try:
        sel, rows = select_table_rows(html, src["selectors"])
    except NoRowsFound as e:
        log.warning(f"[{src['name']}] page title={e.title!r}, tables={e.table_count}")
        raise
    widths = [len(r) for r in rows]
    log.info(f"[{src['name']}] selector '{sel['rows']}' matched {len(rows)} rows "
             f"({min(widths)}-{max(widths)} cells)")
    records = normalize_scraped_rows(rows, int(sel.get("market_cap_cell", 2)))
    if not records:
        raise MalformedPayload(f"{len(rows)} rows under '{sel['rows']}' gave no valid records")
    return TopAssets(records, f"scrape:{sel['rows']}")


def fetch_top_assets(session: Optional[requests.Session] = None,
                     sources: Optional[List[Dict[str, Any]]] = None,
                     timeout: float = HTTP_TIMEOUT_SEC) -> TopAssets:
    sources = SOURCES if sources is None else sources
    attempts: List[Tuple[str, str]] = []

    for src in sources:
        fn = _try_scrape if src["kind"] == "scrape" else _try_api
        try:
            result = fn(src, session, timeout)
        except MarketDataError as e:
            log.warning(f"[{src['name']}] failed, trying next source: {e}")
            attempts.append((src["name"], str(e)))
            continue
        log.info(f"Top assets from {result.source}: {len(result.records)} records")
        return result

    raise AllSourcesExhausted(attempts)


def btc_market_cap(session: Optional[requests.Session] = None) -> float:
    top = fetch_top_assets(session)
    for rec in top.records:
        if rec.symbol.upper() == "BTC" or rec.name.lower() == "bitcoin":
            return rec.market_cap_usd
    raise MalformedPayload(f"BTC missing from top assets ({top.source})")

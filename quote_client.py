import logging
import math
import requests
from config import (
    QUOTE_PROVIDER,
    QUOTE_TIMEOUT,
    ALPHA_VANTAGE_API_KEY,
    FINNHUB_API_KEY,
    ALPACA_API_KEY,
    ALPACA_SECRET_KEY,
)

logger = logging.getLogger(__name__)

ALPHA_VANTAGE_URL = "https://www.alphavantage.co/query"
FINNHUB_QUOTE_URL = "https://finnhub.io/api/v1/quote"
ALPACA_DATA_URL = "https://data.alpaca.markets/v2/stocks/{symbol}/snapshot"

ALPACA_HEADERS = {
    "APCA-API-KEY-ID": ALPACA_API_KEY,
    "APCA-API-SECRET-KEY": ALPACA_SECRET_KEY,
}


def _get_json(url: str, **kwargs) -> dict | None:
    try:
        resp = requests.get(url, timeout=QUOTE_TIMEOUT, **kwargs)
    except requests.RequestException as e:
        logger.error(f"Quote request to {url} failed: {e}")
        return None

    if not resp.ok:
        logger.error(f"Quote provider error: {resp.status_code} {resp.text}")
        return None

    try:
        return resp.json()
    except ValueError:
        logger.error(f"Quote provider returned non-JSON body: {resp.text[:200]}")
        return None


QUOTE_FIELDS = ("price", "open", "high", "low", "previous_close", "change", "change_percent")


def _num(value) -> float | None:
    """Float from a provider field, None when missing or unparseable."""
    if value is None:
        return None
    if isinstance(value, str):
        value = value.strip().rstrip("%")
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def _day_change(price: float | None, previous_close: float | None) -> tuple[float | None, float | None]:
    if price is None or not previous_close:
        return None, None
    change = price - previous_close
    return change, change / previous_close * 100


def fetch_alpha_vantage_quote(symbol: str) -> dict | None:
    """
    Day quote from Alpha Vantage GLOBAL_QUOTE.

    Rate limiting and unknown symbols come back as 200 with a "Note",
    "Information" or "Error Message" key instead of a quote.
    """
    data = _get_json(ALPHA_VANTAGE_URL, params={
        "function": "GLOBAL_QUOTE",
        "symbol": symbol,
        "apikey": ALPHA_VANTAGE_API_KEY,
    })
    if data is None:
        return None

    for key in ("Note", "Information", "Error Message"):
        if key in data:
            logger.warning(f"Alpha Vantage refused quote for {symbol}: {data[key]}")
            return None

    quote = data.get("Global Quote")
    if not isinstance(quote, dict) or "05. price" not in quote:
        logger.error(f"Error parsing Alpha Vantage quote for {symbol}: {data}")
        return None

    return {
        "price": _num(quote.get("05. price")),
        "open": _num(quote.get("02. open")),
        "high": _num(quote.get("03. high")),
        "low": _num(quote.get("04. low")),
        "previous_close": _num(quote.get("08. previous close")),
        "change": _num(quote.get("09. change")),
        "change_percent": _num(quote.get("10. change percent")),  # "1.2345%"
    }


def fetch_finnhub_quote(symbol: str) -> dict | None:
    """Finnhub /quote; unknown symbols report a current price ("c") of 0."""
    data = _get_json(FINNHUB_QUOTE_URL, params={"symbol": symbol, "token": FINNHUB_API_KEY})
    if data is None:
        return None

    if not isinstance(data, dict) or "c" not in data:
        logger.error(f"Error parsing Finnhub quote for {symbol}: {data}")
        return None

    return {
        "price": _num(data.get("c")),
        "open": _num(data.get("o")),
        "high": _num(data.get("h")),
        "low": _num(data.get("l")),
        "previous_close": _num(data.get("pc")),
        "change": _num(data.get("d")),
        "change_percent": _num(data.get("dp")),
    }


def fetch_alpaca_quote(symbol: str) -> dict | None:
    """
    Latest trade price (LTP) plus today's and yesterday's bars from the
    Alpaca snapshot. Day change is derived from the previous daily close.
    """
    data = _get_json(ALPACA_DATA_URL.format(symbol=symbol), headers=ALPACA_HEADERS)
    if data is None:
        return None

    try:
        price = _num(data["latestTrade"]["p"])
    except (KeyError, TypeError) as e:
        logger.error(f"Error parsing Alpaca quote for {symbol}: {e} {data}")
        return None

    daily = data.get("dailyBar") or {}
    previous_close = _num((data.get("prevDailyBar") or {}).get("c"))
    change, change_percent = _day_change(price, previous_close)
    return {
        "price": price,
        "open": _num(daily.get("o")),
        "high": _num(daily.get("h")),
        "low": _num(daily.get("l")),
        "previous_close": previous_close,
        "change": change,
        "change_percent": change_percent,
    }


PROVIDERS = {
    "alphavantage": fetch_alpha_vantage_quote,
    "finnhub": fetch_finnhub_quote,
    "alpaca": fetch_alpaca_quote,
}


def get_daily_quote(symbol: str, provider: str | None = None) -> dict | None:
    """
    Current price and day-change fields (see QUOTE_FIELDS) for symbol.

    Returns None when the provider has no usable (positive) price; the
    other fields are None when the provider leaves them out.
    """
    name = provider or QUOTE_PROVIDER
    fetch = PROVIDERS.get(name)
    if fetch is None:
        raise ValueError(f"Unknown quote provider: {name}")

    quote = fetch(symbol.upper())
    if quote is None:
        return None
    price = quote.get("price")
    if price is None or price <= 0:
        return None
    return {field: quote.get(field) for field in QUOTE_FIELDS}


def get_quote(symbol: str, provider: str | None = None) -> float | None:
    """
    Current market price for symbol from the configured provider.
    """
    quote = get_daily_quote(symbol, provider)
    return quote["price"] if quote else None

from __future__ import annotations

import logging

import httpx

from adsparkr.config import settings

logger = logging.getLogger(__name__)

CURRENCY_SYMBOLS: dict[str, str] = {
    "USD": "$",
    "INR": "₹",
    "EUR": "€",
    "GBP": "£",
    "AUD": "A$",
    "CAD": "C$",
    "SGD": "S$",
    "AED": "د.إ",
    "BRL": "R$",
    "MXN": "Mex$",
}

CURRENCY_NAMES: dict[str, str] = {
    "USD": "US Dollar",
    "INR": "Indian Rupee",
    "EUR": "Euro",
    "GBP": "British Pound",
    "AUD": "Australian Dollar",
    "CAD": "Canadian Dollar",
    "SGD": "Singapore Dollar",
    "AED": "UAE Dirham",
    "BRL": "Brazilian Real",
    "MXN": "Mexican Peso",
}

# Meta's minimum daily budget per account currency.
MINIMUM_DAILY_BUDGETS: dict[str, float] = {
    "USD": 1.00,
    "INR": 40.00,
    "EUR": 1.00,
    "GBP": 1.00,
    "AUD": 1.50,
    "CAD": 1.50,
    "SGD": 1.50,
    "AED": 4.00,
    "BRL": 5.00,
    "MXN": 20.00,
}

# Approximate units per 1 USD; used when the live rate is unavailable.
FALLBACK_USD_RATES: dict[str, float] = {
    "USD": 1.00,
    "INR": 83.00,
    "EUR": 0.92,
    "GBP": 0.79,
    "AUD": 1.53,
    "CAD": 1.36,
    "SGD": 1.35,
    "AED": 3.67,
    "BRL": 5.00,
    "MXN": 17.00,
}

BUDGET_RANGES: dict[str, dict[str, float]] = {
    "USD": {"min": 2, "max": 150, "default": 75},
    "INR": {"min": 150, "max": 12000, "default": 6000},
    "EUR": {"min": 2, "max": 140, "default": 70},
    "GBP": {"min": 2, "max": 120, "default": 60},
    "AUD": {"min": 3, "max": 230, "default": 115},
    "CAD": {"min": 3, "max": 200, "default": 100},
    "SGD": {"min": 3, "max": 200, "default": 100},
    "AED": {"min": 7, "max": 550, "default": 275},
    "BRL": {"min": 10, "max": 750, "default": 375},
    "MXN": {"min": 35, "max": 2550, "default": 1275},
}


def currency_symbol(currency: str) -> str:
    return CURRENCY_SYMBOLS.get(currency, currency)


def currency_name(currency: str) -> str:
    return CURRENCY_NAMES.get(currency, currency)


def format_currency(amount: float, currency: str, decimals: int = 2) -> str:
    symbol = currency_symbol(currency)
    formatted = f"{amount:.{decimals}f}"
    if currency == "BRL":
        return f"{symbol} {formatted}"
    return f"{symbol}{formatted}"


def minimum_budget(currency: str) -> float:
    return MINIMUM_DAILY_BUDGETS.get(currency, 1.00)


def budget_range(currency: str) -> dict[str, float]:
    return BUDGET_RANGES.get(currency, BUDGET_RANGES["USD"])


def budget_in_minor_units(amount: float) -> int:
    """Meta budgets are sent in the smallest currency unit (cents, paise)."""
    return int(round(amount * 100))


async def fetch_usd_rate(currency: str, client: httpx.AsyncClient | None = None) -> float:
    """Units of `currency` per 1 USD, live when possible, else the fallback table."""
    if currency == "USD":
        return 1.0
    own_client = client is None
    http = client or httpx.AsyncClient(timeout=10.0)
    try:
        resp = await http.get(settings.exchange_rate_url)
        if resp.status_code == 200:
            rate = (resp.json().get("rates") or {}).get(currency)
            if rate:
                return float(rate)
        logger.warning("exchange rate for %s unavailable (status %s), using fallback", currency, resp.status_code)
    except (httpx.HTTPError, ValueError) as exc:
        logger.warning("exchange rate lookup failed for %s: %s", currency, exc)
    finally:
        if own_client:
            await http.aclose()
    return FALLBACK_USD_RATES.get(currency, 1.0)


def account_budget(budget_usd: float, rate: float, currency: str) -> float:
    """Convert a USD budget into the ad account's currency, floored at Meta's minimum."""
    return max(budget_usd * rate, minimum_budget(currency))

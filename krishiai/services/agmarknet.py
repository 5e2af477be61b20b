import logging
import os
from datetime import datetime
from typing import Any, Dict, List, Optional

import anyio
import httpx
import numpy as np
import pandas as pd

logger = logging.getLogger(__name__)

# data.gov.in "current daily price of various commodities from various markets (mandi)"
AGMARKNET_BASE_URL = os.getenv("AGMARKNET_BASE_URL", "https://api.data.gov.in/resource")
AGMARKNET_RESOURCE_ID = os.getenv("AGMARKNET_RESOURCE_ID", "9ef84268-d588-465a-a308-a864a43d0070")
AGMARKNET_API_KEY = os.getenv("AGMARKNET_API_KEY", "")

DEFAULT_PRICE_PER_QUINTAL = 2000.0

POPULAR_CROPS = [
    "Wheat", "Rice", "Maize", "Cotton", "Sugarcane",
    "Soybean", "Groundnut", "Tomato", "Potato", "Onion",
    "Chilli", "Turmeric", "Coriander", "Banana", "Mango",
]

# (crop, state, district, market, min, max, modal)
_SAMPLE_ROWS = [
    ("Wheat", "Punjab", "Ludhiana", "Ludhiana Mandi", 2000, 2150, 2080),
    ("Rice", "Punjab", "Amritsar", "Amritsar Mandi", 2800, 3100, 2950),
    ("Cotton", "Gujarat", "Ahmedabad", "Ahmedabad APMC", 6500, 7200, 6850),
    ("Sugarcane", "Uttar Pradesh", "Muzaffarnagar", "Muzaffarnagar Mandi", 280, 320, 300),
    ("Tomato", "Maharashtra", "Pune", "Pune Market", 800, 1200, 1000),
    ("Potato", "Uttar Pradesh", "Agra", "Agra Mandi", 600, 850, 720),
    ("Onion", "Maharashtra", "Nashik", "Nashik APMC", 1200, 1600, 1400),
    ("Maize", "Karnataka", "Bangalore", "Bangalore Market", 1600, 1850, 1720),
]


def _today() -> str:
    return datetime.utcnow().strftime("%Y-%m-%d")


def fallback_prices() -> List[Dict[str, Any]]:
    """Sample mandi rows used when AGMARKNET is unreachable or returns nothing."""
    today = _today()
    return [
        {
            "cropName": crop,
            "state": state,
            "district": district,
            "market": market,
            "minPrice": float(lo),
            "maxPrice": float(hi),
            "modalPrice": float(modal),
            "unit": "Quintal",
            "date": today,
        }
        for crop, state, district, market, lo, hi, modal in _SAMPLE_ROWS
    ]


def _to_float(value: Any) -> float:
    try:
        return float(value or 0)
    except (TypeError, ValueError):
        return 0.0


def normalize_record(row: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "cropName": row.get("commodity") or row.get("Commodity") or "Unknown",
        "state": row.get("state") or row.get("State") or "Unknown",
        "district": row.get("district") or row.get("District") or "Unknown",
        "market": row.get("market") or row.get("Market") or "Unknown",
        "minPrice": _to_float(row.get("min_price") or row.get("Min_Price")),
        "maxPrice": _to_float(row.get("max_price") or row.get("Max_Price")),
        "modalPrice": _to_float(row.get("modal_price") or row.get("Modal_Price")),
        "unit": row.get("unit") or "Quintal",
        "date": row.get("arrival_date") or row.get("Arrival_Date") or _today(),
    }


async def _fetch_records_async(params: Dict[str, Any]) -> List[Dict[str, Any]]:
    url = f"{AGMARKNET_BASE_URL}/{AGMARKNET_RESOURCE_ID}"
    async with httpx.AsyncClient(timeout=10) as client:
        logger.debug("[agmarknet] querying %s params=%s", url, {k: v for k, v in params.items() if k != "api-key"})
        resp = await client.get(url, params=params)
        resp.raise_for_status()
        data = resp.json()
    return data.get("records") or []


def fetch_agmarknet(commodity: Optional[str] = None, state: Optional[str] = None,
                    district: Optional[str] = None, market: Optional[str] = None) -> List[Dict[str, Any]]:
    """Query the AGMARKNET resource; falls back to sample rows on any failure."""
    params: Dict[str, Any] = {"api-key": AGMARKNET_API_KEY, "format": "json", "limit": 100}
    if commodity:
        params["filters[commodity]"] = commodity
    if state:
        params["filters[state]"] = state
    if district:
        params["filters[district]"] = district
    if market:
        params["filters[market]"] = market

    if not AGMARKNET_API_KEY:
        logger.warning("[agmarknet] AGMARKNET_API_KEY not set; using sample prices")
        return fallback_prices()

    try:
        records = anyio.run(_fetch_records_async, params)
    except httpx.HTTPStatusError as e:
        logger.warning("[agmarknet] HTTP error: %s", e.response.status_code)
        return fallback_prices()
    except (httpx.HTTPError, ValueError) as e:
        logger.warning("[agmarknet] failed to call data.gov.in: %s", e)
        return fallback_prices()

    if not records:
        return fallback_prices()
    return [normalize_record(r) for r in records]


def get_market_prices(crop: Optional[str] = None, state: Optional[str] = None) -> List[Dict[str, Any]]:
    prices = fetch_agmarknet(commodity=crop, state=state)
    if crop and prices:
        prices = [p for p in prices if crop.lower() in p["cropName"].lower()]
    if state and prices:
        prices = [p for p in prices if state.lower() in p["state"].lower()]
    return prices if prices else fallback_prices()


def get_price_trends(crop: str, state: str, days: int = 30,
                     rng: Optional[np.random.Generator] = None) -> List[Dict[str, Any]]:
    """Daily modal-price series ending today.

    AGMARKNET's daily resource carries no history, so the series is the current
    modal price with a uniform +/-10% daily variation.
    """
    current = get_market_prices(crop, state)
    if not current or days <= 0:
        return []
    base_price = current[0]["modalPrice"]
    rng = rng or np.random.default_rng()

    dates = pd.date_range(end=pd.Timestamp.today().normalize(), periods=days, freq="D")
    variation = rng.uniform(-0.1, 0.1, size=days)
    df = pd.DataFrame({"date": dates.strftime("%Y-%m-%d"), "price": np.round(base_price * (1 + variation))})
    return [{"date": d, "price": int(p)} for d, p in zip(df["date"], df["price"])]


def calculate_profit_estimate(crop: str, quantity: float, cultivation_cost: float) -> Dict[str, float]:
    """Revenue, profit and margin (%) for `quantity` quintals at today's modal price."""
    prices = get_market_prices(crop)
    price_per_quintal = prices[0]["modalPrice"] if prices else DEFAULT_PRICE_PER_QUINTAL
    revenue = quantity * price_per_quintal
    profit = revenue - cultivation_cost
    margin = (profit / cultivation_cost) * 100 if cultivation_cost else 0.0
    return {
        "estimatedRevenue": revenue,
        "profit": profit,
        "profitMargin": round(margin, 2),
    }


def get_crop_recommendations(state: str) -> List[Dict[str, Any]]:
    state_prices = get_market_prices(None, state)
    ranked = sorted(state_prices, key=lambda p: p["modalPrice"], reverse=True)[:3]
    return [
        {
            "crop": p["cropName"],
            "reason": f"High demand with good prices at ₹{p['modalPrice']:.0f}/{p['unit']}",
            "expectedPrice": p["modalPrice"],
        }
        for p in ranked
    ]


def format_currency(amount: float) -> str:
    """Format rupees with Indian digit grouping, e.g. 1234567 -> ₹12,34,567."""
    rounded = int(round(abs(amount)))
    digits = str(rounded)
    if len(digits) > 3:
        head, tail = digits[:-3], digits[-3:]
        groups = []
        while len(head) > 2:
            groups.insert(0, head[-2:])
            head = head[:-2]
        if head:
            groups.insert(0, head)
        digits = ",".join(groups + [tail])
    sign = "-" if amount < 0 and rounded else ""
    return f"{sign}₹{digits}"


def get_price_change(current: float, previous: float) -> Dict[str, Any]:
    change = current - previous
    percentage = (change / previous) * 100 if previous else 0.0
    direction = "stable"
    if abs(percentage) > 1:
        direction = "up" if change > 0 else "down"
    return {
        "change": round(change),
        "percentage": round(percentage, 2),
        "direction": direction,
    }

import logging
import os
from collections import OrderedDict
from typing import Any, Dict, List, Optional, Tuple

import httpx

logger = logging.getLogger(__name__)

OPENWEATHER_API_KEY = os.getenv("OPENWEATHER_API_KEY", "")
OWM_BASE = "https://api.openweathermap.org/data/2.5"
OWM_GEO = "https://api.openweathermap.org/geo/1.0"
ICON_URL = "https://openweathermap.org/img/wn/{icon}@2x.png"

# OpenWeather's free forecast endpoint covers 5 days in 3-hour slots.
MAX_FORECAST_DAYS = 5


class WeatherError(ValueError):
    pass


class LocationNotFoundError(WeatherError):
    pass


def _client() -> httpx.Client:
    return httpx.Client(timeout=20.0)


def _get(path: str, params: Dict[str, Any]) -> Any:
    if not OPENWEATHER_API_KEY:
        raise WeatherError("OpenWeather API key not configured")
    query = dict(params, appid=OPENWEATHER_API_KEY)
    try:
        with _client() as client:
            resp = client.get(path, params=query)
            resp.raise_for_status()
            return resp.json()
    except httpx.HTTPStatusError as e:
        logger.warning("[weather] %s returned %s", path, e.response.status_code)
        raise WeatherError(f"Weather provider error: {e.response.status_code}")
    except (httpx.HTTPError, ValueError) as e:
        logger.warning("[weather] %s failed: %s", path, e)
        raise WeatherError("Failed to fetch weather data")


def geocode(location: str) -> Dict[str, Any]:
    matches = _get(f"{OWM_GEO}/direct", {"q": location, "limit": 1})
    if not matches:
        raise LocationNotFoundError("Location not found")
    return matches[0]


def _place_label(place: Dict[str, Any]) -> str:
    if place.get("state"):
        return f"{place.get('name')}, {place['state']}, {place.get('country')}"
    return f"{place.get('name')}, {place.get('country')}"


def current_from_raw(place: Dict[str, Any], raw: Dict[str, Any]) -> Dict[str, Any]:
    main = raw.get("main", {})
    condition = (raw.get("weather") or [{}])[0]
    return {
        "location": _place_label(place),
        "temperature": round(main.get("temp", 0)),
        "feelsLike": round(main.get("feels_like", 0)),
        "humidity": main.get("humidity", 0),
        "condition": condition.get("description", ""),
        "windSpeed": round(raw.get("wind", {}).get("speed", 0) * 3.6),
        "rainfall": (raw.get("rain") or {}).get("1h", 0),
        "icon": ICON_URL.format(icon=condition.get("icon", "")),
    }


def forecast_from_raw(raw: Dict[str, Any], days: int = 7) -> List[Dict[str, Any]]:
    """Collapse 3-hour forecast slots into one entry per date."""
    by_date: "OrderedDict[str, Dict[str, list]]" = OrderedDict()
    for item in raw.get("list", []):
        date = item["dt_txt"].split(" ")[0]
        day = by_date.setdefault(date, {"temps": [], "conditions": [], "icons": [], "humidity": [], "rain": [0.0]})
        main = item.get("main", {})
        condition = (item.get("weather") or [{}])[0]
        day["temps"].extend([main.get("temp_max", 0), main.get("temp_min", 0)])
        day["conditions"].append(condition.get("description", ""))
        day["icons"].append(condition.get("icon", ""))
        day["humidity"].append(main.get("humidity", 0))
        day["rain"].append(item.get("pop", 0) * 100)

    forecast = []
    for date, data in by_date.items():
        mid = len(data["conditions"]) // 2
        forecast.append({
            "date": date,
            "maxTemp": round(max(data["temps"])),
            "minTemp": round(min(data["temps"])),
            "condition": data["conditions"][mid],
            "icon": ICON_URL.format(icon=data["icons"][mid]),
            "chanceOfRain": round(max(data["rain"])),
            "humidity": round(sum(data["humidity"]) / len(data["humidity"])),
        })
    return forecast[:min(days, MAX_FORECAST_DAYS)]


def get_weather_alerts(raw_current: Dict[str, Any]) -> List[Dict[str, str]]:
    """Alerts derived from the current reading (free tier has no alert feed)."""
    alerts = []
    temp = raw_current.get("main", {}).get("temp")
    wind = raw_current.get("wind", {}).get("speed", 0)
    main = (raw_current.get("weather") or [{}])[0].get("main", "")

    if temp is not None and temp > 40:
        alerts.append({
            "type": "Heat",
            "severity": "High",
            "headline": "Extreme Heat Alert",
            "description": f"Temperature is {round(temp)}°C. Take precautions against heat stress for crops and workers.",
            "event": "Extreme Temperature",
        })
    if temp is not None and temp < 5:
        alerts.append({
            "type": "Cold",
            "severity": "High",
            "headline": "Cold Weather Alert",
            "description": f"Temperature is {round(temp)}°C. Protect sensitive crops from frost damage.",
            "event": "Cold Temperature",
        })
    if wind > 10:  # m/s
        alerts.append({
            "type": "Wind",
            "severity": "Moderate",
            "headline": "Strong Wind Alert",
            "description": f"Wind speed is {round(wind * 3.6)} km/h. Avoid spraying operations and provide support to tall crops.",
            "event": "Strong Winds",
        })
    if main == "Thunderstorm":
        alerts.append({
            "type": "Storm",
            "severity": "High",
            "headline": "Thunderstorm Alert",
            "description": "Thunderstorm conditions detected. Avoid field operations and ensure safety.",
            "event": "Thunderstorm",
        })
    return alerts


def get_crop_specific_advice(weather: Dict[str, Any], crop: Optional[str] = None) -> List[str]:
    advice = []
    if weather["temperature"] > 35:
        advice.append("High temperature alert: Increase irrigation frequency")
        advice.append("Avoid spraying pesticides during hot hours (10 AM - 4 PM)")
    elif weather["temperature"] < 10:
        advice.append("Cold weather: Protect sensitive crops from frost")

    if weather["humidity"] > 80:
        advice.append("High humidity: Watch for fungal diseases")
        advice.append("Ensure proper ventilation for crops")
    elif weather["humidity"] < 40:
        advice.append("Low humidity: Increase watering and use mulching")

    if weather["rainfall"] > 10:
        advice.append("Heavy rainfall: Check for waterlogging")
        advice.append("Avoid fertilizer application during rain")
    elif weather["rainfall"] > 0:
        advice.append("Light rain expected: Good time for sowing operations")

    if weather["windSpeed"] > 20:
        advice.append("Strong winds: Provide support to tall crops")
        advice.append("Avoid spraying operations due to wind")

    if crop:
        advice.append(f"General advice for {crop}: monitor pest/disease risk after heavy rains; adjust nutrient schedule if stress observed.")
    return advice


def get_irrigation_recommendation(weather: Dict[str, Any], forecast: List[Dict[str, Any]]) -> str:
    if any(day["chanceOfRain"] > 50 for day in forecast[:3]):
        return "Rain expected in next 3 days. You can skip irrigation today."
    if weather["temperature"] > 30 and weather["humidity"] < 50:
        return "Hot and dry weather. Irrigate crops today."
    if weather["temperature"] > 35:
        return "Very hot weather. Increase irrigation frequency."
    return "Normal irrigation schedule recommended."


def get_spraying_recommendation(weather: Dict[str, Any], forecast: List[Dict[str, Any]]) -> str:
    upcoming_rain = bool(forecast) and forecast[0]["chanceOfRain"] > 60
    if weather["rainfall"] > 5 or upcoming_rain:
        return "Not recommended: Rain expected. Wait for dry weather."
    if weather["windSpeed"] > 15:
        return "Not recommended: Wind speed too high for effective spraying."
    if weather["temperature"] > 30:
        return "Spray early morning (6-8 AM) or evening (5-7 PM) to avoid heat."
    return "Good conditions for spraying operations."


def _fetch_current(place: Dict[str, Any]) -> Dict[str, Any]:
    return _get(f"{OWM_BASE}/weather", {"lat": place["lat"], "lon": place["lon"], "units": "metric"})


def _fetch_forecast(place: Dict[str, Any]) -> Dict[str, Any]:
    return _get(f"{OWM_BASE}/forecast", {"lat": place["lat"], "lon": place["lon"], "units": "metric", "cnt": 40})


def get_current_weather(location: str) -> Tuple[Dict[str, Any], Dict[str, Any]]:
    """Return `(weather, raw)`; `raw` is the provider reading used for alerts."""
    place = geocode(location)
    raw = _fetch_current(place)
    return current_from_raw(place, raw), raw


def get_weather_forecast(location: str, days: int = 7) -> List[Dict[str, Any]]:
    place = geocode(location)
    return forecast_from_raw(_fetch_forecast(place), days)


def weather_report(location: str, crop: Optional[str] = None) -> Dict[str, Any]:
    """Current conditions, forecast, alerts and advice for one location."""
    place = geocode(location)
    raw_current = _fetch_current(place)
    current = current_from_raw(place, raw_current)
    forecast = forecast_from_raw(_fetch_forecast(place), 7)
    return {
        "current": current,
        "forecast": forecast,
        "alerts": get_weather_alerts(raw_current),
        "advice": {
            "cropSpecific": get_crop_specific_advice(current, crop) if crop else [],
            "irrigation": get_irrigation_recommendation(current, forecast),
            "spraying": get_spraying_recommendation(current, forecast),
        },
    }

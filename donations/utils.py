import logging
import re
from typing import Dict, List, Optional, Tuple

import requests
from django.conf import settings

from .models import FoodType

logger = logging.getLogger(__name__)

# First match wins; order matters (e.g. "soup can" is a meal, not packaged).
_CATEGORY_RULES: List[Tuple[str, "re.Pattern[str]"]] = [
    (FoodType.PREPARED_MEALS, re.compile(r"\b(sandwich\w*|burgers?|pizzas?|soups?|meals?|cooked|casseroles?|curry|stew)\b", re.I)),
    (FoodType.BAKERY_ITEMS, re.compile(r"\b(bread|loaf|loaves|cakes?|pastr(?:y|ies)|donuts?|doughnuts?|muffins?|bagels?|rolls?)\b", re.I)),
    (FoodType.FROZEN_ITEMS, re.compile(r"\b(frozen|ice\s*cream)\b", re.I)),
    (FoodType.DAIRY_PRODUCTS, re.compile(r"\b(milk|cheese|yogh?urts?|dairy|butter|cream)\b", re.I)),
    (FoodType.FRESH_PRODUCE, re.compile(r"\b(apples?|bananas?|vegetables?|veggies|fruits?|produce|lettuce|tomato(?:es)?|carrots?)\b", re.I)),
    (FoodType.CANNED_GOODS, re.compile(r"\b(cans?|canned|tins?|tinned)\b", re.I)),
    (FoodType.BEVERAGES, re.compile(r"\b(juices?|sodas?|water|drinks?|beverages?|coffee|tea)\b", re.I)),
    (FoodType.PACKAGED_FOODS, re.compile(r"\b(jars?|bottles?|packaged|boxe?s?|cereal|pasta|rice|snacks?)\b", re.I)),
]

# Built-in fallback when no GEOCODER_URL is configured.
_CITY_COORDS: Dict[str, Tuple[float, float]] = {
    "new york": (40.7128, -74.0060),
    "los angeles": (34.0522, -118.2437),
    "chicago": (41.8781, -87.6298),
    "houston": (29.7604, -95.3698),
    "phoenix": (33.4484, -112.0740),
    "san antonio": (29.4241, -98.4936),
    "san francisco": (37.7749, -122.4194),
}


def classify_food_type(text: str) -> str:
    """Keyword classifier for free-text food descriptions. Replaceable."""
    if not text:
        return FoodType.OTHER.value
    text = text.strip()
    # already a category name
    for value in FoodType.values:
        if text.lower() == value.lower():
            return value
    for category, pattern in _CATEGORY_RULES:
        if pattern.search(text):
            return category.value
    return FoodType.OTHER.value


def _geocode_remote(address: str) -> Optional[Tuple[float, float]]:
    resp = requests.get(
        settings.GEOCODER_URL,
        params={"q": address, "format": "json", "limit": 1},
        headers={"User-Agent": "foodlink/1.0"},
        timeout=settings.EXTERNAL_HTTP_TIMEOUT,
    )
    if resp.status_code != 200:
        return None
    data = resp.json()
    # nominatim-style list of {"lat": "...", "lon": "..."}; also accept a bare object
    if isinstance(data, list):
        data = data[0] if data else None
    if not isinstance(data, dict):
        return None
    lat = data.get("lat")
    lng = data.get("lng", data.get("lon"))
    if lat is None or lng is None:
        return None
    return float(lat), float(lng)


def geocode_address(address: str) -> Optional[Tuple[float, float]]:
    """
    Best effort ``address -> (lat, lng)``. Returns None when the address
    can't be placed; never raises.
    """
    if not address or not address.strip():
        return None

    if settings.GEOCODER_URL:
        try:
            coords = _geocode_remote(address)
        except (requests.RequestException, ValueError, TypeError) as exc:
            logger.warning("geocoder lookup failed for %r: %s", address, exc)
            coords = None
        if coords:
            return coords

    lowered = address.lower()
    for city, coords in _CITY_COORDS.items():
        if city in lowered:
            return coords
    return None

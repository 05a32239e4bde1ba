"""Food search backed by OpenFoodFacts with a built-in fallback list."""

from __future__ import annotations

import re
import time
from threading import Lock
from typing import Any, Dict, List, Mapping, Sequence, Tuple

import requests
import structlog

from nesema import egress


logger = structlog.get_logger(__name__)

OFF_SEARCH_URL = "https://world.openfoodfacts.org/cgi/search.pl"
OFF_PRODUCT_URL = "https://world.openfoodfacts.org/product/{code}"
OFF_FIELDS = (
    "code,product_name,product_name_en,nutriments,allergens_tags,categories_tags,image_front_small_url"
)
USER_AGENT = "NesemaHealth/1.0 (contact@nesema.com)"
DEFAULT_QUERY = "chicken breast"
CACHE_TTL_SECONDS = 24 * 60 * 60
CACHE_MAX_ENTRIES = 256
REQUEST_TIMEOUT_SECONDS = 5

# query -> (stored_at, foods), oldest first
_SEARCH_CACHE: Dict[str, Tuple[float, List[Dict[str, Any]]]] = {}
_CACHE_LOCK = Lock()


def _fallback(id_: str, name: str, category: str, kcal: float, protein: float, carbs: float, fat: float) -> Dict[str, Any]:
    return {
        "id": id_,
        "name": name,
        "category": category,
        "kcal": kcal,
        "protein": protein,
        "carbs": carbs,
        "fat": fat,
        "fallback": True,
    }


FALLBACK_FOODS: List[Dict[str, Any]] = [
    _fallback("f01", "Chicken Breast", "protein", 165, 31, 0, 3.6),
    _fallback("f02", "Salmon Fillet", "protein", 208, 20, 0, 13),
    _fallback("f03", "Eggs (whole)", "protein", 143, 13, 1, 10),
    _fallback("f04", "Turkey Mince", "protein", 170, 29, 0, 6),
    _fallback("f05", "Tofu (firm)", "plant-based", 76, 8, 2, 4),
    _fallback("f06", "Brown Rice (cooked)", "carbs", 112, 2.6, 23, 0.9),
    _fallback("f07", "Sweet Potato", "carbs", 86, 1.6, 20, 0.1),
    _fallback("f08", "Oats (rolled)", "carbs", 389, 17, 66, 7),
    _fallback("f09", "Quinoa (cooked)", "carbs", 120, 4.4, 22, 2),
    _fallback("f10", "Broccoli", "veg", 34, 2.8, 7, 0.4),
    _fallback("f11", "Spinach", "veg", 23, 2.9, 3.6, 0.4),
    _fallback("f12", "Courgette", "veg", 17, 1.2, 3, 0.3),
    _fallback("f13", "Kale", "veg", 49, 4.3, 9, 0.9),
    _fallback("f14", "Blueberries", "fruit", 57, 0.7, 14, 0.3),
    _fallback("f15", "Avocado", "fats", 160, 2, 9, 15),
    _fallback("f16", "Olive Oil", "fats", 884, 0, 0, 100),
    _fallback("f17", "Almonds", "fats", 579, 21, 22, 50),
    _fallback("f18", "Walnuts", "fats", 654, 15, 14, 65),
    _fallback("f19", "Coconut Milk", "dairy-free", 230, 2.3, 6, 24),
    _fallback("f20", "Oat Milk", "dairy-free", 46, 1, 8, 1.5),
]


_PROTEIN = re.compile(
    r"chicken|beef|salmon|tuna|cod|haddock|trout|mackerel|prawn|shrimp|turkey|pork|lamb|venison|duck"
    r"|steak|mince|fillet|breast|thigh"
)
_EGG = re.compile(r"egg")
_EGG_LOOKALIKE = re.compile(r"eggplant|aubergine")
_SOY_PROTEIN = re.compile(r"tofu|tempeh|seitan|edamame")
_PLANT_TAGS = re.compile(r"plant.based|vegan.protein")
_LEGUMES = re.compile(r"lentil|chickpea|black bean|kidney bean|butter bean|legume")
_CARBS = re.compile(
    r"rice|pasta|noodle|bread|oat|potato|quinoa|barley|couscous|bulgur|polenta|tortilla|cereal|flour"
    r"|cracker|rye|spelt"
)
_ROOTS = re.compile(r"sweet potato|yam")
_VEG = re.compile(
    r"broccoli|spinach|kale|carrot|pepper|courgette|zucchini|cucumber|lettuce|cabbage|celery|onion"
    r"|garlic|mushroom|asparagus|leek|pea|green bean|mangetout|pak choi|bok choy|beetroot|parsnip"
    r"|cauliflower|aubergine|eggplant|artichoke"
)
_TOMATO = re.compile(r"tomato")
_TOMATO_PRODUCT = re.compile(r"sauce|ketchup|paste")
_FRUIT = re.compile(
    r"apple|banana|berry|blueberry|strawberry|raspberry|orange|mango|grape|melon|pear|peach|plum"
    r"|cherry|kiwi|pineapple|papaya|fig|date|raisin|dried fruit"
)
_FATS = re.compile(
    r"avocado|olive oil|coconut oil|almond|walnut|cashew|pecan|pistachio|hazelnut|macadamia|nut|seed"
    r"|tahini|peanut butter|chia|flaxseed|hemp seed"
)
_DAIRY_FREE = re.compile(r"oat milk|almond milk|coconut milk|rice milk|soy milk|hazelnut milk|cashew milk")


def guess_category(name: str, category_tags: Sequence[str] = ()) -> str:
    """Map a product name (and its category tags) onto a meal-builder category.

    Rules are checked in order, so ``"oat milk"`` lands in ``carbs`` because
    the ``oat`` rule fires before the dairy-free one.
    """

    lower = name.lower()
    tags = " ".join(category_tags).lower()
    if _PROTEIN.search(lower):
        return "protein"
    if _EGG.search(lower) and not _EGG_LOOKALIKE.search(lower):
        return "protein"
    if _SOY_PROTEIN.search(lower) or _PLANT_TAGS.search(tags):
        return "plant-based"
    if _LEGUMES.search(lower):
        return "plant-based"
    if _CARBS.search(lower) or _ROOTS.search(lower):
        return "carbs"
    if _VEG.search(lower):
        return "veg"
    if _TOMATO.search(lower) and not _TOMATO_PRODUCT.search(lower):
        return "veg"
    if _FRUIT.search(lower):
        return "fruit"
    if _FATS.search(lower):
        return "fats"
    if _DAIRY_FREE.search(lower):
        return "dairy-free"
    return "other"


def _round1(value: Any) -> float:
    try:
        return round(float(value or 0) * 10) / 10
    except (TypeError, ValueError):
        return 0.0


def _strip_lang(tags: Sequence[str]) -> List[str]:
    return [re.sub(r"^en:", "", tag) for tag in tags or []]


def map_product(product: Mapping[str, Any]) -> Dict[str, Any] | None:
    """Convert an OpenFoodFacts product into a food item, or ``None`` to skip."""

    name = (product.get("product_name_en") or product.get("product_name") or "").strip()
    if not name:
        return None
    nutriments = product.get("nutriments") or {}
    kcal = round(float(nutriments.get("energy-kcal_100g") or 0))
    if not kcal and nutriments.get("energy_100g"):
        kcal = round(float(nutriments["energy_100g"]) / 4.184)
    if not kcal:
        return None

    allergens = _strip_lang(product.get("allergens_tags") or [])
    categories = _strip_lang(product.get("categories_tags") or [])
    code = product.get("code")
    item: Dict[str, Any] = {
        "id": code or f"off-{name}",
        "name": name,
        "category": guess_category(name, categories),
        "kcal": kcal,
        "protein": _round1(nutriments.get("proteins_100g")),
        "carbs": _round1(nutriments.get("carbohydrates_100g")),
        "fat": _round1(nutriments.get("fat_100g")),
    }
    if product.get("image_front_small_url"):
        item["image"] = product["image_front_small_url"]
    if allergens:
        item["allergens"] = allergens
    if code:
        item["offUrl"] = OFF_PRODUCT_URL.format(code=code)
    return item


def fetch_from_off(query: str) -> List[Dict[str, Any]]:
    response = egress.secure_request(
        "GET",
        OFF_SEARCH_URL,
        params={
            "search_terms": query,
            "json": "1",
            "fields": OFF_FIELDS,
            "lc": "en",
            "cc": "gb",
            "page_size": "24",
            "sort_by": "popularity",
        },
        headers={"User-Agent": USER_AGENT},
        timeout=REQUEST_TIMEOUT_SECONDS,
    )
    data = response.json()
    items = []
    for product in data.get("products") or []:
        item = map_product(product)
        if item is not None:
            items.append(item)
    return items


def _store(term: str, now: float, foods: List[Dict[str, Any]]) -> None:
    """Insert under the lock, dropping expired entries and then the oldest beyond the cap."""

    for key in [k for k, (stored_at, _) in _SEARCH_CACHE.items() if now - stored_at >= CACHE_TTL_SECONDS]:
        del _SEARCH_CACHE[key]
    _SEARCH_CACHE.pop(term, None)
    _SEARCH_CACHE[term] = (now, foods)
    while len(_SEARCH_CACHE) > CACHE_MAX_ENTRIES:
        del _SEARCH_CACHE[next(iter(_SEARCH_CACHE))]


def clear_cache() -> None:
    with _CACHE_LOCK:
        _SEARCH_CACHE.clear()


def search_foods(query: str | None) -> Dict[str, Any]:
    """Return ``{"foods": [...], "fallback": bool}`` for *query*."""

    term = (query or "").strip() or DEFAULT_QUERY
    now = time.time()
    with _CACHE_LOCK:
        cached = _SEARCH_CACHE.get(term)
    if cached and now - cached[0] < CACHE_TTL_SECONDS:
        return {"foods": cached[1], "fallback": False}
    try:
        foods = fetch_from_off(term)
    except (requests.RequestException, egress.EgressError, ValueError, TypeError) as exc:
        logger.warning("food_search_failed", query=term, error=str(exc))
        return {"foods": [dict(food) for food in FALLBACK_FOODS], "fallback": True}
    with _CACHE_LOCK:
        _store(term, now, foods)
    return {"foods": foods, "fallback": False}


__all__ = ["FALLBACK_FOODS", "guess_category", "map_product", "search_foods", "clear_cache"]

# microdonate/services/platform_config.py
from typing import Any, Dict

from microdonate.core.security import utcnow

DEFAULT_CONFIG: Dict[str, Any] = {
    "minimum_donation": {"amount": 1.0, "enabled": True},
    "currency": {
        "code": "USD",
        "symbol": "$",
        "position": "before",
        "decimal_places": 2,
        "thousands_separator": ",",
        "decimal_separator": ".",
    },
}

CURRENCY_PRESETS = [
    {"code": "USD", "symbol": "$", "position": "before", "decimal_places": 2, "thousands_separator": ",", "decimal_separator": ".", "name": "US Dollar"},
    {"code": "EUR", "symbol": "€", "position": "before", "decimal_places": 2, "thousands_separator": ".", "decimal_separator": ",", "name": "Euro"},
    {"code": "GBP", "symbol": "£", "position": "before", "decimal_places": 2, "thousands_separator": ",", "decimal_separator": ".", "name": "British Pound"},
    {"code": "INR", "symbol": "₹", "position": "before", "decimal_places": 2, "thousands_separator": ",", "decimal_separator": ".", "name": "Indian Rupee"},
    {"code": "CAD", "symbol": "CA$", "position": "before", "decimal_places": 2, "thousands_separator": ",", "decimal_separator": ".", "name": "Canadian Dollar"},
    {"code": "AUD", "symbol": "A$", "position": "before", "decimal_places": 2, "thousands_separator": ",", "decimal_separator": ".", "name": "Australian Dollar"},
    {"code": "JPY", "symbol": "¥", "position": "before", "decimal_places": 0, "thousands_separator": ",", "decimal_separator": ".", "name": "Japanese Yen"},
]


async def get_config(repo) -> dict:
    """Return the platform config, creating the default document on first read."""
    doc = await repo.get_platform_config()
    if doc is None:
        doc = await repo.save_platform_config({
            "minimum_donation": dict(DEFAULT_CONFIG["minimum_donation"]),
            "currency": dict(DEFAULT_CONFIG["currency"]),
            "updated_by": None,
            "updated_at": utcnow(),
        })
    return doc


async def update_config(repo, updates: dict, user_id: str) -> dict:
    doc = await get_config(repo)
    for section in ("minimum_donation", "currency"):
        if updates.get(section):
            doc[section] = {**doc[section], **updates[section]}
    doc["updated_by"] = user_id
    doc["updated_at"] = utcnow()
    return await repo.save_platform_config(doc)


def public_view(doc: dict) -> dict:
    return {"minimum_donation": doc["minimum_donation"], "currency": doc["currency"]}

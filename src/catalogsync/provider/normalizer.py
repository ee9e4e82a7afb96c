"""
Normalize raw provider catalog objects into CatalogItem / CatalogVariation.

The provider returns Square-style catalog objects:

    {"type": "ITEM", "id": "...", "item_data": {"name": ..., "variations": [...]}}
    {"type": "ITEM_VARIATION", "id": "...",
     "item_variation_data": {"item_id": ..., "name": ..., "sku": ..., "upc": ...,
                             "price_money": {"amount": 499, "currency": "USD"}}}

All string fields are trimmed; empty strings become None so a blank SKU can
never be used as a match key.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

OBJECT_TYPE_ITEM = "ITEM"
OBJECT_TYPE_VARIATION = "ITEM_VARIATION"


def clean(value: Any) -> Optional[str]:
    """Trim a scalar to a non-empty string, or None."""
    if value is None:
        return None
    text = str(value).strip()
    return text or None


@dataclass
class CatalogVariation:
    external_id: str
    item_id: Optional[str]
    name: Optional[str] = None
    sku: Optional[str] = None
    upc: Optional[str] = None
    price: Optional[int] = None  # minor units
    currency: Optional[str] = None


@dataclass
class CatalogItem:
    external_id: str
    name: Optional[str] = None
    sku: Optional[str] = None
    upc: Optional[str] = None
    price: Optional[int] = None
    currency: Optional[str] = None
    variation_ids: List[str] = field(default_factory=list)


def _money(data: Dict[str, Any]) -> Tuple[Optional[int], Optional[str]]:
    money = data.get("price_money") or {}
    amount = money.get("amount")
    if amount is None or amount == "":
        return None, None
    try:
        return int(amount), clean(money.get("currency"))
    except (TypeError, ValueError):
        return None, None


def normalize_variation(obj: Dict[str, Any]) -> Optional[CatalogVariation]:
    """Build a CatalogVariation from an ITEM_VARIATION object; None if it has no id."""
    external_id = clean(obj.get("id"))
    if not external_id:
        return None
    data = obj.get("item_variation_data") or {}
    price, currency = _money(data)
    return CatalogVariation(
        external_id=external_id,
        item_id=clean(data.get("item_id")),
        name=clean(data.get("name")),
        sku=clean(data.get("sku")),
        upc=clean(data.get("upc")),
        price=price,
        currency=currency,
    )


def normalize_item(obj: Dict[str, Any]) -> Optional[CatalogItem]:
    """Build a CatalogItem from an ITEM object; None if it has no id."""
    external_id = clean(obj.get("id"))
    if not external_id:
        return None
    data = obj.get("item_data") or {}
    price, currency = _money(data)
    variation_ids = []
    for v in data.get("variations") or []:
        vid = clean(v.get("id")) if isinstance(v, dict) else clean(v)
        if vid and vid not in variation_ids:
            variation_ids.append(vid)
    return CatalogItem(
        external_id=external_id,
        name=clean(data.get("name")),
        sku=clean(data.get("sku")),
        upc=clean(data.get("upc")),
        price=price,
        currency=currency,
        variation_ids=variation_ids,
    )


def embedded_variations(obj: Dict[str, Any]) -> List[CatalogVariation]:
    """Variations embedded in an ITEM object's item_data.variations (full objects only)."""
    found = []
    for v in (obj.get("item_data") or {}).get("variations") or []:
        if isinstance(v, dict) and v.get("item_variation_data"):
            variation = normalize_variation(v)
            if variation is not None:
                if variation.item_id is None:
                    variation.item_id = clean(obj.get("id"))
                found.append(variation)
    return found

"""
Read-only menu catalog and delivery-fee lookup.

Orders never trust client prices: ``price_line_item`` re-prices every cart
line from the stored menu item, variant and choice groups.
"""

from typing import Dict, List, Mapping, Optional

from pymongo.database import Database

from database import serialize, to_object_id
from errors import NotFound, ValidationFailed
from schemas import OrderItem, OrderItemIn


def list_categories(database: Database) -> List[dict]:
    return [serialize(c) for c in database["menucategory"].find().sort("position", 1)]


def list_menu_items(database: Database, category: Optional[str] = None) -> List[dict]:
    q = {}
    if category:
        q["category"] = category
    return [serialize(i) for i in database["menuitem"].find(q).sort("name", 1)]


def list_variants(database: Database, menu_item_id: str) -> List[dict]:
    return [serialize(v) for v in database["menuitemvariant"].find({"menu_item_id": menu_item_id})]


def list_choice_groups(database: Database, menu_item_id: str) -> List[dict]:
    return [serialize(g) for g in database["choicegroup"].find({"menu_item_id": menu_item_id})]


def _get(database: Database, collection: str, doc_id: str) -> Optional[dict]:
    try:
        oid = to_object_id(doc_id)
    except NotFound:
        return None
    return database[collection].find_one({"_id": oid})


def price_line_item(database: Database, item: OrderItemIn) -> OrderItem:
    if not isinstance(item.quantity, int) or item.quantity < 1:
        raise ValidationFailed("Invalid quantity. Please enter a positive whole number.")

    menu_item = _get(database, "menuitem", item.menu_item_id)
    if not menu_item:
        raise ValidationFailed("One or more menu items are no longer available. Please refresh and try again.")
    if not menu_item.get("available", True):
        raise ValidationFailed("One or more menu items are currently unavailable. Please remove them from your cart.")

    unit_price = float(menu_item["price"])
    variant_name = None
    if item.variant_id:
        variant = _get(database, "menuitemvariant", item.variant_id)
        if not variant or variant.get("menu_item_id") != item.menu_item_id:
            raise ValidationFailed("Invalid variant selection. Please refresh and try again.")
        if not variant.get("available", True):
            raise ValidationFailed("Selected variant is currently unavailable. Please choose a different option.")
        unit_price = float(variant["price"])
        variant_name = variant["name"]

    selected: Optional[Dict[str, Dict[str, object]]] = None
    if item.selected_choices:
        selected = {}
        for group_id, choice_name in item.selected_choices.items():
            group = _get(database, "choicegroup", group_id)
            if not group or group.get("menu_item_id") != item.menu_item_id:
                raise ValidationFailed("Invalid choice selection. Please refresh and try again.")
            choice = next((c for c in group.get("choices", []) if c["name"] == choice_name), None)
            if not choice:
                raise ValidationFailed("Selected choice is no longer available. Please refresh and try again.")
            if not choice.get("available", True):
                raise ValidationFailed("Selected choice is currently unavailable. Please choose a different option.")
            unit_price += float(choice.get("price", 0))
            selected[group_id] = {"name": choice["name"], "price": float(choice.get("price", 0))}

    unit_price = round(unit_price, 2)
    return OrderItem(
        menu_item_id=item.menu_item_id,
        name=menu_item["name"],
        unit_price=unit_price,
        quantity=item.quantity,
        line_total=round(unit_price * item.quantity, 2),
        variant_id=item.variant_id,
        variant_name=variant_name,
        selected_choices=selected,
    )


def fee_for_address(address: Optional[str], fees: List[Mapping]) -> float:
    """
    Match a barangay name inside a free-text address.

    Hyphens and spaces are interchangeable ("Puro-Batia" matches
    "puro batia"). Returns 0 when nothing matches.
    """
    if not address:
        return 0.0
    address_lower = address.lower()
    for entry in fees:
        barangay = entry["barangay"].lower()
        if (
            barangay in address_lower
            or barangay.replace("-", " ") in address_lower
            or barangay.replace(" ", "-") in address_lower
        ):
            return float(entry["fee"])
    return 0.0


def delivery_fee_for_address(database: Database, address: Optional[str]) -> float:
    return fee_for_address(address, list(database["deliveryfee"].find()))

"""Order pricing.

Turns cart entries plus a catalog snapshot into priced line items. Everything
here is pure: callers fetch and validate the catalog rows first, so a missing
id at this point is a programming error rather than a user error.
"""
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Sequence

UNKNOWN_ITEM = "Unknown Item"
UNKNOWN_GROUP = "Unknown Group"
UNKNOWN_CHOICE = "Unknown Choice"


@dataclass(frozen=True)
class CatalogItem:
    id: str
    price: int
    kitchen_name: Optional[str] = None
    translations: Optional[dict] = None


@dataclass(frozen=True)
class CatalogChoice:
    id: str
    option_group_id: str
    price_modifier: int
    translations: Optional[dict] = None


@dataclass(frozen=True)
class CatalogGroup:
    id: str
    translations: Optional[dict] = None


@dataclass(frozen=True)
class PricedOption:
    option_group_id: str
    option_choice_id: str
    group_name: str
    choice_name: str
    quantity: int
    price_modifier: int


@dataclass(frozen=True)
class PricedLineItem:
    item_id: str
    name: str
    kitchen_name: Optional[str]
    quantity: int
    unit_price: int
    options_price: int
    total_price: int
    display_order: int
    special_instructions: Optional[str] = None
    options: List[PricedOption] = field(default_factory=list)


@dataclass(frozen=True)
class PricedCart:
    subtotal: int
    items: List[PricedLineItem]


def localized_name(translations, language, fallback):
    """Return ``translations[language]["name"]`` or ``fallback``."""
    if not translations:
        return fallback
    entry = translations.get(language) or {}
    return entry.get("name") or fallback


def price_cart(
    entries: Sequence,
    items: Mapping[str, CatalogItem],
    choices: Mapping[str, CatalogChoice],
    groups: Mapping[str, CatalogGroup],
    language: str = "de",
) -> PricedCart:
    """Price each cart entry in input order.

    ``entries`` are objects with ``item_id``, ``quantity``, ``options`` (each
    with ``option_choice_id`` and ``quantity``) and optionally
    ``special_instructions``.
    """
    subtotal = 0
    priced: List[PricedLineItem] = []

    for position, entry in enumerate(entries):
        item = items[entry.item_id]
        quantity = entry.quantity or 1

        options_price = 0
        priced_options: List[PricedOption] = []
        for selected in entry.options or []:
            choice = choices[selected.option_choice_id]
            group = groups.get(choice.option_group_id)
            choice_quantity = selected.quantity or 1

            options_price += choice.price_modifier * choice_quantity
            priced_options.append(PricedOption(
                option_group_id=choice.option_group_id,
                option_choice_id=choice.id,
                group_name=localized_name(group.translations if group else None, language, UNKNOWN_GROUP),
                choice_name=localized_name(choice.translations, language, UNKNOWN_CHOICE),
                quantity=choice_quantity,
                price_modifier=choice.price_modifier,
            ))

        total_price = (item.price + options_price) * quantity
        subtotal += total_price

        priced.append(PricedLineItem(
            item_id=item.id,
            name=localized_name(item.translations, language, UNKNOWN_ITEM),
            kitchen_name=item.kitchen_name,
            quantity=quantity,
            unit_price=item.price,
            options_price=options_price,
            total_price=total_price,
            display_order=position,
            special_instructions=getattr(entry, "special_instructions", None),
            options=priced_options,
        ))

    return PricedCart(subtotal=subtotal, items=priced)


def requested_choice_ids(entries: Sequence) -> List[str]:
    """Distinct option choice ids referenced by a cart, in first-seen order."""
    seen: Dict[str, None] = {}
    for entry in entries:
        for selected in entry.options or []:
            seen.setdefault(selected.option_choice_id, None)
    return list(seen)

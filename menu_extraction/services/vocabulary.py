"""Allowed category and size vocabularies used in prompts and coercion."""

from typing import Iterable, List, Optional

DEFAULT_CATEGORY = "Open Food"
DEFAULT_SIZE = "N/A"

DEFAULT_CATEGORIES = [
    "Appetizers",
    "Soups",
    "Salads",
    "Sandwiches",
    "Burgers",
    "Pizza",
    "Pasta",
    "Entrees",
    "Desserts",
    "Sides",
    "Kids Menu",
    "Classic Cocktails",
    "Signature Cocktails",
    "Martinis",
    "Margaritas",
    "Mojitos",
    "Shots",
    "Draft Beer",
    "Bottled Beer",
    "Canned Beer",
    "Cider",
    "RTDs (Ready-to-Drink)",
    "Red Wine",
    "White Wine",
    "Rosé Wine",
    "Sparkling Wine",
    "Whiskey",
    "Vodka",
    "Gin",
    "Rum",
    "Tequila",
    "Liqueurs",
    "Coffee",
    "Tea",
    "Juice",
    "Soda",
    "Mocktails",
    "Apparel",
    "Glassware",
    "Other",
    DEFAULT_CATEGORY,
]

DEFAULT_SIZES = [
    DEFAULT_SIZE,
    "Small",
    "Medium",
    "Regular",
    "Large",
    "Side",
    '12"',
    '16"',
    "Glass",
    "Bottle",
]

DEFAULT_MODIFIER_GROUPS = [
    "Toppings",
    "Sides",
    "Add Protein",
    "Crust Type",
    "Extra Toppings",
    "Sauces",
    "Syrups",
    "Milk Options",
]


class VocabularyProvider:
    """Supplies the allowed categories and sizes for a run.

    Both lists always contain their sentinel value (``Open Food`` and ``N/A``)
    so coercion has a valid target.
    """

    def __init__(
        self,
        allowed_categories: Optional[Iterable[str]] = None,
        allowed_sizes: Optional[Iterable[str]] = None,
        known_modifier_groups: Optional[Iterable[str]] = None,
    ):
        self.allowed_categories: List[str] = _with_sentinel(
            allowed_categories or DEFAULT_CATEGORIES, DEFAULT_CATEGORY
        )
        self.allowed_sizes: List[str] = _with_sentinel(allowed_sizes or DEFAULT_SIZES, DEFAULT_SIZE)
        self.known_modifier_groups: List[str] = list(known_modifier_groups or DEFAULT_MODIFIER_GROUPS)
        self._categories_lower = {c.lower(): c for c in self.allowed_categories}
        self._sizes_lower = {s.lower(): s for s in self.allowed_sizes}

    def is_allowed_category(self, category: Optional[str]) -> bool:
        return bool(category) and category in self.allowed_categories

    def is_allowed_size(self, size: Optional[str]) -> bool:
        return bool(size) and size in self.allowed_sizes

    def coerce_category(self, category: Optional[str]) -> str:
        """Return the canonical category, matching case-insensitively, or the default."""
        if not category:
            return DEFAULT_CATEGORY
        return self._categories_lower.get(category.strip().lower(), DEFAULT_CATEGORY)

    def coerce_size(self, size: Optional[str]) -> str:
        if not size:
            return DEFAULT_SIZE
        return self._sizes_lower.get(size.strip().lower(), DEFAULT_SIZE)


def _with_sentinel(values: Iterable[str], sentinel: str) -> List[str]:
    result = list(dict.fromkeys(values))
    if sentinel not in result:
        result.append(sentinel)
    return result

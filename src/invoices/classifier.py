"""Map extracted receipt text to a Darwinbox category / expense-type pair.

Rules are checked in order and the first one whose expense type exists in the
catalogue wins. Expense types are looked up by title so the same rules work
against a freshly scraped catalogue.
"""

from __future__ import annotations

import json
import logging
import re
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from ..config import CATEGORY_CATALOGUE_PATH
from ..constants import BUSINESS_TRAVEL_CATEGORY, DEFAULT_CATALOGUE, LOCAL_CONVEYANCE_TYPE
from ..models.expense import CategoryMapping

logger = logging.getLogger(__name__)
if not logger.handlers:
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(asctime)s [%(name)s] %(levelname)s: %(message)s"))
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)

DEFAULT_MAPPING = CategoryMapping(
    category_value=BUSINESS_TRAVEL_CATEGORY,
    expense_type_value=LOCAL_CONVEYANCE_TYPE,
)


@dataclass(frozen=True)
class Rule:
    """One keyword rule.

    Matches when a keyword occurs in any of ``fields`` or the extracted
    category is one of ``categories``.
    """

    expense_type: str  # lower-case fragment of the expense-type title
    keywords: tuple[str, ...] = ()
    fields: tuple[str, ...] = ("description", "merchant")
    categories: tuple[str, ...] = ()
    excludes: tuple[str, ...] = ()  # names of rules that must not have matched


RULES: tuple[tuple[str, Rule], ...] = (
    ("airport", Rule(
        expense_type="airport transfer",
        keywords=("airport transfer", "airport", "terminal", "to airport"),
        fields=("description",),
    )),
    ("conveyance", Rule(
        expense_type="local conveyance",
        keywords=("local conveyance", "taxi", "rapido", "uber", "ola", "ride", "cab"),
        excludes=("airport",),
    )),
    ("meals", Rule(
        expense_type="meals",
        keywords=(
            "meal", "lunch", "dinner", "breakfast", "restaurant", "food", "dining",
            "catering", "swiggy", "zomato", "food expense", "business lunch",
        ),
        categories=("food",),
    )),
    ("hotel", Rule(
        expense_type="lodging less than 5 days",
        keywords=("hotel", "lodging", "accommodation", "stay"),
        categories=("accommodation",),
    )),
    ("flight", Rule(
        expense_type="flight",
        keywords=("flight", "airline", "air ticket"),
    )),
    ("category_default", Rule(
        expense_type="meals",
        fields=(),
        categories=("travel", "food"),
    )),
)


def _contains_keyword(text: str, keyword: str) -> bool:
    return re.search(rf"\b{re.escape(keyword)}\b", text) is not None


def load_catalogue(path: Optional[Path] = None) -> list[dict]:
    """Read the scraped category catalogue, or fall back to the built-in one."""
    path = Path(path or CATEGORY_CATALOGUE_PATH)
    if path.exists():
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            if isinstance(data, list) and data:
                return data
            logger.warning(f"Category catalogue {path} is empty, using defaults")
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Could not read category catalogue {path}: {e}")
    return DEFAULT_CATALOGUE


def save_catalogue(catalogue: list[dict], path: Optional[Path] = None) -> Path:
    path = Path(path or CATEGORY_CATALOGUE_PATH)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(catalogue, indent=2), encoding="utf-8")
    logger.info(f"Saved {len(catalogue)} categories to {path}")
    return path


class CategoryClassifier:
    """Pure keyword classifier over a category catalogue."""

    def __init__(self, catalogue: Optional[list[dict]] = None,
                 category_value: str = BUSINESS_TRAVEL_CATEGORY):
        self._catalogue = catalogue if catalogue is not None else load_catalogue()
        self._category = next(
            (c for c in self._catalogue if c.get("value") == category_value), None
        )

    @classmethod
    def from_file(cls, path: Optional[Path] = None) -> CategoryClassifier:
        return cls(load_catalogue(path))

    def expense_type_for(self, title_fragment: str) -> Optional[str]:
        """Value of the first non-VP expense type whose title contains the fragment."""
        if self._category is None:
            return None
        for expense_type in self._category.get("expenseTypes", []):
            title = expense_type.get("title", "")
            if title_fragment in title.lower() and "VP" not in title:
                return expense_type.get("value")
        return None

    def classify(self, category: str, description: str, merchant: str) -> CategoryMapping:
        texts = {
            "description": (description or "").lower(),
            "merchant": (merchant or "").lower(),
        }
        category = (category or "").strip().lower()

        if self._category is None:
            return DEFAULT_MAPPING

        matched: set[str] = set()
        for name, rule in RULES:
            hit = category in rule.categories or any(
                _contains_keyword(texts[f], keyword)
                for keyword in rule.keywords
                for f in rule.fields
            )
            if not hit:
                continue
            matched.add(name)
            if matched.intersection(rule.excludes):
                continue
            expense_type = self.expense_type_for(rule.expense_type)
            if expense_type:
                return CategoryMapping(
                    category_value=self._category["value"],
                    expense_type_value=expense_type,
                )

        fallback = self.expense_type_for("local conveyance") or LOCAL_CONVEYANCE_TYPE
        return CategoryMapping(
            category_value=self._category["value"],
            expense_type_value=fallback,
        )

"""Parse Darwinbox expense-form dropdown HTML into a category catalogue.

The form renders Semantic UI dropdowns: a ``div.ui.dropdown`` holding a
``div.menu`` of ``div.item[data-value]`` entries. The expense-type dropdown
only lists the types of the category currently selected, so the catalogue
is built by selecting each category in turn and parsing the second menu.
"""

from __future__ import annotations

import logging
import re
import sys

from bs4 import BeautifulSoup

logger = logging.getLogger(__name__)
if not logger.handlers:
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(asctime)s [%(name)s] %(levelname)s: %(message)s"))
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)

PLACEHOLDER_VALUES = {"", "0"}
PLACEHOLDER_TITLES = {"select expense type", "select category", "select"}


def _clean_text(text: str | None) -> str:
    """Strip whitespace and normalize text."""
    if not text:
        return ""
    return re.sub(r"\s+", " ", text).strip()


def parse_dropdown_items(html: str) -> list[dict]:
    """Return ``[{value, title}]`` for every item in a dropdown menu's HTML."""
    soup = BeautifulSoup(html or "", "html.parser")
    items = []
    seen = set()
    for item in soup.select("div.item[data-value]"):
        value = (item.get("data-value") or "").strip()
        title = _clean_text(item.get_text(" "))
        if value in seen:
            continue
        seen.add(value)
        items.append({"value": value, "title": title})
    return items


def parse_form_dropdowns(html: str) -> list[list[dict]]:
    """Items of every dropdown in the expense form, in document order."""
    soup = BeautifulSoup(html or "", "html.parser")
    form = soup.select_one("#addExpenses") or soup
    return [parse_dropdown_items(str(menu)) for menu in form.select("div.ui.dropdown div.menu")]


def _is_placeholder(item: dict) -> bool:
    return (
        item.get("value", "") in PLACEHOLDER_VALUES
        or item.get("title", "").lower() in PLACEHOLDER_TITLES
    )


def clean_catalogue(categories: list[dict]) -> list[dict]:
    """Drop placeholders, stray category ids and empty categories.

    While the second dropdown is still loading it can echo the category list,
    so any expense-type value that is also a category value is discarded.
    """
    category_values = {c.get("value") for c in categories}
    cleaned = []
    for category in categories:
        if _is_placeholder(category):
            continue
        expense_types = [
            et
            for et in category.get("expenseTypes", [])
            if not _is_placeholder(et) and et.get("value") not in category_values
        ]
        if not expense_types:
            logger.info(f"Dropping category {category.get('title')!r}: no expense types")
            continue
        cleaned.append({
            "value": category["value"],
            "title": category.get("title", ""),
            "expenseTypes": expense_types,
        })
    return cleaned

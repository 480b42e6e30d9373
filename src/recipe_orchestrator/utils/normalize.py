"""Normalization utilities for recipe data.

Provides consistent normalization for titles, ingredient names, queries and
URLs so that matching and deduplication compare like with like.
"""

from __future__ import annotations

import re
from urllib.parse import urlsplit

# Marketing descriptors that carry no identity
DESCRIPTORS = {
    "best", "perfect", "easy", "simple", "quick", "homemade", "classic",
    "authentic", "traditional", "ultimate",
}

ARTICLES = {"the", "a", "an"}

UNITS = {
    "cup", "cups", "tablespoon", "tablespoons", "teaspoon", "teaspoons",
    "pound", "pounds", "ounce", "ounces", "gram", "grams", "kg", "lb", "lbs",
    "oz", "tsp", "tbsp", "g", "ml", "l", "pinch", "clove", "cloves",
}

MODIFIERS = {
    "fresh", "dried", "chopped", "minced", "diced", "sliced", "whole",
    "ground", "large", "small", "medium", "softened", "melted",
}

_NON_WORD = re.compile(r"[^\w\s-]")
_DIGITS = re.compile(r"\d+")
_SLUG = re.compile(r"[a-z0-9]+(?:-[a-z0-9]+)+|[a-z0-9]+")
_URL_NAME_PATTERNS = [
    re.compile(r"/recipes?/(?:\d+/)?([a-z0-9-]+)", re.IGNORECASE),
    re.compile(r"/([a-z0-9-]+)-recipe", re.IGNORECASE),
    re.compile(r"/([a-z0-9-]+)/?$", re.IGNORECASE),
]


def fold_plural(word: str) -> str:
    """Fold a trailing plural: berries -> berry, breads -> bread."""
    if len(word) > 3 and word.endswith("ies"):
        return word[:-3] + "y"
    if len(word) > 2 and word.endswith("s") and not word.endswith("ss"):
        return word[:-1]
    return word


def _clean(text: str) -> list[str]:
    text = _NON_WORD.sub("", text.lower().replace("_", " "))
    return text.split()


def normalize_title(title: str, strip_descriptors: bool = False) -> str:
    """Normalize a recipe title for comparison.

    - Lowercases and strips punctuation
    - Normalizes whitespace
    - Folds a trailing plural on the last word
    - Optionally drops articles, descriptors and the word "recipe"

    Args:
        title: The title to normalize
        strip_descriptors: Remove noise words before comparing

    Returns:
        Normalized title string
    """
    if not title:
        return ""

    words = _clean(title)
    if strip_descriptors:
        words = [
            w for w in words
            if w not in ARTICLES and w not in DESCRIPTORS and w not in ("recipe", "recipes")
        ]
    if words:
        words[-1] = fold_plural(words[-1])
    return " ".join(words)


def normalize_ingredient(name: str) -> str:
    """Normalize an ingredient name: no quantities, units or prep modifiers."""
    if not name:
        return ""
    words = _clean(_DIGITS.sub(" ", name))
    words = [w for w in words if w not in UNITS and w not in MODIFIERS and w != "-"]
    return " ".join(fold_plural(w) for w in words)


def simplify_query(query: str) -> str:
    """Strip articles, descriptors and the word "recipe" so APIs see the core dish name."""
    noise = ARTICLES | DESCRIPTORS | {"recipe", "recipes"}
    words = [w for w in query.lower().split() if w.strip(".,!") not in noise]
    return " ".join(words).strip()


def extract_domain(url: str) -> str:
    """Return the lowercase host of a URL (bare hosts are accepted), without "www."."""
    if not url:
        return ""
    target = url if "://" in url else f"//{url}"
    try:
        host = urlsplit(target).hostname or ""
    except ValueError:
        host = ""
    if not host:
        return url.strip().lower()
    return host[4:] if host.startswith("www.") else host


def url_fingerprint(url: str | None) -> str | None:
    """Host + path of a URL, ignoring scheme, query and fragment."""
    if not url or "://" not in url:
        return None
    try:
        parts = urlsplit(url)
    except ValueError:
        return None
    if not parts.hostname:
        return None
    host = parts.hostname[4:] if parts.hostname.startswith("www.") else parts.hostname
    return f"{host}{parts.path.rstrip('/')}"


def title_from_url(url: str) -> str:
    """Recover a recipe name from a URL slug.

    ``https://site.com/recipes/banana-bread`` -> ``"Banana Bread"``.
    Returns "Unknown Recipe" when nothing usable is found.
    """
    path = urlsplit(url).path if "://" in url else url
    for pattern in _URL_NAME_PATTERNS:
        match = pattern.search(path)
        if match and _SLUG.fullmatch(match.group(1).lower()):
            slug = match.group(1)
            if slug.isdigit():
                continue
            return " ".join(part.capitalize() for part in slug.split("-") if part)
    return "Unknown Recipe"

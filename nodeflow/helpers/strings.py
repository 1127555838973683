"""String utilities for node code (helpers.strings)."""

from __future__ import annotations

import html
import random as _random
import re
from typing import Any

__all__ = [
    "slugify",
    "capitalize",
    "title_case",
    "camel_case",
    "snake_case",
    "kebab_case",
    "truncate",
    "template",
    "strip_html",
    "escape_html",
    "pad",
    "extract_emails",
    "extract_urls",
    "word_count",
    "reverse",
    "normalize_whitespace",
    "contains_ignore_case",
    "replace_all",
    "random",
]

CHARSETS = {
    "alphanumeric": "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789",
    "alpha": "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz",
    "numeric": "0123456789",
    "hex": "0123456789abcdef",
    "base64": "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789+/",
}

_TEMPLATE_KEY = re.compile(r"\{\{(\s*[\w.]+\s*)\}\}")
_EMAIL = re.compile(r"[\w.-]+@[\w.-]+\.\w+")
_URL = re.compile(r"https?://\S+")


def _require_str(value: Any, name: str) -> None:
    if not isinstance(value, str):
        raise TypeError(f"{name}() requires a string argument")


def slugify(text: str) -> str:
    _require_str(text, "slugify")
    text = re.sub(r"[^\w\s-]", "", text.lower().strip())
    text = re.sub(r"[\s_-]+", "-", text)
    return text.strip("-")


def capitalize(text: str) -> str:
    _require_str(text, "capitalize")
    return text[:1].upper() + text[1:].lower()


def title_case(text: str) -> str:
    _require_str(text, "title_case")
    return " ".join(word[:1].upper() + word[1:] for word in text.lower().split(" "))


def camel_case(text: str) -> str:
    _require_str(text, "camel_case")
    return re.sub(r"[^a-zA-Z0-9]+(.)", lambda m: m.group(1).upper(), text.lower())


def snake_case(text: str) -> str:
    _require_str(text, "snake_case")
    text = re.sub(r"([A-Z])", r"_\1", text).lower()
    return re.sub(r"[^a-z0-9]+", "_", text).strip("_")


def kebab_case(text: str) -> str:
    _require_str(text, "kebab_case")
    text = re.sub(r"([A-Z])", r"-\1", text).lower()
    return re.sub(r"[^a-z0-9]+", "-", text).strip("-")


def truncate(text: str, max_length: int, suffix: str = "...") -> str:
    """Shorten text to max_length characters including the suffix."""
    _require_str(text, "truncate")
    if len(text) <= max_length:
        return text
    return text[: max(max_length - len(suffix), 0)] + suffix


def template(text: str, data: dict[str, Any]) -> str:
    """Fill {{key}} / {{a.b}} placeholders; unknown keys are left in place."""
    _require_str(text, "template")

    def lookup(match: re.Match) -> str:
        value: Any = data
        for part in match.group(1).strip().split("."):
            value = value.get(part) if isinstance(value, dict) else None
            if value is None:
                return match.group(0)
        return str(value)

    return _TEMPLATE_KEY.sub(lookup, text)


def strip_html(text: str) -> str:
    _require_str(text, "strip_html")
    return re.sub(r"<[^>]*>", "", text)


def escape_html(text: str) -> str:
    _require_str(text, "escape_html")
    return html.escape(text, quote=True).replace("&#x27;", "&#039;")


def pad(text: str, length: int, char: str = " ", position: str = "end") -> str:
    _require_str(text, "pad")
    missing = max(0, length - len(text))
    if position == "start":
        return char * missing + text
    if position == "end":
        return text + char * missing
    left = missing // 2
    return char * left + text + char * (missing - left)


def extract_emails(text: str) -> list[str]:
    _require_str(text, "extract_emails")
    return _EMAIL.findall(text)


def extract_urls(text: str) -> list[str]:
    _require_str(text, "extract_urls")
    return _URL.findall(text)


def word_count(text: str) -> int:
    _require_str(text, "word_count")
    return len(text.split())


def reverse(text: str) -> str:
    _require_str(text, "reverse")
    return text[::-1]


def normalize_whitespace(text: str) -> str:
    _require_str(text, "normalize_whitespace")
    return " ".join(text.split())


def contains_ignore_case(text: str, search: str) -> bool:
    if not isinstance(text, str) or not isinstance(search, str):
        raise TypeError("contains_ignore_case() requires string arguments")
    return search.lower() in text.lower()


def replace_all(text: str, search: str, replacement: str) -> str:
    _require_str(text, "replace_all")
    return text.replace(search, replacement)


def random(length: int = 10, charset: str = "alphanumeric") -> str:
    """Random string from a named charset or from the given characters."""
    chars = CHARSETS.get(charset, charset)
    return "".join(_random.choice(chars) for _ in range(length))

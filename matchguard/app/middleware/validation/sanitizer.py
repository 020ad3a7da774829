"""Sanitization primitives for free text, emails, URLs and nested payloads."""

import re
from html.parser import HTMLParser
from typing import Any, Callable
from urllib.parse import urlsplit, urlunsplit

from matchguard.app.core.config import settings


class _TextExtractor(HTMLParser):
    """Collects text content, dropping every tag, attribute and comment.

    Character references are re-emitted verbatim rather than decoded, so
    escaped markup never turns into live markup.
    """

    _SKIP_CONTENT = frozenset({"script", "style"})

    def __init__(self) -> None:
        super().__init__(convert_charrefs=False)
        self._parts: list[str] = []
        self._skip_depth = 0

    def handle_starttag(self, tag: str, attrs: list) -> None:
        if tag in self._SKIP_CONTENT:
            self._skip_depth += 1

    def handle_endtag(self, tag: str) -> None:
        if tag in self._SKIP_CONTENT and self._skip_depth:
            self._skip_depth -= 1

    def handle_data(self, data: str) -> None:
        if not self._skip_depth:
            self._parts.append(data)

    def handle_entityref(self, name: str) -> None:
        self.handle_data(f"&{name};")

    def handle_charref(self, name: str) -> None:
        self.handle_data(f"&#{name};")

    def text(self) -> str:
        return "".join(self._parts)


def _strip_markup(value: str) -> str:
    parser = _TextExtractor()
    parser.feed(value)
    parser.close()
    return parser.text()


def _until_stable(step: Callable[[str], str], value: str) -> str:
    # Every step only removes characters, so this terminates.
    while True:
        result = step(value)
        if result == value:
            return result
        value = result


_SQL_PATTERNS = [
    re.compile(
        r"\b(union|select|insert|update|delete|drop|create|alter|exec|execute)\b",
        re.IGNORECASE,
    ),
    re.compile(r"(--|\s*;|\s*/\*|\*/)"),
    re.compile(r"\b(or|and)\s+\d+\s*=\s*\d+", re.IGNORECASE),
]


class InputSanitizer:
    """Sanitization utilities. All methods are pure functions."""

    @staticmethod
    def sanitize_html(value: str) -> str:
        """Remove all HTML markup, keeping only text content."""
        return _until_stable(_strip_markup, value)

    @staticmethod
    def sanitize_email(email: str) -> str:
        return email.lower().strip()

    @staticmethod
    def sanitize_string(value: str, max_length: int = 1000) -> str:
        """Trim, strip markup and cap length.

        Idempotent: sanitizing an already sanitized string returns it unchanged.
        """
        return _until_stable(
            lambda s: _strip_markup(s.strip()).strip()[:max_length], value
        )

    @staticmethod
    def sanitize_url(url: str) -> str:
        """Return a normalized http(s) URL.

        Raises:
            ValueError: If the URL cannot be parsed, or is not HTTPS in production
        """
        try:
            parts = urlsplit(url.strip())
        except ValueError as e:
            raise ValueError("Invalid URL format") from e
        if parts.scheme not in ("http", "https") or not parts.netloc:
            raise ValueError("Invalid URL format")
        if settings.is_production and parts.scheme != "https":
            raise ValueError("Only HTTPS URLs allowed in production")
        return urlunsplit(parts)

    @staticmethod
    def prevent_sql_injection(value: str) -> str:
        """Remove SQL keywords, comment markers and tautologies."""
        cleaned = value
        for pattern in _SQL_PATTERNS:
            cleaned = pattern.sub("", cleaned)
        return cleaned.strip()

    @classmethod
    def sanitize_object(cls, obj: Any) -> Any:
        """Recursively sanitize strings, including object keys."""
        if isinstance(obj, str):
            return cls.sanitize_string(obj)
        if isinstance(obj, list):
            return [cls.sanitize_object(item) for item in obj]
        if isinstance(obj, dict):
            return {
                cls.sanitize_string(str(key), 100): cls.sanitize_object(value)
                for key, value in obj.items()
            }
        return obj

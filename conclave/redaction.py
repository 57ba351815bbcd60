"""Credential scrubbing applied before anything is persisted."""

from __future__ import annotations

import re
from collections.abc import Iterable
from typing import Any

from .config import settings


class Redactor:
    """Replaces sensitive substrings with a fixed marker.

    Works recursively over strings nested in dicts, lists and tuples. A dict
    entry whose key matches one of the key patterns (``password``,
    ``api_key``...) has its whole value replaced; keys themselves are kept.
    """

    def __init__(
        self,
        patterns: Iterable[str] | None = None,
        marker: str | None = None,
        key_patterns: Iterable[str] | None = None,
    ) -> None:
        self.marker = marker if marker is not None else settings.redaction_marker
        self._patterns = [
            re.compile(p) for p in (patterns if patterns is not None else settings.redaction_patterns)
        ]
        self._key_patterns = [
            re.compile(p)
            for p in (key_patterns if key_patterns is not None else settings.redaction_key_patterns)
        ]

    def redact_text(self, text: str) -> tuple[str, bool]:
        changed = False
        for pattern in self._patterns:
            text, count = pattern.subn(self.marker, text)
            changed = changed or count > 0
        return text, changed

    def sensitive_key(self, key: Any) -> bool:
        return isinstance(key, str) and any(p.search(key) for p in self._key_patterns)

    def redact(self, value: Any) -> tuple[Any, bool]:
        """Return a scrubbed copy of ``value`` and whether anything was replaced."""
        if isinstance(value, str):
            return self.redact_text(value)
        if isinstance(value, dict):
            changed = False
            out: dict[Any, Any] = {}
            for key, item in value.items():
                if item not in (None, self.marker) and self.sensitive_key(key):
                    out[key], hit = self.marker, True
                else:
                    out[key], hit = self.redact(item)
                changed = changed or hit
            return out, changed
        if isinstance(value, (list, tuple)):
            changed = False
            items = []
            for item in value:
                clean, hit = self.redact(item)
                items.append(clean)
                changed = changed or hit
            return (type(value)(items) if isinstance(value, tuple) else items), changed
        return value, False

    def contains_sensitive(self, value: Any) -> bool:
        return self.redact(value)[1]

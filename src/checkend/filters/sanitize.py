"""Scrub sensitive keys and oversized values from data before it leaves the process."""

import re
from collections.abc import Iterable, Mapping
from datetime import date, datetime
from typing import Any

FILTERED = "[FILTERED]"
BINARY = "[Binary]"
TRUNCATION_MARKER = "...[TRUNCATED]"
DEFAULT_TRUNCATE_LIMIT = 10_000
DEFAULT_MAX_DEPTH = 10

# Matches nothing, including the empty string
_NEVER_MATCH = re.compile(r"(?!)")


def build_filter_pattern(keys: Iterable[str]) -> re.Pattern:
    """Compile filter keys into one case-insensitive alternation.

    An empty key list yields a pattern that never matches.
    """
    escaped = [re.escape(k.lower()) for k in keys if k]
    if not escaped:
        return _NEVER_MATCH
    return re.compile("|".join(escaped), re.IGNORECASE)


class SanitizeFilter:
    """Return scrubbed deep copies of arbitrary structured data.

    * mapping keys matching a filter key (substring, case-insensitive) are
      replaced by ``[FILTERED]`` whatever their value;
    * strings longer than ``truncate_limit`` are cut so the result is exactly
      ``truncate_limit`` characters ending in ``...[TRUNCATED]``;
    * anything nested deeper than ``max_depth`` collapses to ``[FILTERED]``;
    * binary values become ``[Binary]``;
    * sequences are processed element-wise, with no key filtering.

    Values with no JSON form (arbitrary objects) are replaced by their
    ``str()`` so the result can always be serialized.
    """

    def __init__(
        self,
        filter_keys: Iterable[str],
        max_depth: int = DEFAULT_MAX_DEPTH,
        truncate_limit: int = DEFAULT_TRUNCATE_LIMIT,
    ):
        if truncate_limit < len(TRUNCATION_MARKER):
            raise ValueError(f"truncate_limit must be at least {len(TRUNCATION_MARKER)}, got {truncate_limit}")
        self.pattern = build_filter_pattern(filter_keys)
        self.max_depth = max_depth
        self.truncate_limit = truncate_limit

    def sanitize(self, data: Any) -> Any:
        return self._process(data, 0)

    def should_filter(self, key: Any) -> bool:
        if key is None or key == "":
            return False
        return self.pattern.search(str(key).lower()) is not None

    def _process(self, value: Any, depth: int) -> Any:
        if depth > self.max_depth:
            return FILTERED

        if value is None or isinstance(value, (bool, int, float)):
            return value

        if isinstance(value, str):
            return self._truncate(value)

        if isinstance(value, (bytes, bytearray, memoryview)):
            return BINARY

        if isinstance(value, Mapping):
            return self._process_mapping(value, depth)

        if isinstance(value, (list, tuple, set, frozenset)):
            return [self._process(item, depth + 1) for item in value]

        if isinstance(value, (datetime, date)):
            return value.isoformat()

        return self._truncate(str(value))

    def _process_mapping(self, mapping: Mapping, depth: int) -> dict[str, Any]:
        result: dict[str, Any] = {}
        for key, item in mapping.items():
            name = key if isinstance(key, str) else str(key)
            if self.should_filter(name):
                result[name] = FILTERED
            else:
                result[name] = self._process(item, depth + 1)
        return result

    def _truncate(self, text: str) -> str:
        if len(text) <= self.truncate_limit:
            return text
        return text[: self.truncate_limit - len(TRUNCATION_MARKER)] + TRUNCATION_MARKER

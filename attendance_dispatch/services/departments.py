from __future__ import annotations

import re
from collections.abc import Iterable, Sequence
from pathlib import Path

from ..config.loader import load_department_synonyms

"""Department name matching for HOD routing.

Division cells in the attendance export and HOD department names in the
recipient configuration are typed by different people, so both sides are
normalized before comparison:

1. lowercase, trim
2. separators ``& / - _`` and whitespace runs -> one space
3. the standalone word "and" is dropped
4. synonym lookup (equivalence classes from department_synonyms.yml)
"""

__all__ = [
    "DepartmentMatcher",
    "normalize_department",
]

_SEPARATORS = re.compile(r"[&/\-_\s]+")


def _basic_normalize(name: str | None) -> str:
    text = _SEPARATORS.sub(" ", (name or "").strip().lower())
    return " ".join(w for w in text.split() if w != "and")


class DepartmentMatcher:
    """Normalizes department names through a synonym table."""

    def __init__(self, equivalence_classes: Iterable[Sequence[str]] = ()) -> None:
        self._canonical: dict[str, str] = {}
        for cls in equivalence_classes:
            if not cls:
                continue
            canonical = _basic_normalize(cls[0])
            for member in cls:
                self._canonical[_basic_normalize(member)] = canonical

    @classmethod
    def from_file(cls, path: Path | None = None) -> DepartmentMatcher:
        return cls(load_department_synonyms(path))

    def normalize(self, name: str | None) -> str:
        base = _basic_normalize(name)
        return self._canonical.get(base, base)

    def matches(self, division: str | None, department: str | None) -> bool:
        left = self.normalize(division)
        return bool(left) and left == self.normalize(department)


def normalize_department(name: str | None) -> str:
    """Normalization without synonyms (steps 1-3 only)."""
    return _basic_normalize(name)

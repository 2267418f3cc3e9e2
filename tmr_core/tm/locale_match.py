from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any

WILDCARD_LOCALE = "*"


class LocaleMatchKind(str, Enum):
    EXACT = "exact"
    PREFIX = "prefix"
    ANY = "any"


def normalize_locale(tag: str) -> str:
    return tag.strip().lower()


def _is_dash_prefix(shorter: str, longer: str) -> bool:
    return len(longer) > len(shorter) and longer.startswith(f"{shorter}-")


@dataclass(slots=True, frozen=True)
class LocaleFilter:
    """Locale constraint for TM lookups: ``Exact(tag) | Prefix(tag) | Any``."""

    kind: LocaleMatchKind
    tag: str = ""

    @classmethod
    def exact(cls, tag: str) -> LocaleFilter:
        normalized = normalize_locale(tag)
        if not normalized or normalized == WILDCARD_LOCALE:
            raise ValueError("Exact locale filter requires a concrete locale tag")
        return cls(LocaleMatchKind.EXACT, normalized)

    @classmethod
    def prefix(cls, tag: str) -> LocaleFilter:
        normalized = normalize_locale(tag)
        if not normalized or normalized == WILDCARD_LOCALE:
            raise ValueError("Prefix locale filter requires a concrete locale tag")
        return cls(LocaleMatchKind.PREFIX, normalized)

    @classmethod
    def any(cls) -> LocaleFilter:
        return cls(LocaleMatchKind.ANY)

    @classmethod
    def parse(cls, raw: str | None) -> LocaleFilter:
        """Request-level policy: blank or ``*`` means any, otherwise prefix."""

        if raw is None:
            return cls.any()
        normalized = normalize_locale(raw)
        if not normalized or normalized == WILDCARD_LOCALE:
            return cls.any()
        return cls(LocaleMatchKind.PREFIX, normalized)

    @property
    def is_concrete(self) -> bool:
        return self.kind is not LocaleMatchKind.ANY

    def cache_token(self) -> str:
        if self.kind is LocaleMatchKind.ANY:
            return WILDCARD_LOCALE
        return f"{self.kind.value}:{self.tag}"

    def matches(self, stored_locale: str | None) -> bool:
        if self.kind is LocaleMatchKind.ANY:
            return True
        if stored_locale is None:
            return False
        stored = normalize_locale(stored_locale)
        if stored == self.tag:
            return True
        if self.kind is LocaleMatchKind.EXACT:
            return False
        return _is_dash_prefix(self.tag, stored) or _is_dash_prefix(stored, self.tag)

    def sql_clause(self, column: str, param: str) -> tuple[str, dict[str, Any]]:
        """Render the same policy as a SQLite predicate over ``column``.

        Prefix checks use ``substr`` rather than ``LIKE`` so ``_`` in tags such
        as ``en_US`` stays literal.
        """

        if self.kind is LocaleMatchKind.ANY:
            return "1 = 1", {}

        lowered = f"LOWER({column})"
        if self.kind is LocaleMatchKind.EXACT:
            return f"{lowered} = :{param}", {param: self.tag}

        clause = (
            f"({lowered} = :{param}"
            f" OR substr({lowered}, 1, length(:{param}) + 1) = :{param} || '-'"
            f" OR substr(:{param}, 1, length({lowered}) + 1) = {lowered} || '-')"
        )
        return clause, {param: self.tag}


def should_widen_locales(
    *,
    candidate_count: int,
    source_locale: LocaleFilter,
    target_locale: LocaleFilter,
    already_widened: bool,
) -> bool:
    """True when a zero-candidate lookup may be retried across all locales."""

    if already_widened or candidate_count > 0:
        return False
    return source_locale.is_concrete and target_locale.is_concrete

"""Duplicate detection for imported bank transactions.

A fetched transaction duplicates a stored one when:

1. both carry an aggregator transaction id and the ids are equal, or
2. at least one side has no id, and the amounts are equal, the booking
   dates are within the tolerance window, and the descriptions match
   after normalisation.

Two transactions with *different* aggregator ids are never duplicates,
even when amount, date and text agree: the bank has told us they are
distinct movements.
"""

import re
from dataclasses import dataclass
from datetime import date, timedelta
from decimal import Decimal
from typing import Iterable

from config import settings

_WHITESPACE = re.compile(r"\s+")


def normalize_description(text: str | None) -> str:
    return _WHITESPACE.sub(" ", (text or "").strip()).casefold()


@dataclass(frozen=True)
class TransactionFingerprint:
    """The fields duplicate detection looks at."""

    external_id: str | None
    booking_date: date
    amount: Decimal
    description: str
    transaction_id: str | None = None  # Local row id, when already stored


@dataclass(frozen=True)
class DuplicateMatch:
    existing: TransactionFingerprint
    exact: bool  # Same aggregator id, as opposed to a content match


class DuplicateDetector:
    """Matches candidates against stored transactions of one account."""

    def __init__(self, date_tolerance_days: int | None = None):
        days = (
            settings.DUPLICATE_DATE_TOLERANCE_DAYS
            if date_tolerance_days is None
            else date_tolerance_days
        )
        self._tolerance = timedelta(days=days)
        self._by_external_id: dict[str, TransactionFingerprint] = {}
        self._by_amount: dict[Decimal, list[TransactionFingerprint]] = {}

    def add(self, fingerprint: TransactionFingerprint) -> None:
        """Add a stored (or just-inserted) transaction to the match set."""
        if fingerprint.external_id:
            self._by_external_id.setdefault(fingerprint.external_id, fingerprint)
        self._by_amount.setdefault(fingerprint.amount, []).append(fingerprint)

    def extend(self, fingerprints: Iterable[TransactionFingerprint]) -> None:
        for fingerprint in fingerprints:
            self.add(fingerprint)

    def is_match(self, candidate: TransactionFingerprint, existing: TransactionFingerprint) -> bool:
        if candidate.external_id and existing.external_id:
            return candidate.external_id == existing.external_id
        return (
            candidate.amount == existing.amount
            and abs(candidate.booking_date - existing.booking_date) <= self._tolerance
            and normalize_description(candidate.description)
            == normalize_description(existing.description)
        )

    def find_duplicate(self, candidate: TransactionFingerprint) -> DuplicateMatch | None:
        """The stored transaction ``candidate`` duplicates, if any."""
        if candidate.external_id and candidate.external_id in self._by_external_id:
            return DuplicateMatch(self._by_external_id[candidate.external_id], exact=True)
        for existing in self._by_amount.get(candidate.amount, []):
            if self.is_match(candidate, existing):
                return DuplicateMatch(existing, exact=False)
        return None

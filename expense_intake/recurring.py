"""Collapse recurring-payment candidates gathered from several sheets."""

from __future__ import annotations

import logging
from typing import Iterable

from expense_intake.models import RecurringCandidate

logger = logging.getLogger(__name__)


def candidate_key(name: str) -> str:
    return name.strip().lower()


def dedupe_candidates(candidates: Iterable[RecurringCandidate]) -> list[RecurringCandidate]:
    """Keep the first candidate per name (trimmed, case-insensitive), in encounter order."""
    unique: list[RecurringCandidate] = []
    seen: set[str] = set()
    for candidate in candidates:
        key = candidate_key(candidate.name)
        if key in seen:
            continue
        seen.add(key)
        unique.append(candidate)
    if unique:
        logger.info("Found %d unique recurring candidates", len(unique))
    return unique

"""
Rule-based classification of raw bank notifications.

A notification is matched against the user's patterns for one bank account
and channel, then the best pattern's regexes pull structured fields out of
the text. Everything here is pure: callers load patterns and persist
results.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Iterable, Mapping, Optional, Protocol, Sequence

from errors import ErrorCode, ValidationError

# Confidence reported for a pattern that defines no extraction regex at all.
# It is a policy value, not a measurement: with the default threshold of 0.8
# such a pattern can never auto-approve.
NEUTRAL_CONFIDENCE = 0.5

EXTRACTION_FIELDS = ("amount", "date", "description", "merchant")


class PatternLike(Protocol):
    id: int
    priority: int
    keywords_trigger: list[str]
    keywords_exclude: list[str]
    amount_regex: Optional[str]
    date_regex: Optional[str]
    description_regex: Optional[str]
    merchant_regex: Optional[str]
    requires_validation: bool
    confidence_threshold: float
    auto_approve: bool


@dataclass(frozen=True)
class Extraction:
    fields: dict[str, str] = field(default_factory=dict)
    attempts: int = 0
    successes: int = 0


@dataclass(frozen=True)
class Score:
    confidence: float
    auto_approve: bool
    requires_validation: bool


@lru_cache(maxsize=512)
def _compile(expression: str) -> re.Pattern[str]:
    return re.compile(expression)


def normalize_keywords(keywords: Iterable[str]) -> list[str]:
    seen: set[str] = set()
    cleaned: list[str] = []
    for keyword in keywords:
        value = str(keyword).strip()
        if not value or value.lower() in seen:
            continue
        seen.add(value.lower())
        cleaned.append(value)
    return cleaned


def validate_regexes(regexes: Mapping[str, Optional[str]]) -> None:
    for name, expression in regexes.items():
        if not expression:
            continue
        try:
            _compile(expression)
        except re.error as exc:
            raise ValidationError(
                ErrorCode.invalid_regex, f"Invalid {name} regex: {exc}"
            ) from exc


def _any_keyword_in(keywords: Sequence[str], message_lower: str) -> bool:
    return any(k.strip() and k.strip().lower() in message_lower for k in keywords)


def is_candidate(pattern: PatternLike, message: str) -> bool:
    message_lower = message.lower()
    triggers = [k for k in (pattern.keywords_trigger or []) if k.strip()]
    has_match = not triggers or _any_keyword_in(triggers, message_lower)
    has_exclusion = _any_keyword_in(pattern.keywords_exclude or [], message_lower)
    return has_match and not has_exclusion


def select_candidates(
    patterns: Iterable[PatternLike], message: str
) -> list[PatternLike]:
    """Patterns that accept ``message``, highest priority (lowest number) first."""
    if not message or not message.strip():
        return []
    ordered = sorted(patterns, key=lambda p: (p.priority, p.id))
    return [p for p in ordered if is_candidate(p, message)]


def extract_fields(pattern: PatternLike, message: str) -> Extraction:
    fields: dict[str, str] = {}
    attempts = 0
    successes = 0
    for name in EXTRACTION_FIELDS:
        expression = getattr(pattern, f"{name}_regex")
        if not expression:
            continue
        attempts += 1
        try:
            compiled = _compile(expression)
        except re.error:
            # stored before validation existed; counts as a miss
            continue
        match = compiled.search(message)
        if match is None or compiled.groups < 1:
            continue
        fields[name] = (match.group(1) or "").strip()
        successes += 1
    return Extraction(fields=fields, attempts=attempts, successes=successes)


def score_extraction(pattern: PatternLike, extraction: Extraction) -> Score:
    if extraction.attempts:
        confidence = extraction.successes / extraction.attempts
    else:
        confidence = NEUTRAL_CONFIDENCE
    threshold = pattern.confidence_threshold
    auto_approve = bool(pattern.auto_approve) and confidence >= threshold
    # an auto-approved candidate never waits for review, even when the
    # pattern also asks for validation
    requires_validation = not auto_approve and (
        bool(pattern.requires_validation) or confidence < threshold
    )
    return Score(
        confidence=confidence,
        auto_approve=auto_approve,
        requires_validation=requires_validation,
    )


def has_extractors(pattern: PatternLike) -> bool:
    return any(getattr(pattern, f"{name}_regex") for name in EXTRACTION_FIELDS)

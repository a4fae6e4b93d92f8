"""Deterministic error text classification for mutation records and guidance."""

from __future__ import annotations

from dataclasses import dataclass

from wo_runner.runner.models import ErrorClass

ERROR_CLASSIFIER_VERSION = 1

# Checked in order; the first matching rule wins.
_RULES: tuple[tuple[ErrorClass, tuple[str, ...]], ...] = (
    (ErrorClass.SQL_SYNTAX, ("syntax error", "sql syntax")),
    (ErrorClass.RLS_VIOLATION, ("row-level security", "rls")),
    (ErrorClass.SCHEMA_MISMATCH, ("does not exist", "column", "relation")),
    (ErrorClass.ENCODING_ERROR, ("utf", "encoding", "bytea")),
    (
        ErrorClass.MATCH_FAILED,
        ("match not unique", "no matching", "not found in file", "old_string"),
    ),
    (ErrorClass.API_ERROR, ("api error", "404", "422")),
    (ErrorClass.TIMEOUT, ("timeout", "timed out", "deadline")),
    (ErrorClass.ENFORCEMENT_BLOCKED, ("bypass", "enforcement", "blocked")),
    (ErrorClass.PERMISSION_DENIED, ("permission denied", "forbidden", "not allowed")),
)


@dataclass(slots=True)
class ErrorClassification:
    """Classified error with the pattern that decided it."""

    error_class: ErrorClass
    matched_pattern: str | None

    def to_event_details(self) -> dict[str, object]:
        return {
            "classifier_version": ERROR_CLASSIFIER_VERSION,
            "error_class": self.error_class.value,
            "matched_pattern": self.matched_pattern,
        }


def classify_error(error_text: str | None) -> ErrorClassification:
    """Map free-form error text to a normalized error class."""

    if not error_text:
        return ErrorClassification(error_class=ErrorClass.UNKNOWN, matched_pattern=None)

    haystack = error_text.lower()
    for error_class, patterns in _RULES:
        pattern = _first_match(haystack, patterns)
        if pattern is not None:
            return ErrorClassification(error_class=error_class, matched_pattern=pattern)
    return ErrorClassification(error_class=ErrorClass.UNKNOWN, matched_pattern=None)


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None

from __future__ import annotations

import allure
import pytest

from wo_runner.runner.error_classifier import ERROR_CLASSIFIER_VERSION, classify_error
from wo_runner.runner.models import ErrorClass

pytestmark = [
    allure.epic("Turn Loop"),
    allure.feature("Error Classification"),
]


def test_classifier_version_is_stable() -> None:
    assert ERROR_CLASSIFIER_VERSION == 1


@pytest.mark.parametrize(
    ("text", "expected", "pattern"),
    [
        ("ERROR: syntax error at or near SELECT", ErrorClass.SQL_SYNTAX, "syntax error"),
        ('relation "orders" does not exist', ErrorClass.SCHEMA_MISMATCH, "does not exist"),
        (
            "No matching text: old_string not found in file hello.txt",
            ErrorClass.MATCH_FAILED,
            "no matching",
        ),
        (
            "Permission denied: role 'reviewer' cannot use 'workspace_write_file'",
            ErrorClass.PERMISSION_DENIED,
            "permission denied",
        ),
        ("Request timed out after 30s", ErrorClass.TIMEOUT, "timed out"),
        ("Direct write was blocked by enforcement", ErrorClass.ENFORCEMENT_BLOCKED, "enforcement"),
    ],
)
def test_classifier_maps_known_patterns(text: str, expected: ErrorClass, pattern: str) -> None:
    classified = classify_error(text)

    assert classified.error_class == expected
    assert classified.matched_pattern == pattern


def test_classifier_first_rule_wins() -> None:
    classified = classify_error("syntax error: column name does not exist")

    assert classified.error_class == ErrorClass.SQL_SYNTAX


@pytest.mark.parametrize("text", [None, "", "something odd happened"])
def test_classifier_falls_back_to_unknown(text: str | None) -> None:
    classified = classify_error(text)

    assert classified.error_class == ErrorClass.UNKNOWN
    assert classified.matched_pattern is None
    assert classified.to_event_details() == {
        "classifier_version": 1,
        "error_class": "unknown",
        "matched_pattern": None,
    }

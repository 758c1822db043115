"""Unit tests for identifier and predicate helpers."""

import pytest

from utils import is_valid_identifier, qualified_name, safe_identifier, validate_filter_predicate


def test_safe_identifier_quotes() -> None:
    """Test identifiers are double-quoted."""
    assert safe_identifier("events") == '"events"'
    assert safe_identifier("public.events") == '"public"."events"'


@pytest.mark.parametrize("name", ["", "1events", "events;drop", 'ev"ents', "my table"])
def test_safe_identifier_rejects_invalid(name: str) -> None:
    """Test invalid identifiers are rejected."""
    with pytest.raises(ValueError, match="Invalid SQL identifier"):
        safe_identifier(name)


def test_is_valid_identifier() -> None:
    assert is_valid_identifier("_events_2024")
    assert not is_valid_identifier("events.archive")


def test_qualified_name() -> None:
    assert qualified_name("archive", "events") == '"archive"."events"'


def test_validate_filter_predicate_strips() -> None:
    """Test valid predicates are returned stripped."""
    assert validate_filter_predicate("  < now() - interval '1 day' ") == "< now() - interval '1 day'"


@pytest.mark.parametrize("predicate", ["", "   ", "< 5; DROP TABLE x", "< 5 -- x", "< 5 /* x */"])
def test_validate_filter_predicate_rejects(predicate: str) -> None:
    """Test empty predicates and forbidden tokens."""
    with pytest.raises(ValueError):
        validate_filter_predicate(predicate)

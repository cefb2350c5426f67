import pytest

from rdmd.errors import ValidationError
from rdmd.util import normalize_identity, normalize_username, validate_content


def test_identity_is_stripped() -> None:
    assert normalize_identity("  abc123  ") == "abc123"


@pytest.mark.parametrize("value", [None, "", "   ", 42, "a\nb", "nul\x00"])
def test_identity_rejects_unusable_values(value) -> None:
    with pytest.raises(ValidationError):
        normalize_identity(value)


def test_identity_length_limit() -> None:
    assert normalize_identity("x" * 64) == "x" * 64
    with pytest.raises(ValidationError, match="identity too long"):
        normalize_identity("x" * 65)
    assert normalize_identity("x" * 100, max_chars=0) == "x" * 100


def test_username_length_limit() -> None:
    with pytest.raises(ValidationError, match="username too long"):
        normalize_username("u" * 33)


def test_content_limit_counts_utf8_bytes() -> None:
    assert validate_content("é" * 5, max_bytes=10) == "é" * 5
    with pytest.raises(ValidationError, match="message too long: 12 > 10 bytes"):
        validate_content("é" * 6, max_bytes=10)


def test_content_keeps_surrounding_whitespace() -> None:
    assert validate_content("  hi  ", max_bytes=280) == "  hi  "


def test_content_must_be_non_blank_text() -> None:
    with pytest.raises(ValidationError, match="content must be a string"):
        validate_content(b"hi", max_bytes=280)
    with pytest.raises(ValidationError, match="content must not be empty"):
        validate_content(" \n ", max_bytes=280)


def test_validation_error_is_a_value_error() -> None:
    with pytest.raises(ValueError):
        normalize_identity("")

"""Sanitizer and constant-time token comparison."""
import pytest

from freeme.service.sanitizer import MAX_SANITIZED_LENGTH, sanitize
from freeme.service.tokens import constant_time_equals, generate_csrf_token


class TestSanitize:
    def test_strips_angle_brackets_and_handlers(self):
        cleaned = sanitize('<img src=x onerror=alert(1)>Lunch')
        assert "<" not in cleaned
        assert ">" not in cleaned
        assert "onerror=" not in cleaned.lower()
        assert cleaned.endswith("Lunch")

    @pytest.mark.parametrize(
        "value",
        [
            "javascript:alert(1)",
            "JaVaScRiPt:alert(1)",
            "vbscript:msgbox",
            "data:text/html;base64,xx",
            "javajavascript:script:alert(1)",
            "javaonclick=script:alert(1)",
        ],
    )
    def test_removes_dangerous_schemes(self, value):
        cleaned = sanitize(value).lower()
        for scheme in ("javascript:", "vbscript:", "data:"):
            assert scheme not in cleaned

    def test_non_string_yields_empty(self):
        assert sanitize(None) == ""
        assert sanitize(42) == ""
        assert sanitize({"title": "x"}) == ""

    def test_trims_and_caps_length(self):
        cleaned = sanitize("  " + "a" * (MAX_SANITIZED_LENGTH + 500) + "  ")
        assert len(cleaned) == MAX_SANITIZED_LENGTH
        assert not cleaned.startswith(" ")

    def test_plain_text_is_untouched(self):
        assert sanitize("Team standup in room 4") == "Team standup in room 4"


class TestConstantTimeEquals:
    def test_equal_tokens(self):
        token = generate_csrf_token()
        assert len(token) == 64
        assert constant_time_equals(token, token) is True

    def test_single_character_difference(self):
        token = "a" * 64
        other = "a" * 63 + "b"
        assert constant_time_equals(token, other) is False

    def test_wrong_length_rejected(self):
        assert constant_time_equals("a" * 63, "a" * 63) is False
        assert constant_time_equals("a" * 64, "a" * 65) is False

    def test_non_strings_rejected(self):
        token = "a" * 64
        assert constant_time_equals(None, token) is False
        assert constant_time_equals(token, None) is False
        assert constant_time_equals(123, token) is False

    def test_generated_tokens_differ(self):
        assert generate_csrf_token() != generate_csrf_token()

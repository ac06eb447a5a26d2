"""Tests for chat message and display name sanitization."""

import pytest

from sanitize import escape_html, sanitize_display_name, sanitize_message


class TestSanitizeMessage:
    def test_escapes_html_sensitive_characters(self):
        assert sanitize_message("<b>\"hi\" & 'bye'</b>`") == (
            "&lt;b&gt;&quot;hi&quot; &amp; &#39;bye&#39;&lt;&#x2F;b&gt;&#96;"
        )

    def test_normalizes_line_endings(self):
        assert sanitize_message("a\r\nb\rc\nd") == "a\nb\nc\nd"

    def test_trims_outer_whitespace(self):
        assert sanitize_message("  \n hello \t ") == "hello"

    def test_strips_control_characters_but_keeps_newline_and_tab(self):
        assert sanitize_message("a\x00b\x07c\x1bd\x7fe\tf\ng") == "abcde\tf\ng"

    def test_truncates_before_escaping(self):
        result = sanitize_message("<" * 600, max_length=500)
        assert result == "&lt;" * 500

    def test_default_length_cap(self):
        assert len(sanitize_message("x" * 1000)) == 500

    @pytest.mark.parametrize("value", [None, 42, ["a"], {"text": "hi"}, b"bytes"])
    def test_non_text_input_yields_empty_string(self, value):
        assert sanitize_message(value) == ""

    @pytest.mark.parametrize(
        "value",
        [
            "plain",
            "<script>alert('x')</script>",
            "&amp; already escaped &lt;",
            "fish & chips",
            " \x01 padded control ",
            "a" * 499 + "<<<",
            "word " * 120,
            "tab\tand\r\nnewline",
            "&",
            "&#x2F;&#96;",
        ],
    )
    def test_idempotent(self, value):
        once = sanitize_message(value)
        assert sanitize_message(once) == once

    def test_idempotent_with_small_cap(self):
        once = sanitize_message("<<<<<<<<<<", max_length=4)
        assert once == "&lt;&lt;&lt;&lt;"
        assert sanitize_message(once, max_length=4) == once


class TestSanitizeDisplayName:
    def test_collapses_newlines_to_spaces(self):
        assert sanitize_display_name("Ada\nLovelace") == "Ada Lovelace"

    def test_shorter_cap(self):
        assert sanitize_display_name("n" * 100) == "n" * 32

    def test_escapes(self):
        assert sanitize_display_name("<Eve>") == "&lt;Eve&gt;"

    def test_non_text(self):
        assert sanitize_display_name(None) == ""

    def test_idempotent(self):
        once = sanitize_display_name(" Mallory </script>\r\n ")
        assert sanitize_display_name(once) == once


def test_escape_html_leaves_known_entities_alone():
    assert escape_html("&lt; & &bogus;") == "&lt; &amp; &amp;bogus;"

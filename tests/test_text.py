"""Tests for shared text helpers."""
import pytest

from utils.text import (
    collapse_ws, contains_phrase, count_hits, fill_placeholders,
    normalize, remove_phrases, split_sentences,
)


class TestPhraseMatching:
    @pytest.mark.parametrize("text,phrase,expected", [
        ("No, that's wrong", "no", True),
        ("It is not mine", "no", False),
        ("YES please", "yes", True),
        ("मेरा नाम आशा है", "ना", False),
        ("ना, गलत है", "ना", True),
        ("anything", "", False),
    ])
    def test_token_bounded(self, text, phrase, expected):
        assert contains_phrase(text, phrase) is expected

    def test_count_hits(self):
        assert count_hits("I want to buy, what is the price", ["buy", "price", "demo"]) == 2

    def test_remove_phrases_longest_first(self):
        assert remove_phrases("Please speak in Hindi now", ["speak in hindi", "hindi", "please"]) == "now"


class TestPlaceholders:
    def test_fill(self):
        assert fill_placeholders("Hi {{ name }}, call {{phone}}.",
                                 {"name": "Asha", "phone": "9876543210"}) == "Hi Asha, call 9876543210."

    def test_missing_and_empty_left_visible(self):
        assert fill_placeholders("{{name}} / {{city}}", {"name": ""}) == "{{name}} / {{city}}"


class TestWhitespaceAndSentences:
    def test_normalize(self):
        assert normalize("  Hello   THERE ") == "hello there"

    def test_collapse_keeps_case(self):
        assert collapse_ws(" A \n b ") == "A b"

    def test_split_sentences(self):
        assert split_sentences("Thanks. What is your name? ठीक है।  Bye!") == [
            "Thanks.", "What is your name?", "ठीक है।", "Bye!",
        ]

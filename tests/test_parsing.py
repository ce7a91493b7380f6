"""Tests for input capture parsing."""
import pytest

from models.schemas import ExpectedType
from utils.parsing import parse_capture


class TestYesNo:
    def test_affirmative(self):
        assert parse_capture(ExpectedType.YES_NO, "pode") == (True, True)

    def test_negative(self):
        assert parse_capture(ExpectedType.YES_NO, "não") == (False, True)

    def test_unrecognized_keeps_raw_text(self):
        assert parse_capture(ExpectedType.YES_NO, "quem sabe") == ("quem sabe", False)

    def test_negative_checked_first(self):
        assert parse_capture(ExpectedType.YES_NO, "não pode") == (False, True)

    def test_whole_words_only(self):
        # "sinto" contains "s" but is not the token "s"
        assert parse_capture(ExpectedType.YES_NO, "sinto muito")[1] is False


class TestNumber:
    def test_digits_extracted(self):
        assert parse_capture(ExpectedType.NUMBER, "tenho 3 filhos") == (3, True)

    def test_no_digits(self):
        assert parse_capture(ExpectedType.NUMBER, "três") == ("três", False)


class TestCurrency:
    @pytest.mark.parametrize("text,expected", [
        ("500 mil", 500_000),
        ("R$ 1.200.000", 1_200_000),
        ("2 milhões", 2_000_000),
        ("1,5 milhão", 1_500_000),
        ("R$ 350.000,00", 350_000),
        ("800", 800),
    ])
    def test_values(self, text, expected):
        value, valid = parse_capture(ExpectedType.CURRENCY, text)
        assert valid
        assert value == pytest.approx(expected)

    def test_unparseable(self):
        assert parse_capture(ExpectedType.CURRENCY, "não sei") == ("não sei", False)


class TestOtherTypes:
    def test_email(self):
        assert parse_capture(ExpectedType.EMAIL, "é maria@example.com ok") == ("maria@example.com", True)

    def test_email_missing(self):
        assert parse_capture(ExpectedType.EMAIL, "não tenho") == ("não tenho", False)

    def test_phone_digits_only(self):
        assert parse_capture(ExpectedType.PHONE, "+55 (11) 99999-0001") == ("5511999990001", True)

    def test_phone_without_digits_keeps_raw_text(self):
        assert parse_capture(ExpectedType.PHONE, "não sei") == ("não sei", False)

    def test_text_is_stripped(self):
        assert parse_capture(ExpectedType.TEXT, "  Centro  ") == ("Centro", True)

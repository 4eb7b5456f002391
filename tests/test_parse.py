import pytest

from qrsplit.utils.parse import dump_assignees, normalize_amount, normalize_wallet, parse_assignees


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("2.000", 2000.0),
        ("2.000,50", 2000.5),
        ("10,99", 10.99),
        ("500", 500.0),
        ("1.234.567", 1234567.0),
        ("1.500.000,75", 1500000.75),
        ("12.50", 12.5),
        ("1.5", 15.0),
        ("  7,5 ", 7.5),
        (42, 42.0),
        (12.5, 12.5),
    ],
)
def test_normalize_amount(raw, expected):
    assert normalize_amount(raw) == expected


@pytest.mark.parametrize("raw", [None, "", "abc", "12abc", float("nan"), "nan", "inf"])
def test_normalize_amount_falls_back_to_zero(raw):
    assert normalize_amount(raw) == 0.0


def test_normalize_amount_canonical_form_is_stable():
    for raw in ["1234.56", "0.99", "10.50", "99999.01"]:
        value = normalize_amount(raw)
        assert normalize_amount(f"{value:.2f}") == value


def test_normalize_wallet():
    assert normalize_wallet("  0xABCdef ") == "0xabcdef"
    assert normalize_wallet("   ") is None
    assert normalize_wallet(None) is None


def test_parse_assignees_accepts_lists_and_json():
    assert parse_assignees(["a", "b", None]) == frozenset({"a", "b"})
    assert parse_assignees('["a", "b"]') == frozenset({"a", "b"})
    assert parse_assignees(None) == frozenset()


def test_parse_assignees_malformed():
    assert parse_assignees("not json") == frozenset()
    assert parse_assignees('{"a": 1}') == frozenset()


def test_dump_assignees_is_sorted():
    assert dump_assignees({"b", "a"}) == '["a", "b"]'
    assert parse_assignees(dump_assignees(frozenset())) == frozenset()


@pytest.mark.parametrize("raw", ["1_000", "٣٤", "1e3", "0x10", "--5"])
def test_normalize_amount_rejects_non_decimal_numerals(raw):
    assert normalize_amount(raw) == 0.0


def test_normalize_amount_keeps_sign():
    assert normalize_amount("-5") == -5.0
    assert normalize_amount("-2.000,50") == -2000.5

import re

import pytest

from zfs_stats.zfs_stats_engine import (
    U64_MAX,
    InvalidNumber,
    ParseError,
    UnknownSuffix,
    format_bytes,
    parse_size,
)


@pytest.mark.parametrize("text", ["-", "", "0B"])
def test_parse_size_zero_forms(text):
    assert parse_size(text) == 0


@pytest.mark.parametrize(
    "text,expected",
    [
        ("1K", 1024),
        ("1M", 1048576),
        ("1G", 1073741824),
        ("1T", 1024**4),
        ("1P", 1024**5),
        ("1E", 1024**6),
        ("512B", 512),
        ("512.0B", 512),
        ("1.5B", 1),
        ("123", 123),
        ("1.5G", int(1.5 * 1024**3)),
        ("  2K  ", 2048),
        ("96K", 98304),
    ],
)
def test_parse_size_values(text, expected):
    assert parse_size(text) == expected


def test_parse_size_truncates_fractional_bytes():
    # 1.01K = 1034.24 bytes
    assert parse_size("1.01K") == 1034


def test_parse_size_saturates_out_of_range():
    assert parse_size("-1K") == 0
    assert parse_size("20E") == U64_MAX


@pytest.mark.parametrize("text", ["abc", "abcB", "1.5KB", "   ", "1 K", "1_000"])
def test_parse_size_invalid_number(text):
    with pytest.raises(InvalidNumber) as excinfo:
        parse_size(text)
    assert excinfo.value.text == text.strip()


@pytest.mark.parametrize("text,suffix", [("5Q", "Q"), ("5k", "k"), ("1.5X", "X")])
def test_parse_size_unknown_suffix(text, suffix):
    with pytest.raises(UnknownSuffix) as excinfo:
        parse_size(text)
    assert excinfo.value.suffix == suffix


def test_parse_errors_are_value_errors():
    for text in ("abc", "5Q"):
        with pytest.raises(ValueError):
            parse_size(text)
        with pytest.raises(ParseError):
            parse_size(text)


@pytest.mark.parametrize(
    "size,expected",
    [
        (0, "0B"),
        (1, "1B"),
        (512, "512B"),
        (1023, "1023B"),
        (1024, "1.00K"),
        (1536, "1.50K"),
        (10240, "10.0K"),
        (1024 * 1024 * 150, "150M"),
        (1024**3 * 12, "12.0G"),
        (1024**6, "1.00E"),
        (1024**7, "1024E"),
    ],
)
def test_format_bytes(size, expected):
    assert format_bytes(size) == expected


def test_format_bytes_clamps_negative():
    assert format_bytes(-5) == "0B"


def test_format_bytes_shape():
    shape = re.compile(r"^\d+(\.\d{1,2})?[BKMGTPE]$")
    sizes = [0, 1, 999, 1000, 1023, 1024, 1025, 99 * 1024, 100 * 1024, 123456789, 2**40 + 7, 2**63, U64_MAX]
    for size in sizes:
        text = format_bytes(size)
        assert shape.match(text), text
        assert sum(text.count(unit) for unit in "BKMGTPE") == 1


def test_format_is_not_an_exact_inverse():
    assert format_bytes(parse_size("1.5G")) == "1.50G"
    assert format_bytes(parse_size("12.3G")) == "12.3G"
    assert format_bytes(parse_size("512.0B")) == "512B"

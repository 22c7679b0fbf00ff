from __future__ import annotations

import pytest

from orderflow.settings import LOCAL_ORIGINS, _parse_cors


@pytest.mark.parametrize(
    "raw,expected",
    [
        (None, LOCAL_ORIGINS),
        ("   ", LOCAL_ORIGINS),
        ('["https://shop.example.com"]', ["https://shop.example.com"]),
        ("https://a.example.com, https://b.example.com,", ["https://a.example.com", "https://b.example.com"]),
        (["https://shop.example.com"], ["https://shop.example.com"]),
    ],
)
def test_parse_cors(raw, expected):
    assert _parse_cors(raw) == expected

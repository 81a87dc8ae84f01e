"""
ResponseCache: freshness window and live-only admission.
"""

from __future__ import annotations

import pytest

from conftest import FakeClock, live_body
from gridfeed.cache import ResponseCache
from gridfeed.models import DataResponse, DataSource, DataType, PricePayload, cache_key
from gridfeed.synthetic import synthesize


def _live(current_price: float = 52.41) -> DataResponse:
    body = live_body(DataType.PRICE)
    body["data"]["current_price"] = current_price
    return DataResponse(
        success=True,
        data_type=DataType.PRICE,
        source=DataSource.LIVE,
        payload=PricePayload(**body["data"]),
        timestamp=body["timestamp"],
    )


@pytest.fixture
def cache(clock: FakeClock) -> ResponseCache:
    return ResponseCache(ttl=60, clock=clock)


def test_fresh_entry_is_returned(cache, clock):
    stored = cache.put("price", _live())
    clock.advance(59.9)

    entry = cache.get("price")
    assert entry is stored
    assert entry.stored_at == 1000.0
    assert "price" in cache


def test_entry_expires_at_ttl(cache, clock):
    cache.put("price", _live())
    clock.advance(60)

    assert cache.get("price") is None
    assert "price" not in cache
    # Expired entries stay stored until overwritten.
    assert len(cache) == 1


def test_missing_key(cache):
    assert cache.get("load_forecast") is None
    assert len(cache) == 0


def test_put_overwrites_and_restarts_ttl(cache, clock):
    cache.put("price", _live(10.0))
    clock.advance(50)
    cache.put("price", _live(20.0))
    clock.advance(50)

    entry = cache.get("price")
    assert entry is not None
    assert entry.data.payload.current_price == 20.0
    assert len(cache.entries()) == 1


def test_fallback_responses_are_rejected(cache):
    with pytest.raises(ValueError, match="fallback"):
        cache.put("price", synthesize(DataType.PRICE))
    assert len(cache) == 0


def test_cached_responses_are_rejected(cache):
    with pytest.raises(ValueError, match="cached"):
        cache.put("price", _live().as_cached())


@pytest.mark.parametrize("ttl", [0, -5])
def test_ttl_must_be_positive(ttl):
    with pytest.raises(ValueError):
        ResponseCache(ttl=ttl)


def test_cache_key_ignores_param_order():
    a = cache_key(DataType.PRICE, {"region": "north", "hour": "17"})
    b = cache_key(DataType.PRICE, {"hour": "17", "region": "north"})
    assert a == b == "price?hour=17&region=north"
    assert cache_key(DataType.PRICE) == "price"


def test_cache_key_escapes_separators():
    packed = cache_key(DataType.PRICE, {"a": "1&b=2"})
    split = cache_key(DataType.PRICE, {"a": "1", "b": "2"})

    assert packed != split
    assert packed == "price?a=1%26b%3D2"


def test_cache_key_stringifies_values():
    assert cache_key(DataType.PRICE, {"hour": 17}) == cache_key(DataType.PRICE, {"hour": "17"})

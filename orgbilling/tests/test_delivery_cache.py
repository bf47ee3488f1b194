from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from orgbilling.app.billing import InMemoryDeliveryCache

NOW = datetime(2025, 3, 10, 12, 0, tzinfo=timezone.utc)


def test_marked_delivery_is_seen_until_ttl():
    cache = InMemoryDeliveryCache(ttl_seconds=60)
    cache.mark("moyasar:inv_1", NOW)

    assert cache.seen("moyasar:inv_1", NOW + timedelta(seconds=59)) is True
    assert cache.seen("moyasar:inv_1", NOW + timedelta(seconds=60)) is False
    assert cache.seen("moyasar:inv_2", NOW) is False
    assert len(cache) == 0


def test_oldest_entries_are_evicted_first():
    cache = InMemoryDeliveryCache(ttl_seconds=3600, max_entries=2)
    cache.mark("a", NOW)
    cache.mark("b", NOW + timedelta(seconds=1))
    cache.mark("c", NOW + timedelta(seconds=2))

    assert len(cache) == 2
    assert cache.seen("a", NOW + timedelta(seconds=3)) is False
    assert cache.seen("c", NOW + timedelta(seconds=3)) is True


def test_clear_forgets_everything():
    cache = InMemoryDeliveryCache()
    cache.mark("a", NOW)

    cache.clear()

    assert cache.seen("a", NOW) is False


@pytest.mark.parametrize("kwargs", [{"ttl_seconds": 0}, {"max_entries": 0}])
def test_invalid_limits(kwargs):
    with pytest.raises(ValueError):
        InMemoryDeliveryCache(**kwargs)

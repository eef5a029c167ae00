import sys

sys.path.insert(0, '.')

import pytest

from analytics.price_cache import TTLCache


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


def test_entry_valid_strictly_inside_ttl():
    clock = FakeClock()
    cache = TTLCache(ttl_s=60, clock=clock)
    cache.put('bitcoin', 'snap-1')
    clock.now += 59.9
    assert cache.get('bitcoin') == 'snap-1'
    clock.now += 0.1
    assert cache.get('bitcoin') is None


def test_refresh_replaces_entry():
    clock = FakeClock()
    cache = TTLCache(ttl_s=60, clock=clock)
    cache.put('bitcoin', {'price': 1})
    clock.now += 30
    cache.put('bitcoin', {'volume': 2})
    clock.now += 45
    assert cache.get('bitcoin') == {'volume': 2}
    assert len(cache) == 1


def test_partition_preserves_order_of_stale_keys():
    clock = FakeClock()
    cache = TTLCache(ttl_s=60, clock=clock)
    cache.put('ethereum', 'eth')
    fresh, stale = cache.partition(['solana', 'ethereum', 'bitcoin', 'solana'])
    assert fresh == {'ethereum': 'eth'}
    assert stale == ['solana', 'bitcoin']
    assert cache.hits == 1
    assert cache.misses == 2


def test_invalidate_and_bad_ttl():
    cache = TTLCache(ttl_s=5)
    cache.put('bitcoin', 1)
    cache.invalidate('bitcoin')
    assert cache.get('bitcoin') is None
    with pytest.raises(ValueError):
        TTLCache(ttl_s=0)


def test_entry_stamped_with_read_start_expires_one_period_later():
    clock = FakeClock()
    cache = TTLCache(ttl_s=60, clock=clock)
    started = cache.now()
    clock.now += 1.5
    cache.put('bitcoin', 'snap-1', fetched_at=started)
    clock.now = started + 59.0
    assert cache.partition(['bitcoin']) == ({'bitcoin': 'snap-1'}, [])
    assert cache.partition(['bitcoin'], now=started + 60) == ({}, ['bitcoin'])

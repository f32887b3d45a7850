"""
Tests for crmbridge/utils/locks.py - per-entity Redis locks.
"""
import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from crmbridge.utils.locks import LockTimeoutError, entity_lock, make_lock_key


async def test_lock_held_and_released(fake_redis):
    key = make_lock_key("t1", "amocrm", "9001")
    async with entity_lock("t1", "amocrm", "9001", ttl=30):
        assert key in fake_redis.store
        assert fake_redis.expiries[key] == 30
    assert key not in fake_redis.store


async def test_released_when_body_raises(fake_redis):
    with pytest.raises(RuntimeError):
        async with entity_lock("t1", "amocrm", "9001"):
            raise RuntimeError("rule crashed")
    assert make_lock_key("t1", "amocrm", "9001") not in fake_redis.store


async def test_contended_lock_times_out(fake_redis):
    fake_redis.store[make_lock_key("t1", "lptracker", "5")] = "other-owner"
    with pytest.raises(LockTimeoutError):
        async with entity_lock("t1", "lptracker", "5", wait=0.2):
            pass
    # the other owner's lock is untouched
    assert fake_redis.store[make_lock_key("t1", "lptracker", "5")] == "other-owner"


async def test_different_entities_do_not_contend(fake_redis):
    async with entity_lock("t1", "amocrm", "1", wait=0):
        async with entity_lock("t1", "amocrm", "2", wait=0):
            pass


async def test_redis_outage_proceeds_unlocked():
    with patch("crmbridge.utils.redis_client.get_redis", new=AsyncMock(side_effect=ConnectionError("down"))):
        async with entity_lock("t1", "amocrm", "1", wait=0):
            ran = True
    assert ran


async def test_ttl_renewed_while_held(fake_redis):
    key = make_lock_key("t1", "amocrm", "9001")
    async with entity_lock("t1", "amocrm", "9001", ttl=1, wait=0):
        await asyncio.sleep(0.5)
        assert fake_redis.extensions == [key]
        assert fake_redis.expiries[key] == 1
    assert key not in fake_redis.store


async def test_lost_lock_is_not_released(fake_redis):
    key = make_lock_key("t1", "amocrm", "9001")
    async with entity_lock("t1", "amocrm", "9001", ttl=1, wait=0):
        fake_redis.store[key] = "someone-else"
        await asyncio.sleep(0.5)
    assert fake_redis.extensions == []
    assert fake_redis.store[key] == "someone-else"

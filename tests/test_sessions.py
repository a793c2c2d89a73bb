"""Session ledger behaviour with and without the cache mirror."""

from datetime import timedelta

import pytest

from warden.service.sessions import CachedSessionLedger, SessionLedger, build_session_ledger
from warden.service.tokens import hash_token


@pytest.fixture
def ledger(stack):
    return stack.sessions


@pytest.fixture
def cached_ledger(stack, fake_cache, settings, clock):
    return build_session_ledger(stack.store, fake_cache, settings, clock=clock)


def test_build_session_ledger_picks_layer(stack, fake_cache, settings, clock):
    assert type(build_session_ledger(stack.store, None, settings, clock=clock)) is SessionLedger
    assert isinstance(build_session_ledger(stack.store, fake_cache, settings, clock=clock), CachedSessionLedger)


async def test_create_stores_token_digest_only(ledger, make_user, clock):
    user = make_user()
    session = await ledger.create_session(user.id, "access-1", hash_token("refresh-1"))
    assert session.session_token == hash_token("access-1")
    assert session.expires_at == clock() + timedelta(hours=24)
    assert not session.is_remembered
    found = await ledger.find_session_by_token("access-1")
    assert found.id == session.id
    assert await ledger.find_session_by_token("access-2") is None
    assert await ledger.find_session_by_token("") is None


async def test_remembered_session_lifetime(ledger, make_user, clock):
    user = make_user()
    session = await ledger.create_session(user.id, "access-r", None, remembered=True)
    assert session.is_remembered
    assert session.expires_at == clock() + timedelta(days=30)


async def test_expired_session_not_found(ledger, make_user, clock):
    user = make_user()
    await ledger.create_session(user.id, "access-x", None)
    clock.advance(hours=24, seconds=1)
    assert await ledger.find_session_by_token("access-x") is None


async def test_verify_refresh_token(ledger, make_user):
    user = make_user()
    session = await ledger.create_session(user.id, "access-a", hash_token("refresh-a"))
    assert (await ledger.verify_refresh_token("refresh-a")).id == session.id
    assert await ledger.verify_refresh_token("refresh-b") is None
    await ledger.invalidate_session(session.id)
    assert await ledger.verify_refresh_token("refresh-a") is None


async def test_invalidate_all_except(ledger, make_user):
    user = make_user()
    keep = await ledger.create_session(user.id, "keep", None)
    await ledger.create_session(user.id, "drop-1", None)
    await ledger.create_session(user.id, "drop-2", None)
    assert await ledger.invalidate_all_user_sessions_except(user.id, keep.id) == 2
    assert await ledger.find_session_by_token("keep") is not None
    assert await ledger.find_session_by_token("drop-1") is None
    assert await ledger.invalidate_all_user_sessions(user.id) == 1


async def test_invalidate_unknown_session(ledger):
    assert await ledger.invalidate_session("missing") is False
    assert await ledger.force_logout("missing") is False


async def test_force_logout_hides_session(ledger, make_user):
    user = make_user()
    session = await ledger.create_session(user.id, "forced", None)
    assert await ledger.force_logout(session.id) is True
    assert await ledger.find_session_by_token("forced") is None
    assert await ledger.list_user_sessions(user.id) == []


async def test_session_limit_closes_oldest(ledger, make_user, clock):
    user = make_user()
    created = []
    for idx in range(4):
        created.append(await ledger.create_session(user.id, f"tok-{idx}", None))
        clock.advance(minutes=1)
    closed = await ledger.enforce_session_limit(user.id, 2, keep_session_id=created[-1].id)
    assert closed == 2
    remaining = {s.id for s in await ledger.list_user_sessions(user.id)}
    assert remaining == {created[2].id, created[3].id}


async def test_session_limit_zero_disables(ledger, make_user):
    user = make_user()
    for idx in range(3):
        await ledger.create_session(user.id, f"t{idx}", None)
    assert await ledger.enforce_session_limit(user.id, 0) == 0
    assert len(await ledger.list_user_sessions(user.id)) == 3


async def test_cleanup_is_idempotent(ledger, make_user, clock):
    user = make_user()
    await ledger.create_session(user.id, "short", None)
    forced = await ledger.create_session(user.id, "forced", None, remembered=True)
    await ledger.create_session(user.id, "long", None, remembered=True)
    await ledger.force_logout(forced.id)
    clock.advance(hours=25)
    assert await ledger.cleanup_expired_sessions() == 2
    assert await ledger.cleanup_expired_sessions() == 0
    assert await ledger.find_session_by_token("long") is not None


async def test_update_last_accessed(ledger, make_user, clock):
    user = make_user()
    session = await ledger.create_session(user.id, "touch", None, ip_address="10.0.0.1")
    clock.advance(minutes=5)
    await ledger.update_last_accessed(session.id, "10.0.0.2")
    stored = await ledger.get_session(session.id)
    assert stored.last_accessed == clock()
    assert stored.ip_address == "10.0.0.2"


class TestCachedLedger:
    async def test_create_populates_cache_with_ttl(self, cached_ledger, fake_cache, make_user):
        user = make_user()
        await cached_ledger.create_session(user.id, "cached", hash_token("r"))
        key = f"session:{hash_token('cached')}"
        assert key in fake_cache.entries
        assert "refresh_token_hash" not in fake_cache.entries[key][0]
        assert await fake_cache.ttl(key) == 24 * 3600

    async def test_cache_hit_skips_store(self, cached_ledger, fake_cache, make_user, stack):
        user = make_user()
        session = await cached_ledger.create_session(user.id, "hit", None)
        stack.store.sessions.clear()
        found = await cached_ledger.find_session_by_token("hit")
        assert found is not None and found.id == session.id

    async def test_cold_cache_reads_through(self, cached_ledger, fake_cache, make_user):
        user = make_user()
        session = await cached_ledger.create_session(user.id, "cold", None)
        fake_cache.entries.clear()
        found = await cached_ledger.find_session_by_token("cold")
        assert found.id == session.id
        assert f"session:{hash_token('cold')}" in fake_cache.entries

    async def test_invalidation_purges_cache(self, cached_ledger, fake_cache, make_user):
        user = make_user()
        session = await cached_ledger.create_session(user.id, "gone", None)
        assert await cached_ledger.invalidate_session(session.id)
        assert f"session:{hash_token('gone')}" not in fake_cache.entries
        assert await cached_ledger.find_session_by_token("gone") is None

    async def test_stale_cache_entry_is_revalidated(self, cached_ledger, fake_cache, make_user, stack):
        user = make_user()
        session = await cached_ledger.create_session(user.id, "stale", None)
        key = f"session:{hash_token('stale')}"
        value, _ = fake_cache.entries[key]
        # Cache entry outlives the session itself
        fake_cache.entries[key] = (value, stack.clock() + timedelta(days=365))
        stack.clock.advance(hours=25)
        assert await cached_ledger.find_session_by_token("stale") is None
        assert key not in fake_cache.entries
        assert session.id

    async def test_force_logout_purges_cache(self, cached_ledger, fake_cache, make_user):
        user = make_user()
        session = await cached_ledger.create_session(user.id, "forced", None)
        await cached_ledger.force_logout(session.id)
        assert await cached_ledger.find_session_by_token("forced") is None

    async def test_replace_access_token_moves_cache_key(self, cached_ledger, fake_cache, make_user):
        user = make_user()
        session = await cached_ledger.create_session(user.id, "old", None)
        updated = await cached_ledger.replace_access_token(session, "new")
        assert updated.session_token == hash_token("new")
        assert f"session:{hash_token('old')}" not in fake_cache.entries
        assert await cached_ledger.find_session_by_token("old") is None
        assert (await cached_ledger.find_session_by_token("new")).id == session.id

    async def test_failing_cache_falls_back_to_store(self, stack, failing_cache, settings, clock, make_user):
        ledger = build_session_ledger(stack.store, failing_cache, settings, clock=clock)
        user = make_user()
        session = await ledger.create_session(user.id, "resilient", None)
        assert (await ledger.find_session_by_token("resilient")).id == session.id
        assert await ledger.invalidate_session(session.id) is True
        assert await ledger.find_session_by_token("resilient") is None
        assert await ledger.cleanup_expired_sessions() == 0

"""Tests for the in-memory session cache, authority and typed lightweight sessions."""

import asyncio
import threading
from datetime import datetime, timedelta, timezone

import pytest

from gradauth.service.lightweight import (
    OAUTH_SESSION_PREFIX,
    LightweightSessions,
    new_session_id,
)
from gradauth.storage.errors import ConstraintViolation
from gradauth.storage.memory import MemorySessionAuthority, MemorySessionCache


class Clock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class TestMemorySessionCache:
    async def test_entries_expire_on_clock(self):
        clock = Clock()
        cache = MemorySessionCache(clock=clock)
        await cache.put("k", "v", ttl_seconds=10)

        assert await cache.get("k") == "v"
        clock.now += 10
        assert await cache.get("k") is None

    async def test_pop_is_single_use(self):
        cache = MemorySessionCache()
        await cache.put("k", "v", ttl_seconds=10)

        assert await cache.pop("k") == "v"
        assert await cache.pop("k") is None

    async def test_delete_missing_is_noop(self):
        cache = MemorySessionCache()
        await cache.delete("missing")
        assert await cache.get("missing") is None


class TestMemorySessionAuthority:
    async def test_email_uniqueness_is_case_insensitive(self):
        authority = MemorySessionAuthority()
        await authority.create_user("ada@example.com")

        with pytest.raises(ConstraintViolation):
            await authority.create_user("ADA@example.com")

    async def test_link_account_idempotent(self):
        authority = MemorySessionAuthority()
        user = await authority.create_user("ada@example.com")

        await authority.link_account(user.id, "google", "g-1")
        await authority.link_account(user.id, "google", "g-1")

        assert len(authority.linked_providers(user.id)) == 1

    async def test_identity_cannot_move_between_users(self):
        authority = MemorySessionAuthority()
        ada = await authority.create_user("ada@example.com")
        bob = await authority.create_user("bob@example.com")
        await authority.link_account(ada.id, "google", "g-1")

        with pytest.raises(ConstraintViolation):
            await authority.link_account(bob.id, "google", "g-1")

    async def test_find_user_by_provider(self):
        authority = MemorySessionAuthority()
        ada = await authority.create_user("ada@example.com")
        await authority.link_account(ada.id, "google", "g-1")

        found = await authority.find_user_by_provider("google", "g-1")

        assert found is not None and found.id == ada.id
        assert await authority.find_user_by_provider("github", "g-1") is None

    async def test_expired_session_not_returned(self):
        authority = MemorySessionAuthority()
        user = await authority.create_user("ada@example.com")
        session = await authority.create_session(
            user.id,
            expires_at=datetime.now(timezone.utc) - timedelta(seconds=1),
            tenant_id="public",
        )

        assert await authority.get_session(session.token) is None

    async def test_membership_keeps_existing_role(self):
        authority = MemorySessionAuthority()
        user = await authority.create_user("ada@example.com")
        await authority.add_tenant_member(user.id, "public", "admin")
        await authority.add_tenant_member(user.id, "public", "member")

        assert await authority.get_user_roles(user.id, "public") == ["admin"]
        assert await authority.get_user_roles(user.id, "other") == []


class TestLightweightSessions:
    def test_session_ids_are_256_bit_hex(self):
        session_id = new_session_id()
        assert len(session_id) == 64
        int(session_id, 16)

    async def test_oauth_round_trip_and_delete(self):
        cache = MemorySessionCache()
        sessions = LightweightSessions(cache, oauth_ttl_seconds=60, preview_ttl_seconds=60)

        record = await sessions.create_oauth(
            provider="google", provider_id="g-1", email="ada@example.com", email_verified=True
        )
        loaded = await sessions.get_oauth(record.id)

        assert loaded == record
        await sessions.delete_oauth(record.id)
        assert await cache.get(OAUTH_SESSION_PREFIX + record.id) is None

    async def test_preview_and_oauth_namespaces_are_separate(self):
        sessions = LightweightSessions(
            MemorySessionCache(), oauth_ttl_seconds=60, preview_ttl_seconds=60
        )
        preview = await sessions.create_preview("visitor@example.com")

        assert await sessions.get_oauth(preview.id) is None

    async def test_expiry_uses_record_timestamp(self):
        clock = Clock()
        sessions = LightweightSessions(
            MemorySessionCache(), oauth_ttl_seconds=60, preview_ttl_seconds=120, clock=clock
        )
        record = await sessions.create_preview("visitor@example.com")

        assert record.expires_at == clock.now + 120
        clock.now += 119
        assert await sessions.get_preview(record.id) is not None

    async def test_empty_id_is_miss(self):
        sessions = LightweightSessions(
            MemorySessionCache(), oauth_ttl_seconds=60, preview_ttl_seconds=60
        )
        assert await sessions.get_preview("") is None
        assert await sessions.get_oauth("") is None


class TestThreadSafety:
    def test_concurrent_create_user_admits_one(self):
        authority = MemorySessionAuthority()
        outcomes: list = []
        barrier = threading.Barrier(8)

        def worker():
            barrier.wait()
            try:
                asyncio.run(authority.create_user("ada@example.com"))
                outcomes.append("created")
            except ConstraintViolation:
                outcomes.append("conflict")

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert outcomes.count("created") == 1
        assert outcomes.count("conflict") == 7

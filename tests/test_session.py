"""
Tests for session contexts and the challenge store

Tests cover:
- In-memory session isolation and atomic take
- Redis-backed session key layout and failure handling
- ChallengeStore slots, single use, replacement and optional expiry
"""

from datetime import datetime, timezone, timedelta

import pytest
from unittest.mock import AsyncMock, MagicMock

from loginguard.common.models import ChallengePurpose, ChallengeState
from loginguard.common.session import (
    InMemorySessionBackend,
    InMemorySessionContext,
    RedisSessionContext,
    SessionStorageError,
)
from loginguard.tfa.challenge_store import ChallengeStore


class TestInMemorySession:
    """Test InMemorySessionContext"""

    @pytest.mark.asyncio
    async def test_set_get_take(self):
        session = InMemorySessionContext()

        await session.set("k", {"v": 1})

        assert await session.get("k") == {"v": 1}
        assert await session.take("k") == {"v": 1}
        assert await session.take("k") is None

    @pytest.mark.asyncio
    async def test_sessions_are_isolated(self, session_backend):
        first = session_backend.session("one")
        second = session_backend.session("two")

        await first.set("k", "a")

        assert await second.get("k") is None
        assert await session_backend.session("one").get("k") == "a"

    @pytest.mark.asyncio
    async def test_clear_and_discard(self, session_backend):
        session = session_backend.session("one")
        await session.set("a", 1)
        await session.set("b", 2)

        await session.clear("a")
        assert await session.get("a") is None

        session_backend.discard("one")
        assert await session.get("b") is None


class TestRedisSession:
    """Test RedisSessionContext"""

    def make_client(self):
        client = MagicMock()
        client.get = AsyncMock(return_value={"v": 1})
        client.set = AsyncMock(return_value=True)
        client.delete = AsyncMock(return_value=True)
        client.get_and_delete = AsyncMock(return_value={"v": 1})
        return client

    @pytest.mark.asyncio
    async def test_key_layout_and_ttl(self):
        client = self.make_client()
        session = RedisSessionContext(client, "sid", ttl_seconds=90)

        await session.set("challenge.registration", {"v": 1})
        await session.get("challenge.registration")
        await session.take("challenge.registration")
        await session.clear("challenge.registration")

        key = "loginguard:session:sid:challenge.registration"
        client.set.assert_called_once_with(key, {"v": 1}, ttl_seconds=90)
        client.get.assert_called_once_with(key)
        client.get_and_delete.assert_called_once_with(key)
        client.delete.assert_called_once_with(key)

    @pytest.mark.asyncio
    async def test_write_failure_raises(self):
        client = self.make_client()
        client.set.return_value = False
        session = RedisSessionContext(client, "sid")

        with pytest.raises(SessionStorageError):
            await session.set("k", "v")


class TestChallengeStore:
    """Test ChallengeStore"""

    def test_slot_names(self):
        assert ChallengeStore.slot(ChallengePurpose.REGISTRATION) == "challenge.registration"
        assert ChallengeStore.slot(ChallengePurpose.AUTHENTICATION) == "challenge.authentication"

    @pytest.mark.asyncio
    async def test_take_is_single_use(self, session):
        store = ChallengeStore(session)
        await store.put(ChallengePurpose.AUTHENTICATION, {"challenge": "abc"})

        state = await store.take_and_clear(ChallengePurpose.AUTHENTICATION)

        assert state.payload == {"challenge": "abc"}
        assert state.purpose == ChallengePurpose.AUTHENTICATION
        assert await store.take_and_clear(ChallengePurpose.AUTHENTICATION) is None

    @pytest.mark.asyncio
    async def test_purposes_are_separate(self, session):
        store = ChallengeStore(session)
        await store.put(ChallengePurpose.REGISTRATION, {"challenge": "reg"})

        assert await store.take_and_clear(ChallengePurpose.AUTHENTICATION) is None
        assert (await store.take_and_clear(ChallengePurpose.REGISTRATION)).payload == {"challenge": "reg"}

    @pytest.mark.asyncio
    async def test_put_replaces_previous(self, session):
        store = ChallengeStore(session)
        await store.put(ChallengePurpose.REGISTRATION, {"challenge": "old"})
        await store.put(ChallengePurpose.REGISTRATION, {"challenge": "new"})

        assert (await store.take_and_clear(ChallengePurpose.REGISTRATION)).payload == {"challenge": "new"}

    @pytest.mark.asyncio
    async def test_expired_challenge_is_discarded(self, session):
        store = ChallengeStore(session, ttl_seconds=30)
        old = ChallengeState(
            purpose=ChallengePurpose.AUTHENTICATION,
            payload={"challenge": "abc"},
            issued_at=datetime.now(timezone.utc) - timedelta(minutes=5)
        )
        await session.set(store.slot(ChallengePurpose.AUTHENTICATION), old.model_dump(mode="json"))

        assert await store.take_and_clear(ChallengePurpose.AUTHENTICATION) is None
        assert await session.get(store.slot(ChallengePurpose.AUTHENTICATION)) is None

    @pytest.mark.asyncio
    async def test_corrupt_state_is_discarded(self, session):
        store = ChallengeStore(session)
        await session.set("challenge.authentication", {"unexpected": True})

        assert await store.take_and_clear(ChallengePurpose.AUTHENTICATION) is None

    @pytest.mark.asyncio
    async def test_state_stored_in_wrong_slot(self, session):
        store = ChallengeStore(session)
        await store.put(ChallengePurpose.REGISTRATION, {"challenge": "reg"})
        moved = await session.take("challenge.registration")
        await session.set("challenge.authentication", moved)

        assert await store.take_and_clear(ChallengePurpose.AUTHENTICATION) is None

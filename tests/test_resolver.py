"""
Tests for loginguard/tfa/resolver.py
"""

import pytest
from unittest.mock import patch

from loginguard.common.models import KeyRegistration
from loginguard.tfa.catalog import StorageError
from loginguard.tfa.resolver import RegistrationResolver, Candidate


def key(handle: str, counter: int = 0) -> KeyRegistration:
    return KeyRegistration(keyHandle=handle, publicKey="BAAA", counter=counter)


async def make_record(catalog, user_id, registrations, method="u2f"):
    record = await catalog.create_record(user_id, method, "Key")
    return await catalog.save_options(record.id, {"registrations": [r.model_dump() for r in registrations]})


class TestRegistrationResolver:
    """Test candidate resolution with and without batching"""

    @pytest.mark.asyncio
    async def test_without_batching_uses_own_record(self, catalog):
        own = await make_record(catalog, "alice", [key("AAAA"), key("BBBB")])
        await make_record(catalog, "alice", [key("CCCC")])

        resolved = await RegistrationResolver(catalog).resolve(own, allow_batching=False)

        assert [r.keyHandle for r in resolved] == ["AAAA", "BBBB"]

    @pytest.mark.asyncio
    async def test_with_batching_uses_all_user_records(self, catalog):
        first = await make_record(catalog, "alice", [key("AAAA")])
        second = await make_record(catalog, "alice", [key("BBBB")])
        await make_record(catalog, "alice", [key("TTTT")], method="totp")
        await make_record(catalog, "bob", [key("XXXX")])

        candidates = await RegistrationResolver(catalog).resolve_candidates(second, allow_batching=True)

        assert candidates == [
            Candidate(first.id, key("AAAA")),
            Candidate(second.id, key("BBBB")),
        ]

    @pytest.mark.asyncio
    async def test_batching_skips_records_without_keys(self, catalog):
        first = await make_record(catalog, "alice", [key("AAAA")])
        await catalog.create_record("alice", "u2f", "Pending")

        resolved = await RegistrationResolver(catalog).resolve(first, allow_batching=True)

        assert [r.keyHandle for r in resolved] == ["AAAA"]

    @pytest.mark.asyncio
    async def test_record_without_options(self, catalog):
        record = await catalog.create_record("alice", "u2f", "Pending")

        assert await RegistrationResolver(catalog).resolve(record, allow_batching=False) == []

    @pytest.mark.asyncio
    async def test_batching_storage_failure_gives_no_candidates(self, catalog):
        record = await make_record(catalog, "alice", [key("AAAA")])

        with patch.object(catalog, "list_records", side_effect=StorageError("db down")):
            resolved = await RegistrationResolver(catalog).resolve(record, allow_batching=True)

        assert resolved == []

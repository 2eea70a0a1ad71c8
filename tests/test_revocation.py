"""Unit tests for the token revocation registry."""

from datetime import timedelta

import pytest

from eventauth.service.revocation import RevocationRegistry


@pytest.fixture
def registry(clock):
    return RevocationRegistry(clock=clock)


class TestRevoke:
    def test_revoke_is_idempotent(self, registry):
        assert registry.revoke("tok-1") is True
        assert registry.revoke("tok-1") is False
        assert len(registry) == 1

    def test_is_revoked_is_stable(self, registry):
        registry.revoke("tok-1")

        for _ in range(3):
            assert registry.is_revoked("tok-1")
        assert "tok-1" in registry

    def test_unknown_token_not_revoked(self, registry):
        assert not registry.is_revoked("never-seen")
        assert None not in registry
        assert 123 not in registry

    def test_empty_token_ignored(self, registry):
        assert registry.revoke("") is False
        assert len(registry) == 0


class TestEviction:
    def test_entry_kept_until_expiry(self, registry, clock):
        registry.revoke("tok-1", expires_at=clock.now() + timedelta(minutes=15))

        clock.advance(minutes=15)
        assert registry.sweep_expired() == 0
        assert registry.is_revoked("tok-1")

        clock.advance(seconds=1)
        assert registry.sweep_expired() == 1
        assert not registry.is_revoked("tok-1")

    def test_entry_without_expiry_is_kept(self, registry, clock):
        registry.revoke("forever")
        clock.advance(days=365)

        assert registry.sweep_expired() == 0
        assert registry.is_revoked("forever")

    def test_revoke_sweeps_stale_entries(self, registry, clock):
        registry.revoke("old", expires_at=clock.now() + timedelta(seconds=10))
        clock.advance(seconds=11)

        registry.revoke("new")

        assert not registry.is_revoked("old")
        assert len(registry) == 1

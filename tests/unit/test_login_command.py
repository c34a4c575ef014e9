"""Tests for the login command"""

from datetime import UTC, datetime

import pytest

from fctl.commands.login import LoginError, login
from fctl.core.credentials import TOKEN_LIFETIME, ProfileStore
from fctl.domain.errors import RemoteJobError


class FakeUserClient:
    def __init__(self, profile, error=None):
        self.profile = profile
        self.error = error
        self.closed = False

    def current_user(self):
        if self.error is not None:
            raise self.error
        return {"userName": "alice@example.com"}

    def close(self):
        self.closed = True


class TestLogin:
    """Test saving and verifying credentials"""

    def test_successful_login(self, home_dir):
        """Should save the profile, verify it and extend the token expiry"""
        store = ProfileStore(home_dir)
        clients = []
        now = datetime(2026, 10, 1, 8, 0, tzinfo=UTC)

        def factory(profile):
            clients.append(FakeUserClient(profile))
            return clients[-1]

        result = login(
            store=store,
            host="cp.example.com/",
            username="alice",
            token="t0k",
            profile="ops",
            client_factory=factory,
            now=now,
        )

        assert result.success
        assert result.data["controlPlaneUrl"] == "https://cp.example.com"
        assert result.data["user"] == "alice@example.com"
        assert result.data["tokenExpiry"] == (now + TOKEN_LIFETIME).isoformat()
        assert clients[0].profile.control_plane_url == "https://cp.example.com"
        assert clients[0].closed
        stored = store.load("ops", check_expiry=False)
        assert stored.token_expiry == now + TOKEN_LIFETIME
        assert store.resolve_name(None) == "ops"

    def test_rejected_credentials(self, home_dir):
        store = ProfileStore(home_dir)
        client = None

        def factory(profile):
            nonlocal client
            client = FakeUserClient(
                profile, RemoteJobError(message="Invalid credentials", code="unauthorized")
            )
            return client

        with pytest.raises(LoginError, match="Invalid credentials"):
            login(
                store=store,
                host="https://cp.example.com",
                username="alice",
                token="wrong",
                profile="ops",
                client_factory=factory,
            )

        assert client.closed
        assert store.load("ops", check_expiry=False).token_expiry is None

    def test_invalid_host(self, home_dir):
        with pytest.raises(LoginError, match="Host cannot be empty"):
            login(
                store=ProfileStore(home_dir),
                host="  ",
                username="alice",
                token="t0k",
                profile="ops",
                client_factory=FakeUserClient,
            )

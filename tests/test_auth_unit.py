"""Unit tests for the auth orchestrator.

Tests for:
- Invitation-gated registration
- Login with territory-scoped credentials
- Refresh token rotation and reuse
- Logout
- Bearer authentication
"""

import threading

import pytest
from argon2 import PasswordHasher

from unityauth.config import Settings
from unityauth.service.auth import AuthService
from unityauth.service.crypto import CredentialHasher, identity_fingerprint
from unityauth.service.errors import (
    AuthenticationError,
    ConflictError,
    InvitationRejected,
    NotFoundError,
    ServerError,
    ValidationError,
)
from unityauth.storage.errors import ConstraintViolation
from unityauth.storage.memory import MemoryStore

PASSWORD = "TestPassword123!"


@pytest.fixture
def settings():
    return Settings(jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!")


@pytest.fixture
def memory_store():
    return MemoryStore([("dk", "Denmark"), ("se", "Sweden")])


@pytest.fixture
def auth_service(memory_store, settings):
    hasher = CredentialHasher(PasswordHasher(time_cost=1, memory_cost=8, parallelism=1))
    return AuthService(memory_store, settings, hasher=hasher)


@pytest.fixture
def group_token(auth_service):
    return auth_service.invitations.create("dk", "group", max_uses=10)


async def _register(auth_service, username, token, territory="dk", email=None):
    return await auth_service.register(territory, username, PASSWORD, token.token, email=email)


class TestRegister:
    @pytest.mark.asyncio
    async def test_register_returns_tokens_and_user(self, auth_service, group_token):
        result = await auth_service.register(
            "dk",
            "alice",
            PASSWORD,
            group_token.token,
            email="Alice@Example.org",
            full_name="Alice Andersen",
            ip_address="10.0.0.7",
            user_agent="pytest",
        )

        assert result.user.username == "alice"
        assert result.user.territory_code == "dk"
        assert result.user.full_name == "Alice Andersen"
        assert result.user.invited_by_token_id == group_token.id
        assert result.token_type == "Bearer"
        assert result.expires_in == 900
        assert result.access_token.count(".") == 2
        assert result.refresh_token
        assert result.user.password_hash != PASSWORD

    @pytest.mark.asyncio
    async def test_register_links_global_identity(self, auth_service, memory_store, group_token):
        result = await _register(auth_service, "alice", group_token, email="alice@example.org")

        identity = memory_store.get_identity_by_local("dk", result.user.id)
        assert identity.id == result.identity.id
        assert identity.fingerprint == identity_fingerprint("alice@example.org", "alice")
        claims = auth_service.codec.verify(result.access_token)
        assert claims.sub == identity.fingerprint
        assert claims.user_id == result.user.id
        assert claims.territory_code == "dk"

    @pytest.mark.asyncio
    async def test_register_consumes_invitation_and_logs_use(
        self, auth_service, memory_store, group_token
    ):
        result = await auth_service.register(
            "dk", "alice", PASSWORD, group_token.token, ip_address="10.0.0.7", user_agent="ua"
        )

        assert group_token.current_uses == 1
        uses = memory_store.list_invitation_uses("dk", group_token.id)
        assert [u.used_by_user_id for u in uses] == [result.user.id]
        assert uses[0].ip_address == "10.0.0.7"

    @pytest.mark.asyncio
    async def test_register_creates_session(self, auth_service, memory_store, group_token):
        result = await _register(auth_service, "alice", group_token)

        session = auth_service.sessions.lookup(result.refresh_token)
        assert session.identity_id == result.identity.id
        assert result.refresh_token not in memory_store.sessions

    @pytest.mark.asyncio
    async def test_unknown_territory(self, auth_service, group_token):
        with pytest.raises(ValidationError, match="Invalid territory code"):
            await _register(auth_service, "alice", group_token, territory="xx")

    @pytest.mark.asyncio
    async def test_invalid_invitation(self, auth_service):
        with pytest.raises(InvitationRejected) as exc_info:
            await auth_service.register("dk", "alice", PASSWORD, "inv_nope")
        assert exc_info.value.reason == "invalid"

    @pytest.mark.asyncio
    async def test_duplicate_username_is_global(self, auth_service, group_token):
        se_token = auth_service.invitations.create("se", "group", max_uses=5)
        await _register(auth_service, "alice", group_token)

        with pytest.raises(ConflictError, match="Username already taken"):
            await _register(auth_service, "alice", se_token, territory="se")
        assert se_token.current_uses == 0

    @pytest.mark.asyncio
    async def test_unexpected_constraint_is_server_error(
        self, auth_service, memory_store, group_token, monkeypatch
    ):
        def collide(*args, **kwargs):
            raise ConstraintViolation(
                "unexpected unique violation",
                {"constraint": "identities_territory_local_key"},
            )

        monkeypatch.setattr(memory_store, "admit_user", collide)

        with pytest.raises(ServerError, match="Registration failed"):
            await _register(auth_service, "alice", group_token)

    @pytest.mark.asyncio
    async def test_duplicate_email_in_territory(self, auth_service, group_token):
        await _register(auth_service, "alice", group_token, email="shared@example.org")

        with pytest.raises(ConflictError, match="Email already registered"):
            await _register(auth_service, "bob", group_token, email="SHARED@example.org")
        assert group_token.current_uses == 1

    @pytest.mark.asyncio
    async def test_same_email_allowed_in_other_territory(self, auth_service, group_token):
        se_token = auth_service.invitations.create("se", "group", max_uses=5)
        await _register(auth_service, "alice", group_token, email="shared@example.org")
        result = await _register(auth_service, "alice_se", se_token, territory="se", email="shared@example.org")
        assert result.user.territory_code == "se"

    @pytest.mark.asyncio
    async def test_single_use_token_admits_once(self, auth_service):
        token = auth_service.invitations.create("dk", "single_use", email="friend@example.org")
        await _register(auth_service, "friend", token, email="friend@example.org")

        with pytest.raises(InvitationRejected) as exc_info:
            await _register(auth_service, "friend2", token, email="friend@example.org")
        assert exc_info.value.reason == "exhausted"

    @pytest.mark.asyncio
    async def test_single_use_token_email_mismatch(self, auth_service):
        token = auth_service.invitations.create("dk", "single_use", email="friend@example.org")
        with pytest.raises(InvitationRejected) as exc_info:
            await _register(auth_service, "stranger", token, email="stranger@example.org")
        assert exc_info.value.reason == "email_mismatch"
        assert token.current_uses == 0

    @pytest.mark.asyncio
    async def test_group_token_scenario(self, auth_service):
        """Two members join on a two-use token; the third is turned away."""
        token = auth_service.invitations.create("dk", "group", max_uses=2)

        await _register(auth_service, "member_a", token)
        await _register(auth_service, "member_b", token)
        with pytest.raises(InvitationRejected) as exc_info:
            await _register(auth_service, "member_c", token)

        assert exc_info.value.reason == "exhausted"
        assert token.current_uses == 2
        assert token.is_active is False

    def test_concurrent_registrations_respect_cap(self, auth_service, memory_store):
        import asyncio

        token = auth_service.invitations.create("dk", "group", max_uses=3)
        outcomes = []
        barrier = threading.Barrier(8)

        def worker(n):
            barrier.wait()
            try:
                asyncio.run(_register(auth_service, f"racer{n}", token))
                outcomes.append("ok")
            except InvitationRejected as exc:
                outcomes.append(exc.reason)

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert outcomes.count("ok") == 3
        assert outcomes.count("exhausted") == 5
        assert len(memory_store.users["dk"]) == 3


class TestLogin:
    @pytest.mark.asyncio
    async def test_login_success(self, auth_service, group_token):
        registered = await _register(auth_service, "alice", group_token)

        result = await auth_service.login("dk", "alice", PASSWORD)

        assert result.user.id == registered.user.id
        assert result.user.last_login_at is not None
        assert result.refresh_token != registered.refresh_token
        assert auth_service.sessions.lookup(result.refresh_token) is not None

    @pytest.mark.asyncio
    async def test_territory_code_case_insensitive(self, auth_service, group_token):
        await _register(auth_service, "alice", group_token)
        result = await auth_service.login("DK", "alice", PASSWORD)
        assert result.user.territory_code == "dk"

    @pytest.mark.asyncio
    async def test_failures_are_indistinguishable(self, auth_service, memory_store, group_token):
        registered = await _register(auth_service, "alice", group_token)
        await _register(auth_service, "dormant", group_token)
        dormant = memory_store.get_user_by_username("dk", "dormant")
        memory_store.set_user_active("dk", dormant.id, False)

        messages = []
        for username, password in [
            ("alice", "WrongPassword1!"),
            ("nobody", PASSWORD),
            ("dormant", PASSWORD),
        ]:
            with pytest.raises(AuthenticationError) as exc_info:
                await auth_service.login("dk", username, password)
            messages.append((exc_info.value.status_code, exc_info.value.message))

        assert set(messages) == {(401, "Invalid credentials")}
        assert registered.user.last_login_at is None

    @pytest.mark.asyncio
    async def test_every_failure_costs_one_verification(self, memory_store, settings):
        class CountingHasher(PasswordHasher):
            verifications = 0

            def verify(self, hash, password):
                CountingHasher.verifications += 1
                return super().verify(hash, password)

        service = AuthService(
            memory_store,
            settings,
            hasher=CredentialHasher(CountingHasher(time_cost=1, memory_cost=8, parallelism=1)),
        )
        token = service.invitations.create("dk", "group", max_uses=10)
        await _register(service, "alice", token)
        await _register(service, "dormant", token)
        dormant = memory_store.get_user_by_username("dk", "dormant")
        memory_store.set_user_active("dk", dormant.id, False)

        for username, password in [
            ("alice", "WrongPassword1!"),
            ("nobody", PASSWORD),
            ("dormant", PASSWORD),
        ]:
            before = CountingHasher.verifications
            with pytest.raises(AuthenticationError):
                await service.login("dk", username, password)
            assert CountingHasher.verifications - before == 1

    @pytest.mark.asyncio
    async def test_user_cannot_log_in_to_other_territory(self, auth_service, group_token):
        await _register(auth_service, "alice", group_token)
        with pytest.raises(AuthenticationError):
            await auth_service.login("se", "alice", PASSWORD)

    @pytest.mark.asyncio
    async def test_unknown_territory(self, auth_service):
        with pytest.raises(ValidationError):
            await auth_service.login("nowhere", "alice", PASSWORD)


class TestRefresh:
    @pytest.mark.asyncio
    async def test_refresh_rotates(self, auth_service, group_token):
        registered = await _register(auth_service, "alice", group_token)

        refreshed = await auth_service.refresh("dk", registered.refresh_token)

        assert refreshed.refresh_token != registered.refresh_token
        assert auth_service.codec.verify(refreshed.access_token).user_id == registered.user.id
        assert auth_service.sessions.lookup(registered.refresh_token) is None
        assert auth_service.sessions.lookup(refreshed.refresh_token) is not None

    @pytest.mark.asyncio
    async def test_reused_refresh_token_rejected(self, auth_service, group_token):
        registered = await _register(auth_service, "alice", group_token)
        await auth_service.refresh("dk", registered.refresh_token)

        with pytest.raises(AuthenticationError, match="Invalid refresh token"):
            await auth_service.refresh("dk", registered.refresh_token)

    @pytest.mark.asyncio
    async def test_unknown_refresh_token(self, auth_service):
        with pytest.raises(AuthenticationError, match="Invalid refresh token"):
            await auth_service.refresh("dk", "made-up")

    @pytest.mark.asyncio
    async def test_wrong_territory(self, auth_service, group_token):
        registered = await _register(auth_service, "alice", group_token)

        with pytest.raises(AuthenticationError):
            await auth_service.refresh("se", registered.refresh_token)
        with pytest.raises(AuthenticationError):
            await auth_service.refresh("bogus!", registered.refresh_token)
        # Failed attempts leave the session usable in its own territory
        assert auth_service.sessions.lookup(registered.refresh_token) is not None

    @pytest.mark.asyncio
    async def test_deactivated_user_cannot_refresh(self, auth_service, memory_store, group_token):
        registered = await _register(auth_service, "alice", group_token)
        memory_store.set_user_active("dk", registered.user.id, False)

        with pytest.raises(AuthenticationError):
            await auth_service.refresh("dk", registered.refresh_token)

    def test_concurrent_refresh_has_single_winner(self, auth_service, group_token):
        import asyncio

        registered = asyncio.run(_register(auth_service, "alice", group_token))
        outcomes = []
        barrier = threading.Barrier(6)

        def worker():
            barrier.wait()
            try:
                asyncio.run(auth_service.refresh("dk", registered.refresh_token))
                outcomes.append("ok")
            except AuthenticationError:
                outcomes.append("rejected")

        threads = [threading.Thread(target=worker) for _ in range(6)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert outcomes.count("ok") == 1
        assert outcomes.count("rejected") == 5


class TestLogout:
    @pytest.mark.asyncio
    async def test_logout_revokes_session(self, auth_service, group_token):
        registered = await _register(auth_service, "alice", group_token)

        await auth_service.logout(registered.refresh_token)

        with pytest.raises(AuthenticationError):
            await auth_service.refresh("dk", registered.refresh_token)

    @pytest.mark.asyncio
    async def test_logout_twice_is_not_found(self, auth_service, group_token):
        registered = await _register(auth_service, "alice", group_token)
        await auth_service.logout(registered.refresh_token)

        with pytest.raises(NotFoundError, match="Session not found"):
            await auth_service.logout(registered.refresh_token)

    @pytest.mark.asyncio
    async def test_logout_leaves_access_token_valid_until_expiry(self, auth_service, group_token):
        registered = await _register(auth_service, "alice", group_token)
        await auth_service.logout(registered.refresh_token)

        assert await auth_service.authenticate(f"Bearer {registered.access_token}") is not None


class TestAuthenticate:
    @pytest.mark.asyncio
    async def test_valid_bearer(self, auth_service, group_token):
        registered = await _register(auth_service, "alice", group_token)

        ctx = await auth_service.authenticate(f"Bearer {registered.access_token}")

        assert ctx.user_id == registered.user.id
        assert ctx.username == "alice"
        assert ctx.territory_code == "dk"
        assert ctx.fingerprint == registered.identity.fingerprint

    @pytest.mark.asyncio
    async def test_scheme_is_case_insensitive(self, auth_service, group_token):
        registered = await _register(auth_service, "alice", group_token)
        assert await auth_service.authenticate(f"bearer {registered.access_token}") is not None

    @pytest.mark.asyncio
    @pytest.mark.parametrize("header", [None, "", "Bearer", "Bearer ", "Basic abc", "Token x.y.z"])
    async def test_missing_or_malformed_header(self, auth_service, header):
        assert await auth_service.authenticate(header) is None

    @pytest.mark.asyncio
    async def test_garbage_token(self, auth_service):
        assert await auth_service.authenticate("Bearer not.a.jwt") is None

    @pytest.mark.asyncio
    async def test_deactivated_user(self, auth_service, memory_store, group_token):
        registered = await _register(auth_service, "alice", group_token)
        memory_store.set_user_active("dk", registered.user.id, False)

        assert await auth_service.authenticate(f"Bearer {registered.access_token}") is None

    @pytest.mark.asyncio
    async def test_disabled_territory(self, auth_service, memory_store, group_token):
        registered = await _register(auth_service, "alice", group_token)
        memory_store.set_territory_active("dk", False)

        assert await auth_service.authenticate(f"Bearer {registered.access_token}") is None

    @pytest.mark.asyncio
    async def test_subject_must_match_identity(self, auth_service, group_token):
        registered = await _register(auth_service, "alice", group_token)
        forged = auth_service.codec.issue(
            "0" * 64, "dk", registered.user.id, registered.user.username
        )

        assert await auth_service.authenticate(f"Bearer {forged}") is None

    @pytest.mark.asyncio
    async def test_me_returns_profile(self, auth_service, group_token):
        registered = await _register(auth_service, "alice", group_token, email="alice@example.org")
        ctx = await auth_service.authenticate(f"Bearer {registered.access_token}")

        user = await auth_service.me(ctx)

        assert user.id == registered.user.id
        assert user.public_view()["email"] == "alice@example.org"
        assert "password_hash" not in user.public_view()

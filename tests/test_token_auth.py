"""Unit tests for credential parsing, token verification and principal resolution."""

import asyncio
from datetime import timedelta

import pytest

from chatguard.service.auth import (
    Credential,
    CredentialKind,
    Principal,
    TokenAuthenticator,
    TokenCodec,
    ensure_role,
    extract_bearer,
    parse_credential,
)
from chatguard.service.errors import (
    ForbiddenError,
    InvalidTokenError,
    NoCredentialError,
    PrincipalUnavailableError,
    RoleMismatchError,
)
from chatguard.storage.memory import MemoryStore

SECRET = "Test-Secret-Key_for-Automation-Only-987654321!"


@pytest.fixture
def codec(clock):
    return TokenCodec(SECRET, issuer="chatguard", audience="chatguard-clients", clock=clock)


@pytest.fixture
def memory_store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def authenticator(memory_store, codec):
    return TokenAuthenticator(memory_store, codec)


def _claims(codec, clock, sub, role=None, /, **overrides):
    payload = {
        "iss": "chatguard",
        "aud": "chatguard-clients",
        "sub": sub,
        "exp": int((clock() + timedelta(hours=1)).timestamp()),
    }
    if role is not None:
        payload["role"] = role
    payload.update(overrides)
    return codec.encode(payload)


class TestParseCredential:
    @pytest.mark.parametrize(
        "raw, kind, role",
        [
            ("U_abc", CredentialKind.USER, "user"),
            ("CS_abc", CredentialKind.CUSTOMER_SERVICE, "customer_service"),
            ("A_abc", CredentialKind.ADMIN, "admin"),
            ("abc", CredentialKind.UNTYPED, "user"),
        ],
    )
    def test_prefix_routing(self, raw, kind, role):
        credential = parse_credential(raw)
        assert credential == Credential(kind=kind, token="abc")
        assert credential.claimed_role == role

    def test_lowercase_prefix_is_not_a_prefix(self):
        credential = parse_credential("cs_abc")
        assert credential.kind is CredentialKind.UNTYPED
        assert credential.token == "cs_abc"

    @pytest.mark.parametrize(
        "header, expected",
        [
            (None, None),
            ("", None),
            ("Basic abc", None),
            ("Bearer ", None),
            ("Bearer abc", "abc"),
            ("bearer CS_abc", "CS_abc"),
        ],
    )
    def test_extract_bearer(self, header, expected):
        assert extract_bearer(header) == expected


class TestTokenCodec:
    def test_issue_round_trips_claims(self, codec):
        credential = codec.issue("agent-1", "customer_service")

        assert credential.startswith("CS_")
        claims = codec.decode(credential[len("CS_"):])
        assert claims["sub"] == "agent-1"
        assert claims["role"] == "customer_service"
        assert claims["aud"] == "chatguard-clients"

    @pytest.mark.parametrize(
        "role, days", [("user", 30), ("customer_service", 7), ("admin", 7)]
    )
    def test_lifetime_per_role(self, codec, clock, role, days):
        credential = codec.issue("p-1", role)
        claims = codec.decode(parse_credential(credential).token)
        assert claims["exp"] - int(clock().timestamp()) == days * 86400

    def test_tampered_signature_rejected(self, codec, clock):
        token = _claims(codec, clock, "u-1", "user")
        header, payload, signature = token.split(".")
        forged = f"{header}.{payload}.{signature[:-2]}xx"

        with pytest.raises(InvalidTokenError):
            codec.decode(forged)

    def test_other_secret_rejected(self, codec, clock):
        other = TokenCodec("another-secret", issuer="chatguard", audience="chatguard-clients", clock=clock)
        with pytest.raises(InvalidTokenError):
            codec.decode(_claims(other, clock, "u-1", "user"))

    def test_expiry_honours_leeway(self, codec, clock):
        token = _claims(codec, clock, "u-1", "user")
        clock.advance(hours=1, seconds=60)
        assert codec.decode(token)["sub"] == "u-1"

        clock.advance(seconds=120)
        with pytest.raises(InvalidTokenError):
            codec.decode(token)

    @pytest.mark.parametrize(
        "overrides", [{"iss": "someone-else"}, {"aud": "other"}, {"exp": None}, {"sub": ""}]
    )
    def test_claim_checks(self, codec, clock, overrides):
        with pytest.raises(InvalidTokenError):
            codec.decode(_claims(codec, clock, "u-1", "user", **overrides))

    def test_audience_list_accepted(self, codec, clock):
        token = _claims(codec, clock, "u-1", "user", aud=["x", "chatguard-clients"])
        assert codec.decode(token)["sub"] == "u-1"

    @pytest.mark.parametrize("token", ["", "abc", "a.b", "a.b.c.d", "!!!.???.###"])
    def test_malformed_rejected(self, codec, token):
        with pytest.raises(InvalidTokenError):
            codec.decode(token)

    def test_non_ascii_signature_rejected(self, codec, clock):
        header, payload, _ = _claims(codec, clock, "u-1", "user").split(".")
        with pytest.raises(InvalidTokenError):
            codec.decode(f"{header}.{payload}.éé")

    async def test_non_ascii_signature_is_invalid_token(self, authenticator, codec, clock):
        header, payload, _ = _claims(codec, clock, "u-1", "user").split(".")
        with pytest.raises(InvalidTokenError):
            await authenticator.authenticate(f"Bearer U_{header}.{payload}.éé")

    def test_non_hs256_header_rejected(self, codec, clock):
        token = _claims(codec, clock, "u-1", "user")
        _, payload, signature = token.split(".")
        header = codec._encode_segment(b'{"alg":"none","typ":"JWT"}')
        with pytest.raises(InvalidTokenError):
            codec.decode(f"{header}.{payload}.{signature}")


class TestAuthenticate:
    async def test_missing_header(self, authenticator):
        with pytest.raises(NoCredentialError):
            await authenticator.authenticate(None)

    async def test_non_bearer_scheme(self, authenticator):
        with pytest.raises(NoCredentialError):
            await authenticator.authenticate("Basic dXNlcjpwYXNz")

    async def test_invalid_token(self, authenticator):
        with pytest.raises(InvalidTokenError):
            await authenticator.authenticate("Bearer U_not-a-token")

    async def test_untyped_user_token_resolves(self, authenticator, memory_store, codec, clock):
        user = memory_store.create_user("13800000001", "Ana")
        token = _claims(codec, clock, user.id, "user")

        principal = await authenticator.authenticate(f"Bearer {token}")

        assert principal.id == user.id
        assert principal.role == "user"
        assert principal.extra["phone_number"] == "13800000001"

    async def test_customer_service_prefix_with_user_claim_mismatches(
        self, authenticator, memory_store, codec, clock
    ):
        user = memory_store.create_user("13800000002")
        token = _claims(codec, clock, user.id, "user")

        with pytest.raises(RoleMismatchError):
            await authenticator.authenticate(f"Bearer CS_{token}")

    async def test_untyped_with_customer_service_claim_mismatches(
        self, authenticator, memory_store, codec, clock
    ):
        agent = memory_store.create_customer_service("13900000001")
        token = _claims(codec, clock, agent.id, "customer_service")

        with pytest.raises(RoleMismatchError):
            await authenticator.authenticate(f"Bearer {token}")

    async def test_missing_role_claim_takes_prefix_role(
        self, authenticator, memory_store, codec, clock
    ):
        agent = memory_store.create_customer_service("13900000002", "Li")
        token = _claims(codec, clock, agent.id)

        principal = await authenticator.authenticate(f"Bearer CS_{token}")

        assert principal.role == "customer_service"
        assert principal.id == agent.id

    async def test_prefix_picks_store(self, authenticator, memory_store, codec, clock):
        user = memory_store.create_user("13800000003")
        token = _claims(codec, clock, user.id)

        # A user id looked up in the agent store is simply not there
        with pytest.raises(PrincipalUnavailableError):
            await authenticator.authenticate(f"Bearer CS_{token}")

    async def test_inactive_principal_unavailable(
        self, authenticator, memory_store, codec, clock
    ):
        user = memory_store.create_user("13800000004", is_active=False)
        token = _claims(codec, clock, user.id, "user")

        with pytest.raises(PrincipalUnavailableError):
            await authenticator.authenticate(f"Bearer U_{token}")

    async def test_unknown_principal_unavailable(self, authenticator, codec, clock):
        token = _claims(codec, clock, "missing-id", "user")
        with pytest.raises(PrincipalUnavailableError):
            await authenticator.authenticate(f"Bearer {token}")

    async def test_admin_trusted_on_id(self, authenticator, codec):
        credential = codec.issue("admin-without-record", "admin")

        principal = await authenticator.authenticate(f"Bearer {credential}")

        assert principal.role == "admin"
        assert principal.user_view.is_admin is True

    async def test_admin_record_check_rejects_disabled_admin(
        self, memory_store, codec
    ):
        admin = memory_store.create_admin("root", is_active=False)
        authenticator = TokenAuthenticator(memory_store, codec, admin_record_check=True)

        with pytest.raises(PrincipalUnavailableError):
            await authenticator.authenticate(f"Bearer {codec.issue(admin.id, 'admin')}")

    async def test_admin_record_check_accepts_active_admin(self, memory_store, codec):
        admin = memory_store.create_admin("root2", "Root")
        authenticator = TokenAuthenticator(memory_store, codec, admin_record_check=True)

        principal = await authenticator.authenticate(
            f"Bearer {codec.issue(admin.id, 'admin')}"
        )
        assert principal.extra["username"] == "root2"


class _AsyncStore:
    def __init__(self, *, delay=0.0, error=None, cancel=False, record=None):
        self.delay = delay
        self.error = error
        self.cancel = cancel
        self.record = record

    async def load_user_by_id(self, user_id):
        await asyncio.sleep(self.delay)
        if self.cancel:
            raise asyncio.CancelledError()
        if self.error:
            raise self.error
        return self.record

    async def load_customer_service_by_id(self, agent_id):
        return None


class TestAsyncLookups:
    async def test_async_loader_resolves(self, codec, clock):
        store = _AsyncStore(record={"id": "u-9", "active": True, "name": "Kai"})
        authenticator = TokenAuthenticator(store, codec)

        principal = await authenticator.authenticate(
            f"Bearer {_claims(codec, clock, 'u-9', 'user')}"
        )

        assert principal.id == "u-9"
        assert principal.extra == {"name": "Kai"}

    async def test_slow_loader_times_out(self, codec, clock):
        store = _AsyncStore(delay=1.0, record={"id": "u-9", "active": True})
        authenticator = TokenAuthenticator(store, codec, lookup_timeout=0.01)

        with pytest.raises(PrincipalUnavailableError):
            await authenticator.authenticate(
                f"Bearer {_claims(codec, clock, 'u-9', 'user')}"
            )

    async def test_cancelled_loader_unavailable(self, codec, clock):
        authenticator = TokenAuthenticator(_AsyncStore(cancel=True), codec)

        with pytest.raises(PrincipalUnavailableError):
            await authenticator.authenticate(
                f"Bearer {_claims(codec, clock, 'u-9', 'user')}"
            )

    async def test_store_failure_surfaces_as_unavailable(self, codec, clock):
        store = _AsyncStore(error=ConnectionError("db down"))
        authenticator = TokenAuthenticator(store, codec)

        with pytest.raises(PrincipalUnavailableError) as excinfo:
            await authenticator.authenticate(
                f"Bearer {_claims(codec, clock, 'u-9', 'user')}"
            )
        assert isinstance(excinfo.value.__cause__, ConnectionError)

    async def test_dict_record_inactive_flag(self, codec, clock):
        store = _AsyncStore(record={"id": "u-9", "active": False})
        authenticator = TokenAuthenticator(store, codec)

        with pytest.raises(PrincipalUnavailableError):
            await authenticator.authenticate(
                f"Bearer {_claims(codec, clock, 'u-9', 'user')}"
            )


class TestUserView:
    def test_customer_service_projection_keeps_role_tag(self):
        principal = Principal(
            id="cs-1",
            role="customer_service",
            extra={
                "name": "Li",
                "phone_number": "139",
                "status": "online",
                "service_stats": {"served": 4},
            },
        )

        view = principal.user_view

        assert view.role == "customer_service"
        assert view.user_type == "customerService"
        assert view.is_admin is False
        assert view.to_dict()["service_stats"] == {"served": 4}

    def test_admin_projection(self):
        view = Principal(id="a-1", role="admin").user_view
        assert view.to_dict() == {
            "id": "a-1",
            "role": "admin",
            "user_type": "admin",
            "is_admin": True,
            "is_active": True,
        }


class TestRoleGuards:
    def test_customer_service_routes_admit_admin(self):
        admin = Principal(id="a-1", role="admin")
        assert ensure_role(admin, "customer_service") is admin

    def test_admin_routes_reject_customer_service(self):
        with pytest.raises(ForbiddenError):
            ensure_role(Principal(id="cs-1", role="customer_service"), "admin")

    def test_customer_service_routes_reject_user(self):
        with pytest.raises(ForbiddenError):
            ensure_role(Principal(id="u-1", role="user"), "customer_service")

    def test_user_routes_admit_everyone(self):
        for role in ("user", "customer_service", "admin"):
            ensure_role(Principal(id="x", role=role), "user")

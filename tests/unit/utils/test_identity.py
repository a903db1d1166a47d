import jwt
import pytest

from support_desk.schemas.models import UserRole
from support_desk.utils.errors import AuthenticationFailure
from support_desk.utils.identity import IdentityVerifier
from support_desk.utils.storage import Database
from support_desk.utils.user_store import UserStore

SECRET = "unit-test-secret"


@pytest.fixture
def users(tmp_path):
    return UserStore(Database(tmp_path / "desk.sqlite"))


@pytest.fixture
def verifier(users):
    return IdentityVerifier(users, secret=SECRET)


def test_issued_token_verifies_to_snapshot(users, verifier):
    user = users.create_user("alice@example.com", full_name="Alice")
    identity = verifier.verify(verifier.issue_token(user))

    assert identity.user_id == user.user_id
    assert identity.name == "Alice"
    assert identity.role == UserRole.customer


@pytest.mark.parametrize("token", [None, "", "   "])
def test_missing_token_fails(verifier, token):
    with pytest.raises(AuthenticationFailure):
        verifier.verify(token)


def test_wrong_signature_fails(users, verifier):
    user = users.create_user("alice@example.com")
    forged = IdentityVerifier(users, secret="other-secret").issue_token(user)
    with pytest.raises(AuthenticationFailure):
        verifier.verify(forged)


def test_expired_token_fails(users, verifier):
    user = users.create_user("alice@example.com")
    token = verifier.issue_token(user, expire_minutes=-1)
    with pytest.raises(AuthenticationFailure) as excinfo:
        verifier.verify(token)
    assert "expired" in excinfo.value.message


def test_unknown_user_fails(verifier):
    token = jwt.encode({"sub": "ghost", "role": "customer"}, SECRET, algorithm="HS256")
    with pytest.raises(AuthenticationFailure):
        verifier.verify(token)


@pytest.mark.parametrize("updates", [{"is_active": False}, {"is_blocked": True}])
def test_inactive_or_blocked_user_fails(users, verifier, updates):
    user = users.create_user("alice@example.com")
    token = verifier.issue_token(user)
    users.update_user(user.user_id, updates)
    with pytest.raises(AuthenticationFailure):
        verifier.verify(token)


def test_role_change_requires_new_token(users, verifier):
    user = users.create_user("bob@example.com", role=UserRole.agent)
    token = verifier.issue_token(user)
    promoted = users.update_user(user.user_id, {"role": UserRole.admin})

    with pytest.raises(AuthenticationFailure):
        verifier.verify(token)
    assert verifier.verify(verifier.issue_token(promoted)).role == UserRole.admin

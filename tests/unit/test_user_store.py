import pytest

from support_desk.schemas.models import UserRole
from support_desk.utils.storage import Database
from support_desk.utils.user_store import UserStore


@pytest.fixture
def users(tmp_path):
    return UserStore(Database(tmp_path / "desk.sqlite"))


def test_create_and_lookup(users):
    user = users.create_user(" Alice@Example.com ", full_name="Alice")

    assert user.email == "alice@example.com"
    assert user.role == UserRole.customer
    assert user.is_active and not user.is_blocked
    assert users.get_user(user.user_id) == user
    assert users.get_user_by_email("ALICE@example.com") == user
    assert user.snapshot().name == "Alice"


def test_display_name_falls_back_to_email(users):
    user = users.create_user("bob@example.com")
    assert user.display_name == "bob@example.com"


def test_duplicate_and_invalid_email(users):
    users.create_user("alice@example.com")
    with pytest.raises(ValueError):
        users.create_user("ALICE@example.com")
    with pytest.raises(ValueError):
        users.create_user("not-an-email")


def test_list_and_update(users):
    users.create_user("a@example.com", role=UserRole.agent)
    customer = users.create_user("c@example.com")

    agents = users.list_users(role=UserRole.agent)
    assert [u.email for u in agents] == ["a@example.com"]

    updated = users.update_user(customer.user_id, {"is_blocked": True, "full_name": "Carol", "role": None})
    assert updated.is_blocked
    assert updated.full_name == "Carol"
    assert updated.role == UserRole.customer
    assert users.update_user("missing", {"is_active": False}) is None

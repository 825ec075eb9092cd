from types import SimpleNamespace

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from auth import UserService, authenticate, hash_password, issue_token, read_token, verify_password
from database import Base
from errors import AuthorizationError
from permissions import (
    ROLE_GRANTS,
    Gate,
    RoleService,
    all_permissions,
    expand_grants,
    policy_for,
    seed_permissions,
)
from schemas import RoleIn, UserIn


def _session() -> Session:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    session = Session(engine)
    seed_permissions(session)
    return session


def _user(session: Session, email: str, *roles: str):
    return UserService(session).create(
        UserIn(name=email.split("@")[0], email=email, password="correct horse", roles=list(roles))
    )


def test_seed_is_idempotent():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    with Session(engine) as session:
        first = seed_permissions(session)
        second = seed_permissions(session)

    assert first == {"permissions": len(all_permissions()), "roles": len(ROLE_GRANTS)}
    assert second == {"permissions": 0, "roles": 0}


def test_expand_grants_keeps_order_and_drops_unknown_wildcards():
    assert expand_grants(["posts.*", "posts.view", "nothing.*"]) == [
        "posts.view",
        "posts.create",
        "posts.edit",
        "posts.delete",
    ]


def test_role_grants():
    with _session() as session:
        admin = _user(session, "root@example.com", "Super Admin")
        editor = _user(session, "editor@example.com", "Editor")
        viewer = _user(session, "viewer@example.com", "Viewer")

        assert Gate.allows(admin, "anything.at.all")
        assert Gate.allows(editor, "posts.delete")
        assert Gate.allows(editor, "orders.edit")
        assert not Gate.allows(editor, "orders.delete")
        assert not Gate.allows(viewer, "posts.create")
        assert not Gate.allows(None, "posts.view")
        with pytest.raises(AuthorizationError):
            Gate.authorize(viewer, "users.view")


def test_policies_map_actions_and_check_ownership():
    with _session() as session:
        owner = _user(session, "owner@example.com", "User")
        other = _user(session, "other@example.com", "User")
        author = _user(session, "author@example.com", "Author")
        account = SimpleNamespace(user_id=owner.id)

        finance = policy_for("finance")
        assert finance.allows(owner, "update", account)
        assert not finance.allows(other, "update", account)
        assert finance.allows(other, "view_any")

        posts = policy_for("posts")
        assert posts.allows(author, "update")
        assert not posts.allows(author, "delete")
        with pytest.raises(AuthorizationError):
            posts.authorize(author, "delete")
        with pytest.raises(ValueError):
            posts.permission("publish")
        with pytest.raises(ValueError):
            policy_for("spaceships")


def test_role_service_guards_super_admin_and_unknown_permissions():
    with _session() as session:
        service = RoleService(session)
        super_admin = service.get_by_name("Super Admin")

        with pytest.raises(ValueError, match="cannot be deleted"):
            service.delete(super_admin.id)
        with pytest.raises(ValueError, match="cannot be renamed"):
            service.update(super_admin.id, RoleIn(name="Boss"))
        with pytest.raises(ValueError, match="already exists"):
            service.create(RoleIn(name="Editor"))
        with pytest.raises(ValueError, match="Unknown permissions"):
            service.create(RoleIn(name="Broken", permissions=["posts.fly"]))

        role = service.create(RoleIn(name="Moderator", permissions=["posts.*", "tags.view"]))
        assert sorted(p.name for p in role.permissions) == [
            "posts.create",
            "posts.delete",
            "posts.edit",
            "posts.view",
            "tags.view",
        ]


def test_user_service_rejects_duplicate_email_and_self_delete():
    with _session() as session:
        admin = _user(session, "root@example.com", "Super Admin")
        manager = _user(session, "manager@example.com", "Admin")
        service = UserService(session)

        with pytest.raises(ValueError, match="already taken"):
            _user(session, "ROOT@example.com")
        with pytest.raises(AuthorizationError):
            service.delete(admin, admin.id)
        with pytest.raises(AuthorizationError):
            service.delete(manager, admin.id)
        service.delete(admin, manager.id)
        assert [u.email for u in service.list()] == ["root@example.com"]


def test_passwords_and_tokens():
    with _session() as session:
        user = _user(session, "owner@example.com")
        hashed = hash_password("s3cret-pass")

        assert verify_password("s3cret-pass", hashed)
        assert not verify_password("wrong", hashed)
        assert not verify_password("anything", "not-a-hash")
        assert authenticate(session, " Owner@Example.com ", "correct horse").id == user.id
        assert authenticate(session, "owner@example.com", "wrong horse") is None

        token = issue_token(user.id)
        assert read_token(token) == user.id
        assert read_token(token + "x") is None
        assert read_token(issue_token(user.id, max_age_hours=-1)) is None

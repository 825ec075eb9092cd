from __future__ import annotations

import logging
from typing import Iterable, Optional, Union

from sqlalchemy import select
from sqlalchemy.orm import Session

from errors import AuthorizationError, NotFoundError
from models import Permission, Role, User
from schemas import RoleIn


logger = logging.getLogger(__name__)

SUPER_ADMIN = "Super Admin"

ACTIONS = ("view", "create", "edit", "delete")

RESOURCES = (
    # blog
    "posts",
    "categories",
    "tags",
    # ecommerce
    "products",
    "product-categories",
    "product-tags",
    "orders",
    # users and access
    "users",
    "roles",
    "permissions",
    # finance, invoice, notification, settings
    "finance",
    "invoices",
    "notifications.templates",
    "notifications.send",
    "settings",
)

ROLE_GRANTS: dict[str, Union[str, list[str]]] = {
    SUPER_ADMIN: "*",
    "Admin": [
        "posts.*", "categories.*", "tags.*",
        "products.*", "product-categories.*", "product-tags.*", "orders.*",
        "users.*", "roles.*", "permissions.*",
        "finance.*", "invoices.*",
        "notifications.templates.*", "notifications.send.*",
        "settings.*",
    ],
    "Editor": [
        "posts.*", "categories.*", "tags.*",
        "products.*", "product-categories.*", "product-tags.*",
        "orders.view", "orders.edit",
    ],
    "Author": [
        "posts.view", "posts.create", "posts.edit",
        "categories.view", "tags.view",
        "products.view", "products.create", "products.edit",
        "product-categories.view", "product-tags.view",
    ],
    "Viewer": [
        "posts.view", "categories.view", "tags.view",
        "products.view", "product-categories.view", "product-tags.view",
        "orders.view",
    ],
    "User": ["finance.*", "invoices.*", "settings.view", "settings.edit"],
}


def all_permissions() -> list[str]:
    return [f"{resource}.{action}" for resource in RESOURCES for action in ACTIONS]


def expand_grants(grants: Iterable[str]) -> list[str]:
    """Expand ``resource.*`` entries into one name per action, keeping order."""
    expanded: list[str] = []
    for grant in grants:
        if grant.endswith(".*"):
            resource = grant[:-2]
            if resource in RESOURCES:
                expanded.extend(f"{resource}.{action}" for action in ACTIONS)
        else:
            expanded.append(grant)
    return list(dict.fromkeys(expanded))


def _permission_rows(session: Session, names: Iterable[str]) -> list[Permission]:
    names = list(names)
    if not names:
        return []
    rows = session.scalars(select(Permission).where(Permission.name.in_(names))).all()
    found = {row.name for row in rows}
    unknown = sorted(set(names) - found)
    if unknown:
        raise ValueError(f"Unknown permissions: {', '.join(unknown)}")
    return list(rows)


def seed_permissions(session: Session) -> dict[str, int]:
    existing = set(session.scalars(select(Permission.name)))
    created = 0
    for name in all_permissions():
        if name not in existing:
            session.add(Permission(name=name))
            created += 1
    session.flush()

    roles_created = 0
    for role_name, grants in ROLE_GRANTS.items():
        role = session.scalar(select(Role).where(Role.name == role_name))
        if role is None:
            role = Role(name=role_name)
            session.add(role)
            roles_created += 1
        if grants == "*":
            # Super Admin passes every check in Gate.allows
            continue
        role.permissions = _permission_rows(session, expand_grants(grants))
    session.commit()
    logger.info(f"seed_permissions: permissions_created={created} roles_created={roles_created}")
    return {"permissions": created, "roles": roles_created}


class Gate:
    @staticmethod
    def permissions_for(user: User) -> set[str]:
        return {perm.name for role in user.roles for perm in role.permissions}

    @classmethod
    def allows(cls, user: Optional[User], permission: str) -> bool:
        if user is None:
            return False
        if user.has_role(SUPER_ADMIN):
            return True
        return permission in cls.permissions_for(user)

    @classmethod
    def authorize(cls, user: Optional[User], permission: str) -> None:
        if not cls.allows(user, permission):
            raise AuthorizationError("This action is unauthorized.")


POLICY_ACTIONS = {
    "view_any": "view",
    "view": "view",
    "create": "create",
    "update": "edit",
    "delete": "delete",
}


class Policy:
    def __init__(self, resource: str, owner_scoped: bool = False) -> None:
        self.resource = resource
        self.owner_scoped = owner_scoped

    def permission(self, action: str) -> str:
        try:
            return f"{self.resource}.{POLICY_ACTIONS[action]}"
        except KeyError:
            raise ValueError(f"Unknown policy action {action}") from None

    def allows(self, user: Optional[User], action: str, record: object = None) -> bool:
        if not Gate.allows(user, self.permission(action)):
            return False
        if self.owner_scoped and record is not None:
            return getattr(record, "user_id", None) == user.id
        return True

    def authorize(self, user: Optional[User], action: str, record: object = None) -> None:
        if not self.allows(user, action, record):
            raise AuthorizationError("This action is unauthorized.")


POLICIES = {
    "posts": Policy("posts"),
    "blog_categories": Policy("categories"),
    "blog_tags": Policy("tags"),
    "products": Policy("products"),
    "product_categories": Policy("product-categories"),
    "product_tags": Policy("product-tags"),
    "orders": Policy("orders"),
    "users": Policy("users"),
    "roles": Policy("roles"),
    "finance": Policy("finance", owner_scoped=True),
    "invoices": Policy("invoices", owner_scoped=True),
    "notification_templates": Policy("notifications.templates"),
    "notifications_send": Policy("notifications.send"),
    "settings": Policy("settings"),
}


def policy_for(name: str) -> Policy:
    try:
        return POLICIES[name]
    except KeyError:
        raise ValueError(f"No policy registered for {name}") from None


class RoleService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def list(self) -> list[Role]:
        return list(self.session.scalars(select(Role).order_by(Role.name)))

    def get(self, role_id: int) -> Role:
        role = self.session.get(Role, role_id)
        if role is None:
            raise NotFoundError("Role not found")
        return role

    def get_by_name(self, name: str) -> Role:
        role = self.session.scalar(select(Role).where(Role.name == name))
        if role is None:
            raise NotFoundError(f"Role {name} not found")
        return role

    def _check_name(self, name: str, exclude_id: Optional[int] = None) -> str:
        name = name.strip()
        stmt = select(Role.id).where(Role.name == name)
        if exclude_id is not None:
            stmt = stmt.where(Role.id != exclude_id)
        if self.session.execute(stmt).first():
            raise ValueError("Role with this name already exists")
        return name

    def create(self, data: RoleIn) -> Role:
        role = Role(name=self._check_name(data.name))
        role.permissions = _permission_rows(self.session, expand_grants(data.permissions))
        self.session.add(role)
        self.session.commit()
        return role

    def update(self, role_id: int, data: RoleIn) -> Role:
        role = self.get(role_id)
        name = self._check_name(data.name, exclude_id=role.id)
        if role.name == SUPER_ADMIN and name != SUPER_ADMIN:
            raise ValueError("The Super Admin role cannot be renamed")
        role.name = name
        role.permissions = _permission_rows(self.session, expand_grants(data.permissions))
        self.session.commit()
        return role

    def delete(self, role_id: int) -> None:
        role = self.get(role_id)
        if role.name == SUPER_ADMIN:
            raise ValueError("The Super Admin role cannot be deleted")
        self.session.delete(role)
        self.session.commit()

    def assign(self, user: User, role_names: Iterable[str]) -> User:
        user.roles = [self.get_by_name(name) for name in dict.fromkeys(role_names)]
        self.session.commit()
        return user

from __future__ import annotations

import logging
import time
from typing import Optional

import bcrypt
from itsdangerous import BadSignature, URLSafeSerializer
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from config import get_settings
from errors import AuthorizationError, NotFoundError
from models import User
from permissions import SUPER_ADMIN, RoleService
from schemas import ProfileIn, UserIn


logger = logging.getLogger(__name__)


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        return False


def _serializer() -> URLSafeSerializer:
    settings = get_settings()
    return URLSafeSerializer(settings.secret_key, salt="api-token")


def issue_token(user_id: int, max_age_hours: Optional[int] = None) -> str:
    if max_age_hours is None:
        max_age_hours = get_settings().token_max_age_hours
    timestamp = int(time.time())
    token_data = {"u": user_id, "ts": timestamp, "exp": timestamp + max_age_hours * 3600}
    return _serializer().dumps(token_data)


def read_token(token: str) -> Optional[int]:
    """Return the user id carried by a valid, unexpired token."""
    try:
        data = _serializer().loads(token)
    except BadSignature:
        return None
    if not isinstance(data, dict) or int(time.time()) > data.get("exp", 0):
        return None
    return data.get("u")


def authenticate(session: Session, email: str, password: str) -> Optional[User]:
    user = session.scalar(select(User).where(func.lower(User.email) == email.strip().lower()))
    if user is None or not verify_password(password, user.password_hash):
        logger.warning(f"login_failed: email={email.strip().lower()}")
        return None
    return user


def user_from_token(session: Session, token: str) -> Optional[User]:
    user_id = read_token(token)
    if user_id is None:
        return None
    return session.get(User, user_id)


class UserService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def get(self, user_id: int) -> User:
        user = self.session.get(User, user_id)
        if user is None:
            raise NotFoundError("User not found")
        return user

    def list(self) -> list[User]:
        return list(self.session.scalars(select(User).order_by(User.name)))

    def _check_email(self, email: str, exclude_id: Optional[int] = None) -> str:
        email = email.strip().lower()
        stmt = select(User.id).where(func.lower(User.email) == email)
        if exclude_id is not None:
            stmt = stmt.where(User.id != exclude_id)
        if self.session.execute(stmt).first():
            raise ValueError("Email is already taken")
        return email

    def create(self, data: UserIn) -> User:
        user = User(
            name=data.name.strip(),
            email=self._check_email(data.email),
            password_hash=hash_password(data.password),
        )
        self.session.add(user)
        self.session.flush()
        RoleService(self.session).assign(user, data.roles)
        return user

    def update(self, user_id: int, data: UserIn) -> User:
        user = self.get(user_id)
        user.name = data.name.strip()
        user.email = self._check_email(data.email, exclude_id=user.id)
        user.password_hash = hash_password(data.password)
        RoleService(self.session).assign(user, data.roles)
        return user

    def update_profile(self, user: User, data: ProfileIn) -> User:
        user.name = data.name.strip()
        user.email = self._check_email(data.email, exclude_id=user.id)
        user.language = data.language
        self.session.commit()
        return user

    def delete(self, actor: User, user_id: int) -> None:
        user = self.get(user_id)
        if user.id == actor.id:
            raise AuthorizationError("You cannot delete your own account.")
        if user.has_role(SUPER_ADMIN) and not actor.has_role(SUPER_ADMIN):
            raise AuthorizationError("Only a Super Admin can delete a Super Admin.")
        self.session.delete(user)
        self.session.commit()

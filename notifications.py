from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Optional, Protocol

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from errors import NotFoundError
from models import (
    DeliveryStatus,
    Notification,
    NotificationCategory,
    NotificationChannel,
    NotificationDelivery,
    NotificationPreference,
    NotificationTemplate,
    Role,
    User,
)
from schemas import NotificationTemplateIn, Recipients
from slugs import unique_slug


__all__ = [
    "NotificationCategory",
    "NotificationChannel",
    "GenericNotification",
    "NotificationService",
    "NotificationInbox",
    "NotificationTemplateService",
    "can_receive",
]

logger = logging.getLogger(__name__)


def _value(enum_or_str) -> str:
    return getattr(enum_or_str, "value", enum_or_str)


def can_receive(session: Session, user: User, category, channel) -> bool:
    category = NotificationCategory(_value(category))
    if category == NotificationCategory.security:
        return True
    enabled = session.scalar(
        select(NotificationPreference.enabled).where(
            NotificationPreference.user_id == user.id,
            NotificationPreference.category == category.value,
            NotificationPreference.channel == _value(channel),
        )
    )
    return True if enabled is None else bool(enabled)


@dataclass
class GenericNotification:
    title: str
    message: str
    category: NotificationCategory
    channels: list[NotificationChannel] = field(
        default_factory=lambda: [NotificationChannel.database]
    )
    action_url: Optional[str] = None
    action_label: Optional[str] = None
    icon: Optional[str] = None
    data: dict = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.category = NotificationCategory(_value(self.category))
        self.channels = [NotificationChannel(_value(c)) for c in self.channels]
        if self.icon is None:
            self.icon = self.category.icon

    @classmethod
    def from_template(
        cls,
        template: NotificationTemplate,
        variables: Optional[dict] = None,
        action_url: Optional[str] = None,
        action_label: Optional[str] = None,
    ) -> "GenericNotification":
        rendered = template.render(variables)
        return cls(
            title=rendered["subject"],
            message=rendered["body"],
            category=NotificationCategory(template.category),
            channels=list(template.channels or []),
            action_url=action_url,
            action_label=action_label,
            data=dict(variables or {}),
        )

    def via(self, session: Session, user: User) -> list[NotificationChannel]:
        return [c for c in self.channels if can_receive(session, user, self.category, c)]

    def to_dict(self) -> dict[str, object]:
        return {
            "title": self.title,
            "message": self.message,
            "category": self.category.value,
            "icon": self.icon,
            "action_url": self.action_url,
            "action_label": self.action_label,
            "data": self.data,
        }


class Driver(Protocol):
    def send(self, session: Session, user: User, notification: GenericNotification) -> None: ...


class DatabaseDriver:
    def send(self, session: Session, user: User, notification: GenericNotification) -> None:
        session.add(
            Notification(
                user_id=user.id,
                category=notification.category.value,
                title=notification.title,
                message=notification.message,
                icon=notification.icon,
                action_url=notification.action_url,
                action_label=notification.action_label,
                data=notification.data or None,
            )
        )


class OutboxDriver:
    """Records the outgoing message; delivery to the provider happens outside the app."""

    def __init__(self, channel: NotificationChannel) -> None:
        self.channel = channel

    def recipient(self, user: User) -> Optional[str]:
        return user.email if self.channel == NotificationChannel.email else None

    def send(self, session: Session, user: User, notification: GenericNotification) -> None:
        body = notification.message
        if notification.action_url and notification.action_label:
            body = f"{body}\n\n{notification.action_label}: {notification.action_url}"
        session.add(
            NotificationDelivery(
                user_id=user.id,
                channel=self.channel.value,
                driver=self.channel.driver,
                recipient=self.recipient(user),
                subject=notification.title,
                body=body,
                status=DeliveryStatus.sent,
            )
        )


DRIVERS: dict[str, Driver] = {
    "database": DatabaseDriver(),
    "mail": OutboxDriver(NotificationChannel.email),
    "vonage": OutboxDriver(NotificationChannel.sms),
    "fcm": OutboxDriver(NotificationChannel.push),
}


@dataclass
class DispatchResult:
    recipients: int = 0
    sent: int = 0
    failed: int = 0
    errors: list[str] = field(default_factory=list)


class NotificationService:
    def __init__(self, session: Session, drivers: Optional[dict[str, Driver]] = None) -> None:
        self.session = session
        self.drivers = drivers if drivers is not None else DRIVERS

    def _dispatch(self, users: Iterable[User], notification: GenericNotification) -> DispatchResult:
        result = DispatchResult()
        for user in users:
            result.recipients += 1
            for channel in notification.via(self.session, user):
                driver = self.drivers[channel.driver]
                try:
                    driver.send(self.session, user, notification)
                    self.session.flush()
                except Exception as exc:
                    self.session.rollback()
                    result.failed += 1
                    result.errors.append(f"user {user.id} via {channel.value}: {exc}")
                    logger.warning(
                        f"notification_failed: user_id={user.id} channel={channel.value} "
                        f"driver={channel.driver} error={exc}"
                    )
                    self.session.add(
                        NotificationDelivery(
                            user_id=user.id,
                            channel=channel.value,
                            driver=channel.driver,
                            subject=notification.title,
                            body=notification.message,
                            status=DeliveryStatus.failed,
                            error=str(exc),
                        )
                    )
                    self.session.commit()
                    continue
                self.session.commit()
                result.sent += 1
        logger.info(
            f"notification_dispatched: category={notification.category.value} "
            f"recipients={result.recipients} sent={result.sent} failed={result.failed}"
        )
        return result

    def send_to_user(self, user: User, notification: GenericNotification) -> DispatchResult:
        return self._dispatch([user], notification)

    def send_to_users(
        self, users: Iterable[User], notification: GenericNotification
    ) -> DispatchResult:
        return self._dispatch(list(users), notification)

    def send_to_role(self, role: str, notification: GenericNotification) -> DispatchResult:
        role_row = self.session.scalar(select(Role).where(Role.name == role))
        if role_row is None:
            raise NotFoundError(f"Role {role} not found")
        return self._dispatch(list(role_row.users), notification)

    def broadcast(self, notification: GenericNotification) -> DispatchResult:
        users = self.session.scalars(select(User).order_by(User.id)).all()
        return self._dispatch(users, notification)

    def send(self, recipients: Recipients, notification: GenericNotification) -> DispatchResult:
        if recipients.target == "all":
            return self.broadcast(notification)
        if recipients.target == "role":
            return self.send_to_role(recipients.role, notification)
        users = self.session.scalars(select(User).where(User.id.in_(recipients.user_ids))).all()
        if len(users) != len(set(recipients.user_ids)):
            raise NotFoundError("User not found")
        return self.send_to_users(users, notification)

    def send_from_template(
        self,
        template: NotificationTemplate,
        recipients: Recipients,
        variables: Optional[dict] = None,
        action_url: Optional[str] = None,
        action_label: Optional[str] = None,
    ) -> DispatchResult:
        notification = GenericNotification.from_template(
            template, variables, action_url=action_url, action_label=action_label
        )
        return self.send(recipients, notification)

    def send_from_template_by_slug(
        self,
        slug: str,
        recipients: Recipients,
        variables: Optional[dict] = None,
        action_url: Optional[str] = None,
        action_label: Optional[str] = None,
    ) -> DispatchResult:
        template = NotificationTemplateService(self.session).get_by_slug(slug, active_only=True)
        return self.send_from_template(template, recipients, variables, action_url, action_label)


class NotificationInbox:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def list(
        self, *, unread_only: bool = False, category: Optional[str] = None, limit: int = 20, offset: int = 0
    ) -> tuple[list[Notification], int]:
        stmt = select(Notification).where(Notification.user_id == self.user_id)
        if unread_only:
            stmt = stmt.where(Notification.read_at.is_(None))
        if category:
            stmt = stmt.where(Notification.category == NotificationCategory(category).value)
        total = self.session.scalar(select(func.count()).select_from(stmt.subquery())) or 0
        stmt = stmt.order_by(Notification.created_at.desc(), Notification.id.desc())
        return list(self.session.scalars(stmt.limit(limit).offset(offset))), int(total)

    def unread_count(self) -> int:
        return int(
            self.session.scalar(
                select(func.count(Notification.id)).where(
                    Notification.user_id == self.user_id, Notification.read_at.is_(None)
                )
            )
            or 0
        )

    def _get(self, notification_id: int) -> Notification:
        notification = self.session.get(Notification, notification_id)
        if notification is None or notification.user_id != self.user_id:
            raise NotFoundError("Notification not found")
        return notification

    def mark_as_read(self, notification_id: int) -> Notification:
        notification = self._get(notification_id)
        if notification.read_at is None:
            notification.read_at = datetime.utcnow()
            self.session.commit()
        return notification

    def mark_all_as_read(self) -> int:
        result = self.session.execute(
            update(Notification)
            .where(Notification.user_id == self.user_id, Notification.read_at.is_(None))
            .values(read_at=datetime.utcnow())
        )
        self.session.commit()
        return result.rowcount

    def delete(self, notification_id: int) -> None:
        self.session.delete(self._get(notification_id))
        self.session.commit()

    def set_preference(self, category, channel, enabled: bool) -> NotificationPreference:
        category = NotificationCategory(_value(category))
        channel = NotificationChannel(_value(channel))
        pref = self.session.scalar(
            select(NotificationPreference).where(
                NotificationPreference.user_id == self.user_id,
                NotificationPreference.category == category.value,
                NotificationPreference.channel == channel.value,
            )
        )
        if pref is None:
            pref = NotificationPreference(
                user_id=self.user_id, category=category.value, channel=channel.value
            )
            self.session.add(pref)
        pref.enabled = enabled
        self.session.commit()
        return pref

    def preferences_matrix(self) -> list[dict[str, object]]:
        stored = {
            (pref.category, pref.channel): pref.enabled
            for pref in self.session.scalars(
                select(NotificationPreference).where(
                    NotificationPreference.user_id == self.user_id
                )
            )
        }
        matrix = []
        for category in NotificationCategory:
            always = category == NotificationCategory.security
            matrix.append(
                {
                    "category": category.value,
                    "label": category.label,
                    "description": category.description,
                    "icon": category.icon,
                    "locked": always,
                    "channels": {
                        channel.value: True
                        if always
                        else stored.get((category.value, channel.value), True)
                        for channel in NotificationChannel
                    },
                }
            )
        return matrix


class NotificationTemplateService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def list(
        self, category: Optional[str] = None, active_only: bool = False
    ) -> list[NotificationTemplate]:
        stmt = select(NotificationTemplate).where(NotificationTemplate.deleted_at.is_(None))
        if category:
            stmt = stmt.where(
                NotificationTemplate.category == NotificationCategory(category).value
            )
        if active_only:
            stmt = stmt.where(NotificationTemplate.is_active.is_(True))
        return list(self.session.scalars(stmt.order_by(NotificationTemplate.name)))

    def get(self, template_id: int) -> NotificationTemplate:
        template = self.session.get(NotificationTemplate, template_id)
        if template is None or template.is_deleted:
            raise NotFoundError("Notification template not found")
        return template

    def get_by_slug(self, slug: str, active_only: bool = False) -> NotificationTemplate:
        stmt = select(NotificationTemplate).where(
            NotificationTemplate.slug == slug, NotificationTemplate.deleted_at.is_(None)
        )
        if active_only:
            stmt = stmt.where(NotificationTemplate.is_active.is_(True))
        template = self.session.scalar(stmt)
        if template is None:
            raise NotFoundError("Notification template not found")
        return template

    def create(self, data: NotificationTemplateIn) -> NotificationTemplate:
        template = NotificationTemplate(
            name=data.name.strip(),
            slug=unique_slug(self.session, NotificationTemplate, data.name),
            subject=data.subject,
            body=data.body,
            category=data.category.value,
            channels=[c.value for c in dict.fromkeys(data.channels)],
            variables=list(data.variables),
            is_active=data.is_active,
            version=1,
        )
        self.session.add(template)
        self.session.commit()
        return template

    def update(self, template_id: int, data: NotificationTemplateIn) -> NotificationTemplate:
        template = self.get(template_id)
        if data.subject != template.subject or data.body != template.body:
            template.version += 1
        template.name = data.name.strip()
        template.subject = data.subject
        template.body = data.body
        template.category = data.category.value
        template.channels = [c.value for c in dict.fromkeys(data.channels)]
        template.variables = list(data.variables)
        template.is_active = data.is_active
        self.session.commit()
        return template

    def delete(self, template_id: int) -> None:
        template = self.get(template_id)
        template.deleted_at = datetime.utcnow()
        self.session.commit()

    def preview(self, template_id: int, variables: Optional[dict] = None) -> dict[str, str]:
        return self.get(template_id).render(variables)

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session

from database import Base
from errors import NotFoundError
from models import (
    DeliveryStatus,
    Notification,
    NotificationCategory,
    NotificationChannel,
    NotificationDelivery,
    User,
)
from notifications import (
    DRIVERS,
    GenericNotification,
    NotificationInbox,
    NotificationService,
    NotificationTemplateService,
)
from permissions import RoleService, seed_permissions
from schemas import NotificationTemplateIn, Recipients


def _session() -> Session:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    return Session(engine)


def _users(session: Session, count: int = 2) -> list[User]:
    users = [
        User(name=f"User {i}", email=f"user{i}@example.com", password_hash="x")
        for i in range(1, count + 1)
    ]
    session.add_all(users)
    session.commit()
    return users


def _template_in(**overrides) -> NotificationTemplateIn:
    values = dict(
        name="Order Shipped",
        subject="Order {{ order_number }} shipped",
        body="Hi {{name}}, your order {{ order_number }} is on its way. {{ missing }}",
        category=NotificationCategory.transactional,
        channels=[NotificationChannel.database, NotificationChannel.email],
        variables=["order_number", "name"],
    )
    values.update(overrides)
    return NotificationTemplateIn(**values)


def test_template_slugs_are_unique_and_stable():
    with _session() as session:
        service = NotificationTemplateService(session)
        first = service.create(_template_in())
        second = service.create(_template_in())

        assert first.slug == "order-shipped"
        assert second.slug == "order-shipped-1"

        updated = service.update(first.id, _template_in(name="Renamed", body="New body"))
        assert updated.slug == "order-shipped"
        assert updated.version == 2
        assert service.update(first.id, _template_in(name="Renamed again", body="New body")).version == 2


def test_template_render_keeps_unknown_placeholders():
    with _session() as session:
        template = NotificationTemplateService(session).create(_template_in())

        rendered = template.render({"order_number": "ORD-1", "name": "Ada"})

        assert rendered["subject"] == "Order ORD-1 shipped"
        assert rendered["body"] == "Hi Ada, your order ORD-1 is on its way. {{ missing }}"


def test_send_respects_channel_preferences():
    with _session() as session:
        user, _ = _users(session)
        NotificationInbox(session, user.id).set_preference(
            NotificationCategory.marketing, NotificationChannel.email, False
        )
        notification = GenericNotification(
            title="Spring sale",
            message="Everything is 20% off",
            category=NotificationCategory.marketing,
            channels=[NotificationChannel.database, NotificationChannel.email],
        )

        result = NotificationService(session).send_to_user(user, notification)

        assert (result.recipients, result.sent, result.failed) == (1, 1, 0)
        assert session.scalars(select(NotificationDelivery)).all() == []
        stored = session.scalars(select(Notification)).one()
        assert stored.icon == "megaphone"


def test_security_notifications_ignore_opt_outs():
    with _session() as session:
        user, _ = _users(session)
        inbox = NotificationInbox(session, user.id)
        inbox.set_preference("security", "email", False)
        notification = GenericNotification(
            title="New login",
            message="A new device signed in",
            category="security",
            channels=["database", "email"],
            action_url="https://example.com/sessions",
            action_label="Review",
        )

        result = NotificationService(session).send_to_user(user, notification)

        assert result.sent == 2
        delivery = session.scalars(select(NotificationDelivery)).one()
        assert delivery.recipient == user.email
        assert delivery.driver == "mail"
        assert delivery.body.endswith("Review: https://example.com/sessions")
        matrix = {row["category"]: row for row in inbox.preferences_matrix()}
        assert matrix["security"]["locked"] is True
        assert matrix["security"]["channels"]["email"] is True


def test_failing_driver_is_recorded_and_others_still_deliver():
    class ExplodingDriver:
        def send(self, session, user, notification):
            raise RuntimeError("provider down")

    with _session() as session:
        user, _ = _users(session)
        drivers = dict(DRIVERS, mail=ExplodingDriver())
        notification = GenericNotification(
            title="Invoice paid",
            message="Thanks",
            category=NotificationCategory.transactional,
            channels=[NotificationChannel.database, NotificationChannel.email],
        )

        result = NotificationService(session, drivers=drivers).send_to_user(user, notification)

        assert (result.sent, result.failed) == (1, 1)
        assert result.errors == [f"user {user.id} via email: provider down"]
        failed = session.scalars(select(NotificationDelivery)).one()
        assert failed.status == DeliveryStatus.failed
        assert failed.error == "provider down"
        assert NotificationInbox(session, user.id).unread_count() == 1


def test_send_to_role_and_unknown_recipients():
    with _session() as session:
        seed_permissions(session)
        editor, viewer = _users(session)
        RoleService(session).assign(editor, ["Editor"])
        RoleService(session).assign(viewer, ["Viewer"])
        service = NotificationService(session)
        notification = GenericNotification(
            title="Style guide updated",
            message="Please review",
            category=NotificationCategory.communication,
        )

        result = service.send(Recipients(target="role", role="Editor"), notification)

        assert result.recipients == 1
        assert NotificationInbox(session, editor.id).unread_count() == 1
        assert NotificationInbox(session, viewer.id).unread_count() == 0
        with pytest.raises(NotFoundError):
            service.send(Recipients(target="role", role="Nobody"), notification)
        with pytest.raises(NotFoundError):
            service.send(Recipients(user_ids=[editor.id, 999]), notification)


def test_send_from_template_by_slug_requires_active_template():
    with _session() as session:
        user, other = _users(session)
        templates = NotificationTemplateService(session)
        templates.create(_template_in())
        templates.create(_template_in(name="Old template", is_active=False))
        service = NotificationService(session)

        result = service.send_from_template_by_slug(
            "order-shipped",
            Recipients(target="all"),
            {"order_number": "ORD-7", "name": "friend"},
        )

        assert result.recipients == 2
        items, total = NotificationInbox(session, other.id).list()
        assert total == 1
        assert items[0].title == "Order ORD-7 shipped"
        assert items[0].data == {"order_number": "ORD-7", "name": "friend"}
        with pytest.raises(NotFoundError):
            service.send_from_template_by_slug("old-template", Recipients(target="all"))


def test_inbox_read_and_delete_are_scoped():
    with _session() as session:
        user, other = _users(session)
        service = NotificationService(session)
        for title in ("One", "Two", "Three"):
            service.send_to_user(
                user, GenericNotification(title=title, message="x", category="system")
            )
        inbox = NotificationInbox(session, user.id)
        items, _ = inbox.list()
        assert [n.title for n in items] == ["Three", "Two", "One"]

        inbox.mark_as_read(items[0].id)
        assert inbox.unread_count() == 2
        assert [n.title for n in inbox.list(unread_only=True)[0]] == ["Two", "One"]
        assert inbox.mark_all_as_read() == 2
        assert inbox.unread_count() == 0

        with pytest.raises(NotFoundError):
            NotificationInbox(session, other.id).delete(items[0].id)
        inbox.delete(items[0].id)
        assert inbox.list()[1] == 2

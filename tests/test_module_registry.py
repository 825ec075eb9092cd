from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from auth import UserService
from database import Base
from errors import AuthorizationError, CoreModuleError, NotFoundError
from module_registry import ModuleRegistry, SettingsService, find_module
from permissions import seed_permissions
from schemas import FinanceSettingsIn, InvoiceSettingsIn, ProfileIn, UserIn
from services import default_currency_code, seed_currencies


def _session() -> Session:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    session = Session(engine)
    seed_permissions(session)
    seed_currencies(session, "USD")
    return session


def _user(session: Session, email: str, *roles: str):
    return UserService(session).create(
        UserIn(name="Someone", email=email, password="password123", roles=list(roles))
    )


def test_find_module_is_case_insensitive():
    assert find_module(" blog ").name == "Blog"
    with pytest.raises(NotFoundError):
        find_module("Forum")


def test_toggle_flips_state_and_protects_core_module():
    with _session() as session:
        admin = _user(session, "root@example.com", "Super Admin")
        registry = ModuleRegistry(session)

        assert registry.is_enabled("Blog")
        assert registry.toggle(admin, "blog") is False
        assert not registry.is_enabled("Blog")
        assert registry.toggle(admin, "Blog") is True

        with pytest.raises(CoreModuleError):
            registry.toggle(admin, "Permission")
        assert registry.is_enabled("permission")


def test_only_super_admin_manages_modules():
    with _session() as session:
        manager = _user(session, "manager@example.com", "Admin")
        registry = ModuleRegistry(session)

        with pytest.raises(AuthorizationError):
            registry.toggle(manager, "Blog")
        with pytest.raises(AuthorizationError):
            registry.list_modules(manager)


def test_list_modules_sorted_by_priority_with_state():
    with _session() as session:
        admin = _user(session, "root@example.com", "Super Admin")
        registry = ModuleRegistry(session)
        registry.toggle(admin, "Invoice")

        modules = registry.list_modules(admin)

        assert [m["name"] for m in modules] == [
            "Blog",
            "Ecommerce",
            "Finance",
            "Invoice",
            "Notification",
            "Permission",
            "Settings",
        ]
        flags = {m["name"]: (m["enabled"], m["is_core"]) for m in modules}
        assert flags["Invoice"] == (False, False)
        assert flags["Permission"] == (True, True)


def test_reorder_is_stored_on_the_user():
    with _session() as session:
        admin = _user(session, "root@example.com", "Super Admin")

        order = ModuleRegistry(session).reorder(admin, ["finance", "blog"])

        assert order == ["Finance", "Blog"]
        assert admin.sidebar_settings == {"module_order": ["Finance", "Blog"]}
        with pytest.raises(NotFoundError):
            ModuleRegistry(session).reorder(admin, ["finance", "forum"])


def test_settings_service_updates_profile_and_preferences():
    with _session() as session:
        user = _user(session, "owner@example.com", "User")
        _user(session, "taken@example.com")
        settings = SettingsService(session, user)

        settings.update_profile(ProfileIn(name="Owner", email="Owner@Example.com", language="vi"))
        assert (user.name, user.email, user.language) == ("Owner", "owner@example.com", "vi")
        with pytest.raises(ValueError, match="already taken"):
            settings.update_profile(ProfileIn(name="Owner", email="taken@example.com"))

        assert settings.update_finance_settings(FinanceSettingsIn(default_currency="eur")) == {
            "default_currency": "EUR"
        }
        assert default_currency_code(session, user) == "EUR"
        with pytest.raises(ValueError, match="Unknown currency"):
            settings.update_finance_settings(FinanceSettingsIn(default_currency="XYZ"))

        stored = settings.update_invoice_settings(
            InvoiceSettingsIn(from_name="Acme", tax_rate=Decimal("0.08"))
        )
        assert stored["from_name"] == "Acme"
        assert stored["tax_rate"] == "0.08"

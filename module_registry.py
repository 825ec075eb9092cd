import logging
from dataclasses import dataclass, field
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from errors import AuthorizationError, CoreModuleError, UnknownModuleError
from models import Currency, ModuleState, User
from permissions import SUPER_ADMIN
from schemas import FinanceSettingsIn, InvoiceSettingsIn, ProfileIn


logger = logging.getLogger(__name__)

CORE_MODULE = "Permission"


@dataclass(frozen=True)
class ModuleInfo:
    name: str
    alias: str
    description: str
    priority: int
    keywords: list[str] = field(default_factory=list)


MODULES = (
    ModuleInfo("Blog", "blog", "Posts, categories and tags", 10, ["posts", "content"]),
    ModuleInfo(
        "Ecommerce", "ecommerce", "Products, catalog and orders", 20, ["shop", "orders"]
    ),
    ModuleInfo(
        "Finance",
        "finance",
        "Accounts, transactions, budgets and savings goals",
        30,
        ["money", "budget", "currency"],
    ),
    ModuleInfo("Invoice", "invoice", "Invoices with PDF export", 40, ["billing"]),
    ModuleInfo(
        "Notification",
        "notification",
        "In-app, email, SMS and push notifications",
        50,
        ["alerts", "messages"],
    ),
    ModuleInfo("Permission", "permission", "Users, roles and permissions", 60, ["acl"]),
    ModuleInfo("Settings", "settings", "Profile, modules and preferences", 70, ["config"]),
)

MODULES_BY_NAME = {module.name.lower(): module for module in MODULES}


def find_module(name: str) -> ModuleInfo:
    module = MODULES_BY_NAME.get((name or "").strip().lower())
    if module is None:
        raise UnknownModuleError("Module not found")
    return module


def _require_super_admin(user: User) -> None:
    if not user.has_role(SUPER_ADMIN):
        raise AuthorizationError("This action is unauthorized.")


class ModuleRegistry:
    def __init__(self, session: Session) -> None:
        self.session = session

    def _state(self, name: str) -> Optional[ModuleState]:
        return self.session.scalar(select(ModuleState).where(ModuleState.name == name))

    def is_enabled(self, name: str) -> bool:
        module = find_module(name)
        state = self._state(module.name)
        return True if state is None else state.enabled

    def list_modules(self, user: User) -> list[dict[str, object]]:
        _require_super_admin(user)
        states = {
            state.name: state.enabled for state in self.session.scalars(select(ModuleState))
        }
        return [
            {
                "name": module.name,
                "alias": module.alias,
                "description": module.description,
                "keywords": list(module.keywords),
                "priority": module.priority,
                "enabled": states.get(module.name, True),
                "is_core": module.name == CORE_MODULE,
            }
            for module in sorted(MODULES, key=lambda m: m.priority)
        ]

    def toggle(self, user: User, name: str) -> bool:
        _require_super_admin(user)
        module = find_module(name)
        if module.name == CORE_MODULE:
            raise CoreModuleError("Permission module cannot be disabled.")
        state = self._state(module.name)
        if state is None:
            state = ModuleState(name=module.name, enabled=True)
            self.session.add(state)
        state.enabled = not state.enabled
        self.session.commit()
        logger.info(f"module_toggled: name={module.name} enabled={state.enabled} by={user.id}")
        return state.enabled

    def reorder(self, user: User, order: list[str]) -> list[str]:
        _require_super_admin(user)
        names = [find_module(name).name for name in order]
        user.sidebar_settings = {**(user.sidebar_settings or {}), "module_order": names}
        self.session.commit()
        return names


class SettingsService:
    def __init__(self, session: Session, user: User) -> None:
        self.session = session
        self.user = user

    def update_profile(self, data: ProfileIn) -> User:
        from auth import UserService

        return UserService(self.session).update_profile(self.user, data)

    def update_finance_settings(self, data: FinanceSettingsIn) -> dict:
        code = data.default_currency.upper()
        if self.session.get(Currency, code) is None:
            raise ValueError(f"Unknown currency {code}")
        self.user.finance_settings = {**(self.user.finance_settings or {}), "default_currency": code}
        self.session.commit()
        return self.user.finance_settings

    def update_invoice_settings(self, data: InvoiceSettingsIn) -> dict:
        values = data.model_dump(mode="json")
        self.user.invoice_settings = {**(self.user.invoice_settings or {}), **values}
        self.session.commit()
        return self.user.invoice_settings

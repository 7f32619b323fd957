from __future__ import annotations

from typing import Generator

from fastapi import Depends, Header

from backend.app.core.config import AppSettings, get_settings
from backend.app.db.session import SessionLocal

def get_db() -> Generator:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_tenant_id(
    x_tenant_id: str | None = Header(default=None, alias="X-Tenant-Id"),
    settings: AppSettings = Depends(get_settings),
) -> str:
    if x_tenant_id and x_tenant_id.strip():
        return x_tenant_id.strip()
    return settings.DEFAULT_TENANT


def header_flag(value: str | None, default: bool) -> bool:
    """
    Surcharge booléenne par header : 1/true/yes/on, 0/false/no/off.
    Valeur absente ou inconnue => défaut de la config.
    """
    if not value:
        return default
    v = value.strip().lower()
    if v in {"1", "true", "yes", "on"}:
        return True
    if v in {"0", "false", "no", "off"}:
        return False
    return default


def vendor_guard_enabled(
    x_feature: str | None = Header(default=None, alias="X-Feature-Enforce-Vendor"),
    settings: AppSettings = Depends(get_settings),
) -> bool:
    return header_flag(x_feature, settings.VENDOR_GUARD_ENABLED)


def events_enabled(
    x_feature: str | None = Header(default=None, alias="X-Feature-Events-Enabled"),
    settings: AppSettings = Depends(get_settings),
) -> bool:
    return header_flag(x_feature, settings.EVENTS_ENABLED)

"""The settings singleton and its store."""

from __future__ import annotations

import re
from enum import Enum
from typing import Any, Mapping
from urllib.parse import urlparse

import msgspec

from .exceptions import InvalidSettingsError, SettingsNotInitializedError
from .orm import ORM, DatabaseModel, model

SETTINGS_ID = "1"

_EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_MANAGED_FIELDS = frozenset({"id", "created_at", "updated_at"})


class ModerationMode(str, Enum):
    PRE = "PRE"
    POST = "POST"


@model(table="settings")
class Settings(DatabaseModel, kw_only=True):
    """Instance wide configuration. Exactly one row exists once set up."""

    id: str = SETTINGS_ID
    organization_name: str = ""
    organization_contact_email: str = ""
    moderation: ModerationMode = ModerationMode.POST
    require_email_confirmation: bool = False
    premod_links_enable: bool = False
    auto_close_stream: bool = False
    closed_timeout: int = 60 * 60 * 24 * 14
    closed_message: str = ""
    char_count_enable: bool = False
    char_count: int = 5000
    domains_whitelist: list[str] = msgspec.field(default_factory=list)
    custom_css_url: str = ""


class SettingsValue:
    """Unvalidated settings payload exposing :meth:`validate`."""

    def __init__(self, raw: Mapping[str, Any] | Settings | None) -> None:
        self.raw = raw

    async def validate(self) -> Settings:
        """Return the payload as :class:`Settings` or raise :class:`InvalidSettingsError`."""

        if isinstance(self.raw, Settings):
            settings = self.raw
        else:
            if self.raw is not None and not isinstance(self.raw, Mapping):
                raise InvalidSettingsError("settings must be an object")
            payload = {key: value for key, value in (self.raw or {}).items() if key not in _MANAGED_FIELDS}
            try:
                settings = msgspec.convert(payload, type=Settings)
            except msgspec.ValidationError as exc:
                raise InvalidSettingsError(str(exc)) from exc
        _check_settings(settings)
        return settings


def _check_settings(settings: Settings) -> None:
    if settings.id != SETTINGS_ID:
        raise InvalidSettingsError("settings identity cannot be changed", field="id")
    if not settings.organization_name.strip():
        raise InvalidSettingsError("organization name is required", field="organization_name")
    contact = settings.organization_contact_email
    if contact and not _EMAIL_PATTERN.match(contact):
        raise InvalidSettingsError("contact email is not a valid address", field="organization_contact_email")
    if settings.closed_timeout < 0:
        raise InvalidSettingsError("closed timeout cannot be negative", field="closed_timeout")
    if settings.char_count < 1:
        raise InvalidSettingsError("character limit must be positive", field="char_count")
    for domain in settings.domains_whitelist:
        if not domain.strip() or "/" in domain:
            raise InvalidSettingsError(f"invalid whitelisted domain {domain!r}", field="domains_whitelist")
    if settings.custom_css_url:
        parsed = urlparse(settings.custom_css_url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise InvalidSettingsError("custom CSS URL must be an http(s) URL", field="custom_css_url")


class SettingsService:
    """Database backed store for the :class:`Settings` singleton."""

    def __init__(self, orm: ORM) -> None:
        self._orm = orm
        self._settings = orm.manager(Settings)

    async def is_initialized(self) -> bool:
        """Return whether the singleton exists; a missing table means it does not."""

        if not await self._orm.table_exists(Settings):
            return False
        return await self._settings.exists(id=SETTINGS_ID)

    async def select(self) -> Settings:
        """Return the singleton or raise :class:`SettingsNotInitializedError`."""

        if not await self._orm.table_exists(Settings):
            raise SettingsNotInitializedError()
        settings = await self._settings.get(id=SETTINGS_ID)
        if settings is None:
            raise SettingsNotInitializedError()
        return settings

    async def update(self, settings: Settings | Mapping[str, Any]) -> Settings:
        """Create or replace the singleton and return the stored record."""

        validated = await SettingsValue(settings).validate()
        return await self._settings.upsert(validated)


__all__ = ["SETTINGS_ID", "ModerationMode", "Settings", "SettingsService", "SettingsValue"]

"""Program configuration with an explicit, injectable TTL cache."""

from __future__ import annotations

from dataclasses import dataclass, fields, replace
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Generic, Mapping, TypeVar

from loguru import logger
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from rewards_api.core.time import utcnow
from rewards_api.models.program import ProgramSetting
from rewards_api.services.errors import InvalidProgramSetting

T = TypeVar("T")


@dataclass(frozen=True)
class ProgramConfig:
    """Tunable program values; rows in ``program_settings`` override defaults."""

    referrals_enabled: bool = True
    referrer_points: int = 100
    referred_points: int = 50
    referral_activation_days: int = 30
    referral_monthly_limit: int = 0
    referral_total_limit: int = 0
    gift_default_points: int = 100
    gift_link_expiry_days: int = 30
    campaign_default_max_claims: int = 100
    benefit_valid_days: int = 365

    @classmethod
    def from_mapping(cls, values: Mapping[str, Any]) -> "ProgramConfig":
        """Build a config from stored rows, skipping values that do not parse."""

        overrides: dict[str, Any] = {}
        for field in fields(cls):
            if field.name not in values:
                continue
            raw = values[field.name]
            try:
                overrides[field.name] = parse_setting(field.name, raw)
            except InvalidProgramSetting as exc:
                logger.warning("Ignoring invalid program setting", key=field.name, value=raw, reason=exc.message)
        return replace(cls(), **overrides)

    def as_dict(self) -> dict[str, Any]:
        return {field.name: getattr(self, field.name) for field in fields(self)}


_SETTING_TYPES: dict[str, type] = {field.name: type(field.default) for field in fields(ProgramConfig)}

# Zero means "no limit" for the referral caps and "no bonus" for referral points.
_POSITIVE_SETTINGS = {
    "referral_activation_days",
    "gift_default_points",
    "gift_link_expiry_days",
    "campaign_default_max_claims",
}


def parse_setting(key: str, raw: Any) -> Any:
    """Coerce one stored or submitted setting value to its config type."""

    expected = _SETTING_TYPES.get(key)
    if expected is None:
        raise InvalidProgramSetting(f"Unknown program setting: {key}.")

    if expected is bool:
        if isinstance(raw, bool):
            return raw
        if isinstance(raw, str) and raw.strip().lower() in {"true", "1", "yes", "on"}:
            return True
        if isinstance(raw, str) and raw.strip().lower() in {"false", "0", "no", "off"}:
            return False
        if isinstance(raw, int) and raw in (0, 1):
            return bool(raw)
        raise InvalidProgramSetting(f"{key} must be true or false.")

    if isinstance(raw, bool):
        raise InvalidProgramSetting(f"{key} must be a whole number.")
    try:
        value = int(raw)
    except (TypeError, ValueError) as exc:
        raise InvalidProgramSetting(f"{key} must be a whole number.") from exc
    if value < 0 or (value == 0 and key in _POSITIVE_SETTINGS):
        raise InvalidProgramSetting(f"{key} is out of range.")
    return value


@dataclass
class CachedValue(Generic[T]):
    value: T
    fetched_at: datetime


class ConfigCache(Generic[T]):
    """Holds one loaded value and reloads it once ``ttl`` has elapsed.

    A failed reload keeps serving the previous value; with nothing cached yet
    it falls back to ``default``.
    """

    def __init__(
        self,
        loader: Callable[[], Awaitable[T]],
        *,
        ttl_seconds: float,
        default: T,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._loader = loader
        self._ttl = timedelta(seconds=ttl_seconds)
        self._default = default
        self._clock = clock
        self._entry: CachedValue[T] | None = None

    @property
    def entry(self) -> CachedValue[T] | None:
        return self._entry

    def is_fresh(self, now: datetime | None = None) -> bool:
        if self._entry is None:
            return False
        current = now or self._clock()
        return current - self._entry.fetched_at < self._ttl

    def invalidate(self) -> None:
        self._entry = None

    async def get(self) -> T:
        now = self._clock()
        if self._entry is not None and self.is_fresh(now):
            return self._entry.value

        try:
            value = await self._loader()
        except SQLAlchemyError as exc:
            logger.error("Program config reload failed", error=str(exc))
            if self._entry is not None:
                return self._entry.value
            return self._default

        self._entry = CachedValue(value=value, fetched_at=now)
        return value


async def load_program_config(session: AsyncSession) -> ProgramConfig:
    result = await session.execute(select(ProgramSetting.key, ProgramSetting.value))
    values = {key: value for key, value in result.all()}
    return ProgramConfig.from_mapping(values)


async def save_program_settings(session: AsyncSession, changes: Mapping[str, Any]) -> ProgramConfig:
    """Validate ``changes`` as a whole, upsert them and return the stored config.

    Callers own the transaction and must invalidate any ``ConfigCache``
    after commit.
    """

    parsed = {key: parse_setting(key, raw) for key, raw in changes.items()}
    if not parsed:
        return await load_program_config(session)

    result = await session.execute(
        select(ProgramSetting).where(ProgramSetting.key.in_(parsed)).with_for_update()
    )
    existing = {row.key: row for row in result.scalars().all()}
    now = utcnow()
    for key, value in parsed.items():
        row = existing.get(key)
        if row is None:
            session.add(ProgramSetting(key=key, value=value, updated_at=now))
        else:
            row.value = value
            row.updated_at = now
    await session.flush()
    logger.info("Program settings updated", keys=sorted(parsed))
    return await load_program_config(session)


def build_program_config_cache(
    session_factory: Callable[[], AsyncSession],
    *,
    ttl_seconds: float,
) -> ConfigCache[ProgramConfig]:
    async def _load() -> ProgramConfig:
        async with session_factory() as session:
            return await load_program_config(session)

    return ConfigCache(_load, ttl_seconds=ttl_seconds, default=ProgramConfig())


__all__ = [
    "CachedValue",
    "ConfigCache",
    "ProgramConfig",
    "build_program_config_cache",
    "load_program_config",
    "parse_setting",
    "save_program_settings",
]

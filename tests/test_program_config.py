from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from rewards_api.models import ProgramSetting
from rewards_api.services.errors import InvalidProgramSetting
from rewards_api.services.program_config import (
    ConfigCache,
    ProgramConfig,
    build_program_config_cache,
    parse_setting,
)


class _Clock:
    def __init__(self) -> None:
        self.now = datetime(2026, 1, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now


def test_program_config_ignores_unknown_and_bad_values() -> None:
    config = ProgramConfig.from_mapping({"referrer_points": "250", "gift_default_points": "lots", "unknown": 3})
    assert config.referrer_points == 250
    assert config.gift_default_points == ProgramConfig().gift_default_points


def test_negative_and_zero_values_fall_back_to_defaults() -> None:
    config = ProgramConfig.from_mapping(
        {"referrer_points": -10, "referred_points": 0, "referral_activation_days": 0, "referrals_enabled": "off"}
    )
    assert config.referrer_points == ProgramConfig().referrer_points
    assert config.referred_points == 0
    assert config.referral_activation_days == ProgramConfig().referral_activation_days
    assert config.referrals_enabled is False


@pytest.mark.parametrize(
    ("key", "raw", "expected"),
    [
        ("referrals_enabled", "yes", True),
        ("referrals_enabled", 0, False),
        ("referral_total_limit", "0", 0),
        ("gift_link_expiry_days", 7, 7),
    ],
)
def test_parse_setting_accepts(key, raw, expected) -> None:
    assert parse_setting(key, raw) == expected


@pytest.mark.parametrize(
    ("key", "raw"),
    [
        ("referrals_enabled", "maybe"),
        ("referrer_points", True),
        ("referrer_points", -1),
        ("campaign_default_max_claims", 0),
        ("no_such_setting", 1),
    ],
)
def test_parse_setting_rejects(key, raw) -> None:
    with pytest.raises(InvalidProgramSetting):
        parse_setting(key, raw)


@pytest.mark.asyncio
async def test_cache_reloads_only_after_ttl() -> None:
    clock = _Clock()
    loads = []

    async def loader() -> int:
        loads.append(clock.now)
        return len(loads)

    cache = ConfigCache(loader, ttl_seconds=60, default=0, clock=clock)
    assert await cache.get() == 1
    clock.now += timedelta(seconds=30)
    assert await cache.get() == 1
    clock.now += timedelta(seconds=31)
    assert await cache.get() == 2
    assert len(loads) == 2


@pytest.mark.asyncio
async def test_failed_reload_serves_stale_value_then_default() -> None:
    clock = _Clock()
    state = {"fail": False}

    async def loader() -> str:
        if state["fail"]:
            raise OperationalError("SELECT", {}, Exception("db down"))
        return "fresh"

    cache = ConfigCache(loader, ttl_seconds=10, default="default", clock=clock)
    assert await cache.get() == "fresh"

    state["fail"] = True
    clock.now += timedelta(seconds=11)
    assert await cache.get() == "fresh"

    cache.invalidate()
    assert await cache.get() == "default"


@pytest.mark.asyncio
async def test_cache_reads_program_settings(session_factory) -> None:
    async with session_factory() as session:
        session.add(ProgramSetting(key="referrer_points", value=300))
        await session.commit()

    cache = build_program_config_cache(session_factory, ttl_seconds=300)
    config = await cache.get()
    assert config.referrer_points == 300
    assert config.referred_points == ProgramConfig().referred_points
    assert cache.is_fresh()


@pytest.mark.asyncio
async def test_update_program_config_invalidates_cache(operations, session_factory) -> None:
    operations.config_cache = build_program_config_cache(session_factory, ttl_seconds=300)
    assert (await operations.get_program_config()).referrer_points == 100

    updated = await operations.update_program_config({"referrer_points": 10, "referrals_enabled": "false"})
    assert updated.referrer_points == 10
    assert not updated.referrals_enabled

    cached = await operations.get_program_config()
    assert cached.referrer_points == 10
    assert not cached.referrals_enabled

    # One bad value rejects the whole change set.
    with pytest.raises(InvalidProgramSetting):
        await operations.update_program_config({"referred_points": 5, "gift_default_points": -3})
    assert (await operations.get_program_config()).referred_points == ProgramConfig().referred_points

    await operations.update_program_config({"referrer_points": 25})
    async with session_factory() as session:
        rows = (await session.execute(select(ProgramSetting.key, ProgramSetting.value))).all()
    assert dict(rows) == {"referrer_points": 25, "referrals_enabled": False}

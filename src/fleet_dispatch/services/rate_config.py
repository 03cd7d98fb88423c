"""Pricing and speed constants: settings defaults overlaid with DB overrides.

The ``system_config`` table holds key/value rows whose keys are
``RateConfig`` field names.  Rows with unknown keys or non-numeric values
are ignored with a warning so that one bad row cannot take pricing down.
"""

import logging
from typing import Iterable, Tuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from fleet_dispatch.app.config import Settings
from fleet_dispatch.domain.models import SystemConfig
from fleet_dispatch.domain.schemas import RateConfig

logger = logging.getLogger(__name__)

RATE_KEYS = tuple(RateConfig.model_fields)


def rates_from_settings(settings: Settings) -> RateConfig:
    return RateConfig(**{key: getattr(settings, key) for key in RATE_KEYS})


def apply_overrides(base: RateConfig, rows: Iterable[Tuple[str, str]]) -> RateConfig:
    """Return a copy of *base* with every valid (key, value) row applied."""
    overrides: dict[str, float] = {}
    for key, raw in rows:
        if key not in RATE_KEYS:
            continue
        try:
            value = float(raw)
        except (TypeError, ValueError):
            logger.warning("Ignoring non-numeric system_config %s=%r", key, raw)
            continue
        if value < 0:
            logger.warning("Ignoring negative system_config %s=%s", key, value)
            continue
        overrides[key] = value

    if not overrides:
        return base
    return base.model_copy(update=overrides)


async def load_rate_config(db: AsyncSession, settings: Settings) -> RateConfig:
    """Read rate overrides from ``system_config`` on top of the settings defaults."""
    result = await db.execute(
        select(SystemConfig.key, SystemConfig.value).where(SystemConfig.key.in_(RATE_KEYS))
    )
    return apply_overrides(rates_from_settings(settings), result.all())


async def save_rate_value(db: AsyncSession, key: str, value: float) -> None:
    """Upsert one rate override. Caller commits."""
    if key not in RATE_KEYS:
        raise ValueError(f"Unknown rate key: {key}")
    row = await db.get(SystemConfig, key)
    if row is None:
        db.add(SystemConfig(key=key, value=str(value)))
    else:
        row.value = str(value)

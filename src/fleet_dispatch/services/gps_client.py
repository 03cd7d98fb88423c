"""Client for the external GPS telemetry API.

Positions and fleet status come from here instead of the database when
``gps_api_url`` is configured.  Transport and HTTP failures are logged and
re-raised as ``GpsTelemetryError`` so the cache facade can fall back to the
last good value.
"""

from __future__ import annotations

import logging
from typing import Iterable, Optional

import httpx
from pydantic import ValidationError

from fleet_dispatch.domain.schemas import FleetStatusSummary, VehiclePosition

logger = logging.getLogger(__name__)


class GpsTelemetryError(RuntimeError):
    """The telemetry provider could not be reached or returned garbage."""


class GpsTelemetryClient:
    """Async client for ``GET /vehicles/positions`` and ``GET /fleet/status``."""

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        timeout: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._timeout = timeout
        self._transport = transport

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    async def _get(self, path: str, params: Optional[dict] = None) -> dict:
        try:
            async with httpx.AsyncClient(
                base_url=self._base_url,
                timeout=self._timeout,
                transport=self._transport,
            ) as client:
                resp = await client.get(path, params=params, headers=self._headers())
                resp.raise_for_status()
                return resp.json()
        except httpx.HTTPStatusError as exc:
            logger.warning("GPS API HTTP error on %s: %s", path, exc)
            raise GpsTelemetryError(str(exc)) from exc
        except httpx.RequestError as exc:
            logger.warning("GPS API request failed on %s: %s", path, exc)
            raise GpsTelemetryError(str(exc)) from exc
        except ValueError as exc:
            logger.warning("GPS API returned invalid JSON on %s: %s", path, exc)
            raise GpsTelemetryError("invalid JSON from telemetry provider") from exc

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def fetch_vehicle_positions(
        self,
        vehicle_ids: Optional[Iterable[str]] = None,
    ) -> list[VehiclePosition]:
        params = None
        if vehicle_ids is not None:
            params = {"ids": ",".join(sorted(vehicle_ids))}
        data = await self._get("/vehicles/positions", params)

        positions = []
        for item in data.get("positions", []):
            try:
                positions.append(VehiclePosition.model_validate(item))
            except ValidationError as exc:
                logger.warning("Skipping malformed GPS fix %r: %s", item, exc)
        return positions

    async def fetch_fleet_status(self) -> FleetStatusSummary:
        data = await self._get("/fleet/status")
        try:
            return FleetStatusSummary.model_validate(data)
        except ValidationError as exc:
            logger.warning("Malformed fleet status from GPS API: %s", exc)
            raise GpsTelemetryError("malformed fleet status") from exc

"""
room_session.services.location
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

定位边界 —— 给附近匹配提供一个尽力而为的坐标。

- ``StaticLocationProvider``: 设备传感器给出的精确坐标（由 UI 传入）。
- ``IpLocationProvider``: 基于 IP 的粗略定位，主服务失败时走备用服务，
  结果缓存 5 分钟。

任何失败都返回 ``None``，附近匹配随之退化为「不按距离过滤」。
"""
from __future__ import annotations

import time
from collections.abc import Callable
from typing import Any, Protocol

import httpx
from pydantic import BaseModel, Field

from room_session.core.config import settings
from room_session.core.logging import get_logger
from room_session.schemas.room import GeoPoint

logger = get_logger(__name__)


class Location(BaseModel):
    """一次定位结果。"""

    latitude: float = Field(..., ge=-90, le=90, description="纬度")
    longitude: float = Field(..., ge=-180, le=180, description="经度")
    city: str | None = Field(default=None, description="城市")
    region: str | None = Field(default=None, description="省 / 州")
    country: str | None = Field(default=None, description="国家")
    is_approximate: bool = Field(default=False, description="是否为 IP 粗略定位")

    def as_point(self) -> GeoPoint:
        return GeoPoint(latitude=self.latitude, longitude=self.longitude)


class LocationProvider(Protocol):
    """定位接口。"""

    async def locate(self) -> Location | None:
        ...


class StaticLocationProvider:
    """返回固定坐标（或 None）的定位器。"""

    def __init__(self, location: Location | None = None) -> None:
        self.location = location

    async def locate(self) -> Location | None:
        return self.location


def _parse_primary(data: dict[str, Any]) -> Location | None:
    """解析 ipapi.co 的返回。"""
    if data.get("latitude") is None or data.get("longitude") is None:
        return None
    return Location(
        latitude=data["latitude"],
        longitude=data["longitude"],
        city=data.get("city"),
        region=data.get("region"),
        country=data.get("country_name"),
        is_approximate=True,
    )


def _parse_fallback(data: dict[str, Any]) -> Location | None:
    """解析 ip-api.com 的返回。"""
    if data.get("lat") is None or data.get("lon") is None:
        return None
    return Location(
        latitude=data["lat"],
        longitude=data["lon"],
        city=data.get("city"),
        region=data.get("regionName"),
        country=data.get("country"),
        is_approximate=True,
    )


class IpLocationProvider:
    """基于 IP 的粗略定位。

    Attributes:
        primary_url: 主定位服务。
        fallback_url: 备用定位服务。
        timeout: 单次请求超时（秒）。
        cache_seconds: 成功结果的缓存时长（秒）。
    """

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        primary_url: str | None = None,
        fallback_url: str | None = None,
        timeout: float | None = None,
        cache_seconds: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._client = client
        self.primary_url = primary_url or settings.LOCATION_LOOKUP_URL
        self.fallback_url = fallback_url or settings.LOCATION_FALLBACK_URL
        self.timeout = timeout or settings.LOCATION_TIMEOUT_SECONDS
        self.cache_seconds = (
            settings.LOCATION_CACHE_SECONDS if cache_seconds is None else cache_seconds
        )
        self._clock = clock
        self._cached: Location | None = None
        self._cached_at = 0.0

    async def locate(self) -> Location | None:
        """返回当前粗略位置，全部失败时返回 ``None``。"""
        if self._cached is not None and self._clock() - self._cached_at < self.cache_seconds:
            return self._cached

        location = await self._lookup(self.primary_url, _parse_primary)
        if location is None:
            logger.info("主定位服务无结果，尝试备用服务")
            location = await self._lookup(self.fallback_url, _parse_fallback)

        if location is not None:
            self._cached = location
            self._cached_at = self._clock()
            logger.debug("IP 定位成功 | city=%s", location.city)
        else:
            logger.warning("IP 定位失败，附近匹配将不按距离过滤")
        return location

    async def _lookup(
        self,
        url: str,
        parse: Callable[[dict[str, Any]], Location | None],
    ) -> Location | None:
        try:
            if self._client is not None:
                response = await self._client.get(
                    url, headers={"Accept": "application/json"}, timeout=self.timeout,
                )
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.get(url, headers={"Accept": "application/json"})
            response.raise_for_status()
            data = response.json()
            if not isinstance(data, dict):
                return None
            return parse(data)
        except (httpx.HTTPError, ValueError) as e:
            # ValueError 覆盖非法 JSON 与越界坐标（pydantic.ValidationError）
            logger.info("定位请求失败 | url=%s | %s", url, e)
            return None

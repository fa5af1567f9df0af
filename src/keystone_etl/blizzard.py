"""Game-data API client for the Mythic+ leaderboard endpoints."""

from __future__ import annotations

import asyncio
import re
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from .api_client import ApiClient
from .errors import UpstreamError
from .normalize import DungeonTimers


@dataclass(frozen=True)
class RegionInfo:
    locale: str
    oauth_url: str
    api_url: str


REGIONS: Dict[str, RegionInfo] = {
    "us": RegionInfo("en_US", "https://us.battle.net/oauth/token", "https://us.api.blizzard.com"),
    "eu": RegionInfo("en_GB", "https://eu.battle.net/oauth/token", "https://eu.api.blizzard.com"),
    "kr": RegionInfo("ko_KR", "https://kr.battle.net/oauth/token", "https://kr.api.blizzard.com"),
    "tw": RegionInfo("zh_TW", "https://tw.battle.net/oauth/token", "https://tw.api.blizzard.com"),
}

_CONNECTED_REALM_RE = re.compile(r"connected-realm/(\d+)")
_PERIOD_RE = re.compile(r"period/(\d+)")
_LEADERBOARD_RE = re.compile(r"mythic-leaderboard/(\d+)")


def region_info(region: str) -> RegionInfo:
    try:
        return REGIONS[region.lower()]
    except KeyError:
        raise ValueError(f"unsupported region {region!r}; expected one of {sorted(REGIONS)}") from None


class OAuthToken:
    """Client-credentials token for one region, cached until shortly before expiry."""

    def __init__(
        self,
        api: ApiClient,
        region: str,
        client_id: str,
        client_secret: str,
        refresh_margin_seconds: float = 60,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.api = api
        self.token_url = region_info(region).oauth_url
        self._credentials = (client_id, client_secret)
        self._refresh_margin = refresh_margin_seconds
        self._clock = clock
        self._token: Optional[str] = None
        self._expires_at = 0.0
        self._lock = asyncio.Lock()

    def invalidate(self) -> None:
        self._token = None
        self._expires_at = 0.0

    async def token(self) -> str:
        async with self._lock:
            if self._token is None or self._clock() >= self._expires_at:
                payload = await self.api.request_json(
                    "POST",
                    self.token_url,
                    data={"grant_type": "client_credentials"},
                    basic_auth=self._credentials,
                )
                if "access_token" not in payload:
                    raise UpstreamError("token response did not contain an access_token")
                self._token = payload["access_token"]
                ttl = float(payload.get("expires_in", 3600))
                self._expires_at = self._clock() + max(0.0, ttl - self._refresh_margin)
            return self._token

    async def __call__(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {await self.token()}"}


def _ids_from_hrefs(items: List[Dict[str, Any]], pattern: re.Pattern) -> List[int]:
    ids = []
    for item in items:
        if "id" in item:
            ids.append(int(item["id"]))
            continue
        match = pattern.search((item.get("key") or {}).get("href", "") or item.get("href", ""))
        if match:
            ids.append(int(match.group(1)))
    return sorted(set(ids))


class BlizzardSource:
    """Typed access to the leaderboard data the ingestion job needs."""

    def __init__(self, api: ApiClient, client_id: str, client_secret: str) -> None:
        self.api = api
        self._tokens = {
            region: OAuthToken(api, region, client_id, client_secret) for region in REGIONS
        }

    async def _get(self, region: str, path: str, **params: Any) -> Any:
        info = region_info(region)
        query = {"namespace": f"dynamic-{region}", "locale": info.locale}
        query.update(params)
        return await self.api.get_json(f"{info.api_url}{path}", params=query, auth=self._tokens[region])

    async def current_season_id(self, region: str) -> int:
        payload = await self._get(region, "/data/wow/mythic-keystone/season/index")
        current = payload.get("current_season") or {}
        if "id" in current:
            return int(current["id"])
        seasons = [int(s["id"]) for s in payload.get("seasons", [])]
        if not seasons:
            raise UpstreamError(f"no mythic keystone seasons listed for {region}")
        return max(seasons)

    async def season_period_ids(self, region: str, season_id: int) -> List[int]:
        payload = await self._get(region, f"/data/wow/mythic-keystone/season/{season_id}")
        return _ids_from_hrefs(payload.get("periods", []), _PERIOD_RE)

    async def connected_realm_ids(self, region: str) -> List[int]:
        payload = await self._get(region, "/data/wow/connected-realm/index")
        return _ids_from_hrefs(payload.get("connected_realms", []), _CONNECTED_REALM_RE)

    async def leaderboard_dungeon_ids(self, region: str, connected_realm_id: int) -> List[int]:
        payload = await self._get(region, f"/data/wow/connected-realm/{connected_realm_id}/mythic-leaderboard/index")
        return _ids_from_hrefs(payload.get("current_leaderboards", []), _LEADERBOARD_RE)

    async def dungeon_timers(self, region: str, dungeon_id: int) -> DungeonTimers:
        payload = await self._get(region, f"/data/wow/mythic-keystone/dungeon/{dungeon_id}")
        return DungeonTimers.from_upgrades(payload.get("keystone_upgrades", []))

    async def leading_groups(
        self, region: str, connected_realm_id: int, dungeon_id: int, period_id: int
    ) -> List[Dict[str, Any]]:
        payload = await self._get(
            region,
            f"/data/wow/connected-realm/{connected_realm_id}/mythic-leaderboard/{dungeon_id}/period/{period_id}",
        )
        return payload.get("leading_groups") or []

"""Tests for the game-data API source and OAuth token handling."""

from __future__ import annotations

import base64

import httpx
import pytest

from fakes import SAMPLE_TIMERS, make_group
from keystone_etl.api_client import ApiClient, ApiConfig
from keystone_etl.blizzard import BlizzardSource, region_info
from keystone_etl.errors import UpstreamNotFoundError

RETRY = {
    "max_attempts": 3,
    "base_delay_seconds": 0.001,
    "max_delay_seconds": 0.01,
    "warmup_base_delay_seconds": 0.001,
    "warmup_max_delay_seconds": 0.01,
    "jitter": 0,
}


class FakeBattleNet:
    """Routes requests by path and records what was sent."""

    def __init__(self, routes):
        self.routes = routes
        self.token_requests = []
        self.requests = []
        self.tokens_issued = 0
        self.reject_token = None

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.url.path == "/oauth/token":
            self.token_requests.append(request)
            self.tokens_issued += 1
            return httpx.Response(200, json={"access_token": f"tok-{self.tokens_issued}", "expires_in": 86399})
        self.requests.append(request)
        if request.headers.get("Authorization") == f"Bearer {self.reject_token}":
            return httpx.Response(401)
        body = self.routes.get(request.url.path)
        if body is None:
            return httpx.Response(404, json={"detail": "Not Found"})
        return httpx.Response(200, json=body)


def _source(fake: FakeBattleNet) -> BlizzardSource:
    api = ApiClient(ApiConfig(rate_limit_per_sec=1000, retry=RETRY), transport=httpx.MockTransport(fake))
    return BlizzardSource(api, "client-id", "client-secret")


ROUTES = {
    "/data/wow/mythic-keystone/season/index": {
        "seasons": [{"id": 12}, {"id": 13}],
        "current_season": {"id": 13, "key": {"href": "https://us.api.blizzard.com/data/wow/mythic-keystone/season/13"}},
    },
    "/data/wow/mythic-keystone/season/13": {
        "periods": [
            {"id": 976, "key": {"href": "https://us.api.blizzard.com/data/wow/mythic-keystone/period/976"}},
            {"key": {"href": "https://us.api.blizzard.com/data/wow/mythic-keystone/period/977?namespace=dynamic-us"}},
        ]
    },
    "/data/wow/connected-realm/index": {
        "connected_realms": [
            {"href": "https://us.api.blizzard.com/data/wow/connected-realm/11?namespace=dynamic-us"},
            {"href": "https://us.api.blizzard.com/data/wow/connected-realm/3678?namespace=dynamic-us"},
        ]
    },
    "/data/wow/connected-realm/11/mythic-leaderboard/index": {
        "current_leaderboards": [
            {"key": {"href": "https://us.api.blizzard.com/data/wow/connected-realm/11/mythic-leaderboard/505"}, "id": 505},
            {"key": {"href": "https://us.api.blizzard.com/data/wow/connected-realm/11/mythic-leaderboard/501"}},
        ]
    },
    "/data/wow/mythic-keystone/dungeon/505": {
        "keystone_upgrades": [
            {"upgrade_level": 1, "qualifying_duration": 1_800_000},
            {"upgrade_level": 2, "qualifying_duration": 1_440_000},
            {"upgrade_level": 3, "qualifying_duration": 1_080_000},
        ]
    },
    "/data/wow/connected-realm/11/mythic-leaderboard/505/period/977": {
        "leading_groups": [make_group(ranking=1), make_group(ranking=2, level=19)]
    },
}


class TestSource:
    async def test_index_endpoints(self):
        fake = FakeBattleNet(ROUTES)
        source = _source(fake)
        try:
            assert await source.current_season_id("us") == 13
            assert await source.season_period_ids("us", 13) == [976, 977]
            assert await source.connected_realm_ids("us") == [11, 3678]
            assert await source.leaderboard_dungeon_ids("us", 11) == [501, 505]
            assert await source.dungeon_timers("us", 505) == SAMPLE_TIMERS
        finally:
            await source.api.close()

    async def test_leading_groups_and_request_shape(self):
        fake = FakeBattleNet(ROUTES)
        source = _source(fake)
        try:
            groups = await source.leading_groups("us", 11, 505, 977)
        finally:
            await source.api.close()
        assert [g["ranking"] for g in groups] == [1, 2]
        request = fake.requests[0]
        assert request.url.host == "us.api.blizzard.com"
        assert request.url.params["namespace"] == "dynamic-us"
        assert request.url.params["locale"] == "en_US"
        assert request.headers["Authorization"] == "Bearer tok-1"

    async def test_missing_leaderboard_is_not_found(self):
        source = _source(FakeBattleNet(ROUTES))
        try:
            with pytest.raises(UpstreamNotFoundError):
                await source.leading_groups("us", 11, 999, 977)
        finally:
            await source.api.close()

    async def test_season_falls_back_to_highest_listed(self):
        routes = dict(ROUTES)
        routes["/data/wow/mythic-keystone/season/index"] = {"seasons": [{"id": 11}, {"id": 12}]}
        source = _source(FakeBattleNet(routes))
        try:
            assert await source.current_season_id("us") == 12
        finally:
            await source.api.close()


class TestOAuth:
    async def test_token_is_cached_per_region(self):
        fake = FakeBattleNet(ROUTES)
        source = _source(fake)
        try:
            await source.current_season_id("us")
            await source.connected_realm_ids("us")
        finally:
            await source.api.close()
        assert len(fake.token_requests) == 1
        token_request = fake.token_requests[0]
        assert token_request.url.host == "us.battle.net"
        expected = base64.b64encode(b"client-id:client-secret").decode()
        assert token_request.headers["Authorization"] == f"Basic {expected}"
        assert b"grant_type=client_credentials" in token_request.content

    async def test_rejected_token_is_refreshed(self):
        fake = FakeBattleNet(ROUTES)
        fake.reject_token = "tok-1"
        source = _source(fake)
        try:
            assert await source.connected_realm_ids("us") == [11, 3678]
        finally:
            await source.api.close()
        assert fake.tokens_issued == 2

    def test_unknown_region(self):
        with pytest.raises(ValueError):
            region_info("cn")

"""
tests/test_twitch_client.py — Helix Client
===========================================
Runs the client against ``httpx.MockTransport`` handlers.
"""

from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from tumulte.services.twitch_client import TwitchApiError, TwitchClient


class _Helix:
    """Scripted Helix: routes by (method, path) and records every request."""

    def __init__(self, routes: dict | None = None):
        self.routes = routes or {}
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.path == "/oauth2/token":
            return httpx.Response(200, json={"access_token": "app-token", "expires_in": 3600})
        route = self.routes.get((request.method, request.url.path))
        if route is None:
            return httpx.Response(404, json={"message": "not found"})
        return route(request) if callable(route) else route

    def paths(self) -> list[str]:
        return [r.url.path for r in self.requests]


def _client(helix: _Helix) -> TwitchClient:
    return TwitchClient("client-id", "client-secret", transport=httpx.MockTransport(helix))


class TestPlumbing:
    def test_app_token_cached(self):
        helix = _Helix({("GET", "/helix/streams"): httpx.Response(200, json={"data": []})})
        client = _client(helix)

        async def scenario():
            await client.get_viewer_counts(["1"])
            await client.get_viewer_counts(["2"])

        asyncio.run(scenario())
        assert helix.paths().count("/oauth2/token") == 1
        assert helix.requests[-1].headers["Authorization"] == "Bearer app-token"
        assert helix.requests[-1].headers["Client-Id"] == "client-id"

    def test_error_status(self):
        client = _client(_Helix())
        with pytest.raises(TwitchApiError) as exc_info:
            asyncio.run(client.delete_custom_reward("1001", "token", "reward-1"))
        assert exc_info.value.status_code == 404
        assert exc_info.value.is_not_found

    def test_transport_failure(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        client = TwitchClient("client-id", "secret", transport=httpx.MockTransport(handler))
        with pytest.raises(TwitchApiError) as exc_info:
            asyncio.run(client.delete_custom_reward("1001", "token", "reward-1"))
        assert exc_info.value.status_code is None


class TestRewards:
    def test_create_truncates_title(self):
        helix = _Helix({
            ("POST", "/helix/channel_points/custom_rewards"):
                httpx.Response(200, json={"data": [{"id": "reward-1"}]}),
        })
        reward = asyncio.run(_client(helix).create_custom_reward(
            "1001", "user-token", title="x" * 60, cost=150, background_color="#9146FF",
        ))

        assert reward == {"id": "reward-1"}
        request = helix.requests[-1]
        body = json.loads(request.content)
        assert len(body["title"]) == 45
        assert body["cost"] == 150
        assert body["background_color"] == "#9146FF"
        assert request.url.params["broadcaster_id"] == "1001"
        assert request.headers["Authorization"] == "Bearer user-token"

    def test_cancel_redemptions(self):
        helix = _Helix({
            ("PATCH", "/helix/channel_points/custom_rewards/redemptions"):
                httpx.Response(200, json={"data": []}),
        })
        asyncio.run(_client(helix).cancel_redemptions("1001", "token", "reward-1", ["r-1", "r-2"]))

        request = helix.requests[-1]
        assert request.url.params.get_list("id") == ["r-1", "r-2"]
        assert request.url.params["reward_id"] == "reward-1"
        assert json.loads(request.content) == {"status": "CANCELED"}

    def test_delete_no_content(self):
        helix = _Helix({
            ("DELETE", "/helix/channel_points/custom_rewards"): httpx.Response(204),
        })
        assert asyncio.run(_client(helix).delete_custom_reward("1001", "token", "r")) is None


class TestEventSub:
    def test_pagination(self):
        pages = iter([
            {"data": [{"id": "s1"}], "pagination": {"cursor": "abc"}},
            {"data": [{"id": "s2"}], "pagination": {}},
        ])
        helix = _Helix({
            ("GET", "/helix/eventsub/subscriptions"): lambda r: httpx.Response(200, json=next(pages)),
        })
        subs = asyncio.run(_client(helix).list_eventsub_subscriptions("channel.update"))

        assert [s["id"] for s in subs] == ["s1", "s2"]
        assert helix.requests[-1].url.params["after"] == "abc"
        assert helix.requests[-1].url.params["type"] == "channel.update"

    def test_create_subscription(self):
        helix = _Helix({
            ("POST", "/helix/eventsub/subscriptions"):
                httpx.Response(202, json={"data": [{"id": "sub-1", "status": "pending"}]}),
        })
        sub = asyncio.run(_client(helix).create_eventsub_subscription(
            "channel.update", {"broadcaster_user_id": "1001"}, "https://cb", "s3cret",
        ))

        assert sub["id"] == "sub-1"
        body = json.loads(helix.requests[-1].content)
        assert body["transport"] == {"method": "webhook", "callback": "https://cb", "secret": "s3cret"}


class TestTokensAndStreams:
    def test_validate_rejected(self):
        helix = _Helix()
        helix.routes[("GET", "/oauth2/validate")] = httpx.Response(401)
        assert asyncio.run(_client(helix).validate_token("stale")) is None
        assert helix.requests[-1].headers["Authorization"] == "OAuth stale"

    def test_viewer_counts(self):
        helix = _Helix({
            ("GET", "/helix/streams"): httpx.Response(200, json={"data": [
                {"user_id": "1001", "viewer_count": 87},
            ]}),
        })
        counts = asyncio.run(_client(helix).get_viewer_counts(["1001", "1002"]))

        assert counts == {"1001": 87}
        assert helix.requests[-1].url.params.get_list("user_id") == ["1001", "1002"]

    def test_viewer_counts_empty(self):
        helix = _Helix()
        assert asyncio.run(_client(helix).get_viewer_counts([])) == {}
        assert helix.requests == []

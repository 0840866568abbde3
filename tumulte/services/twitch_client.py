"""
tumulte.services.twitch_client — Twitch Helix API Client
==========================================================

Async wrapper over the handful of Helix endpoints the gamification engine
needs: channel point custom rewards, redemption refunds, EventSub
subscriptions, chat messages, token validation and viewer counts.

Every non-2xx response raises :class:`TwitchApiError`; callers decide
whether that becomes an orphan, a counter, or a failed ResultData.

Broadcaster-scoped calls take the streamer's user access token.  App-level
calls (EventSub, streams) use a client-credentials token cached until it
expires.
"""

from __future__ import annotations

import logging
import time

import httpx

from tumulte.constants import MAX_REWARDS_PER_CHANNEL

logger = logging.getLogger(__name__)


class TwitchApiError(Exception):
    """A Helix call returned a non-success status (or never completed)."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code

    @property
    def is_not_found(self) -> bool:
        return self.status_code == 404


class TwitchClient:
    """Minimal Helix client.

    Parameters
    ----------
    client_id, client_secret:
        Application credentials (``TWITCH_CLIENT_ID`` / ``TWITCH_CLIENT_SECRET``).
    helix_base_url, oauth_base_url:
        Overridable for tests and mocks.
    timeout:
        Per-request timeout in seconds.
    transport:
        Optional httpx transport (``httpx.MockTransport`` in tests).
    """

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        *,
        helix_base_url: str = "https://api.twitch.tv/helix",
        oauth_base_url: str = "https://id.twitch.tv/oauth2",
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.client_id = client_id
        self._client_secret = client_secret
        self._helix = helix_base_url.rstrip("/")
        self._oauth = oauth_base_url.rstrip("/")
        self._http = httpx.AsyncClient(
            timeout=timeout,
            transport=transport or httpx.AsyncHTTPTransport(retries=1),
        )
        self._app_token: str | None = None
        self._app_token_expires: float = 0.0

    async def aclose(self) -> None:
        await self._http.aclose()

    # -- Plumbing -----------------------------------------------------------
    async def _request(
        self,
        method: str,
        path: str,
        token: str,
        *,
        params: dict | list | None = None,
        json: dict | None = None,
    ) -> dict:
        headers = {"Client-Id": self.client_id, "Authorization": f"Bearer {token}"}
        try:
            resp = await self._http.request(
                method, f"{self._helix}{path}", headers=headers, params=params, json=json,
            )
        except httpx.HTTPError as exc:
            raise TwitchApiError(f"{method} {path} failed: {exc}") from exc

        if resp.status_code >= 400:
            raise TwitchApiError(
                f"{method} {path} → {resp.status_code}: {resp.text[:200]}",
                status_code=resp.status_code,
            )
        if resp.status_code == 204 or not resp.content:
            return {}
        return resp.json()

    async def get_app_token(self) -> str:
        """Client-credentials token, refreshed one minute before expiry."""
        if self._app_token and time.monotonic() < self._app_token_expires:
            return self._app_token
        try:
            resp = await self._http.post(
                f"{self._oauth}/token",
                data={
                    "client_id": self.client_id,
                    "client_secret": self._client_secret,
                    "grant_type": "client_credentials",
                },
            )
        except httpx.HTTPError as exc:
            raise TwitchApiError(f"App token request failed: {exc}") from exc
        if resp.status_code != 200:
            raise TwitchApiError("App token request rejected", status_code=resp.status_code)
        body = resp.json()
        self._app_token = body["access_token"]
        self._app_token_expires = time.monotonic() + max(int(body.get("expires_in", 0)) - 60, 0)
        return self._app_token

    # -- Custom rewards -----------------------------------------------------
    async def create_custom_reward(
        self,
        broadcaster_id: str,
        token: str,
        *,
        title: str,
        cost: int,
        background_color: str | None = None,
        prompt: str | None = None,
    ) -> dict:
        body: dict = {"title": title[:45], "cost": cost, "is_enabled": True}
        if background_color:
            body["background_color"] = background_color
        if prompt:
            body["prompt"] = prompt[:200]
        data = await self._request(
            "POST", "/channel_points/custom_rewards", token,
            params={"broadcaster_id": broadcaster_id}, json=body,
        )
        return data["data"][0]

    async def update_custom_reward(
        self, broadcaster_id: str, token: str, reward_id: str, **fields,
    ) -> dict:
        data = await self._request(
            "PATCH", "/channel_points/custom_rewards", token,
            params={"broadcaster_id": broadcaster_id, "id": reward_id}, json=fields,
        )
        return data["data"][0]

    async def delete_custom_reward(self, broadcaster_id: str, token: str, reward_id: str) -> None:
        await self._request(
            "DELETE", "/channel_points/custom_rewards", token,
            params={"broadcaster_id": broadcaster_id, "id": reward_id},
        )

    async def list_custom_rewards(
        self, broadcaster_id: str, token: str, *, only_manageable: bool = True,
    ) -> list[dict]:
        data = await self._request(
            "GET", "/channel_points/custom_rewards", token,
            params={
                "broadcaster_id": broadcaster_id,
                "only_manageable_rewards": "true" if only_manageable else "false",
            },
        )
        rewards = data.get("data", [])
        if len(rewards) >= MAX_REWARDS_PER_CHANNEL:
            logger.warning("Channel %s is at the custom reward limit", broadcaster_id)
        return rewards

    async def cancel_redemptions(
        self, broadcaster_id: str, token: str, reward_id: str, redemption_ids: list[str],
    ) -> None:
        """Mark redemptions CANCELED, which refunds the viewer's points."""
        params: list[tuple[str, str]] = [
            ("broadcaster_id", broadcaster_id), ("reward_id", reward_id),
        ]
        params.extend(("id", rid) for rid in redemption_ids)
        await self._request(
            "PATCH", "/channel_points/custom_rewards/redemptions", token,
            params=params, json={"status": "CANCELED"},
        )

    # -- EventSub -----------------------------------------------------------
    async def list_eventsub_subscriptions(self, sub_type: str | None = None) -> list[dict]:
        token = await self.get_app_token()
        subs: list[dict] = []
        cursor: str | None = None
        while True:
            params: dict = {}
            if sub_type:
                params["type"] = sub_type
            if cursor:
                params["after"] = cursor
            data = await self._request("GET", "/eventsub/subscriptions", token, params=params)
            subs.extend(data.get("data", []))
            cursor = (data.get("pagination") or {}).get("cursor")
            if not cursor:
                return subs

    async def create_eventsub_subscription(
        self, sub_type: str, condition: dict, callback_url: str, secret: str, version: str = "1",
    ) -> dict:
        token = await self.get_app_token()
        data = await self._request(
            "POST", "/eventsub/subscriptions", token,
            json={
                "type": sub_type,
                "version": version,
                "condition": condition,
                "transport": {"method": "webhook", "callback": callback_url, "secret": secret},
            },
        )
        return data["data"][0]

    async def delete_eventsub_subscription(self, subscription_id: str) -> None:
        token = await self.get_app_token()
        await self._request(
            "DELETE", "/eventsub/subscriptions", token, params={"id": subscription_id},
        )

    # -- Chat, tokens, streams ---------------------------------------------
    async def send_chat_message(self, broadcaster_id: str, token: str, message: str) -> None:
        await self._request(
            "POST", "/chat/messages", token,
            json={"broadcaster_id": broadcaster_id, "sender_id": broadcaster_id,
                  "message": message[:500]},
        )

    async def validate_token(self, token: str) -> dict | None:
        """Token metadata, or ``None`` when Twitch rejects the token."""
        try:
            resp = await self._http.get(
                f"{self._oauth}/validate", headers={"Authorization": f"OAuth {token}"},
            )
        except httpx.HTTPError as exc:
            raise TwitchApiError(f"Token validation failed: {exc}") from exc
        if resp.status_code == 401:
            return None
        if resp.status_code != 200:
            raise TwitchApiError("Token validation failed", status_code=resp.status_code)
        return resp.json()

    async def get_viewer_counts(self, user_ids: list[str]) -> dict[str, int]:
        """Live viewer count per broadcaster id; offline channels are absent."""
        if not user_ids:
            return {}
        token = await self.get_app_token()
        data = await self._request(
            "GET", "/streams", token, params=[("user_id", uid) for uid in user_ids[:100]],
        )
        return {s["user_id"]: int(s.get("viewer_count", 0)) for s in data.get("data", [])}

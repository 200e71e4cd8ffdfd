"""Async HTTP client for the chat server API."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from .config import ClientSettings

logger = logging.getLogger(__name__)


class ChatClientError(Exception):
    """Raised when the chat server cannot be reached or rejects a request."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text or response.reason_phrase
    if isinstance(body, dict):
        for key in ("detail", "error", "message"):
            if isinstance(body.get(key), str):
                return body[key]
    return response.reason_phrase


class ChatApiClient:
    """Thin wrapper over the server routes under ``/api``.

    An existing :class:`httpx.AsyncClient` may be supplied, in which case the
    caller owns it and :meth:`aclose` leaves it open.
    """

    def __init__(
        self,
        base_url: str,
        *,
        http: httpx.AsyncClient | None = None,
        timeout: float = 10.0,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._owns_http = http is None
        self._http = http or httpx.AsyncClient(timeout=timeout)

    @classmethod
    def from_settings(cls, settings: ClientSettings, *, http: httpx.AsyncClient | None = None) -> "ChatApiClient":
        return cls(settings.api_url, http=http, timeout=settings.request_timeout_seconds)

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    async def __aenter__(self) -> "ChatApiClient":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        url = f"{self.base_url}{path}"
        try:
            response = await self._http.request(method, url, **kwargs)
        except httpx.HTTPError as exc:
            logger.warning("Chat server request failed", extra={"url": url})
            raise ChatClientError(f"Chat server is unreachable: {exc}") from exc
        if response.is_error:
            raise ChatClientError(_error_detail(response), status_code=response.status_code)
        return response.json()

    async def fetch_token(self, user_id: str) -> dict[str, Any]:
        return await self._request("GET", "/ably/token", params={"userId": user_id})

    async def register_user(self, user_id: str, email: str, username: str) -> dict[str, Any]:
        return await self._request(
            "POST",
            "/users/register",
            json={"userId": user_id, "email": email, "username": username},
        )

    async def set_status(self, user_id: str, is_online: bool) -> dict[str, Any]:
        return await self._request("POST", f"/users/{user_id}/status", json={"isOnline": is_online})

    async def get_status(self, user_id: str) -> bool:
        body = await self._request("GET", f"/users/{user_id}/status")
        return bool(body.get("isOnline"))

    async def list_rooms(self) -> list[dict[str, Any]]:
        return await self._request("GET", "/chat-rooms")

    async def fetch_messages(
        self,
        room_id: str,
        *,
        before: str | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        """Return one page of a room's history, most recent first."""

        params: dict[str, Any] = {}
        if before is not None:
            params["before"] = before
        if limit is not None:
            params["limit"] = limit
        return await self._request("GET", f"/chat-rooms/{room_id}/messages", params=params)

    async def send_message(
        self,
        room_id: str,
        sender_id: str,
        content: str,
        recipient_id: str | None = None,
    ) -> dict[str, Any]:
        body: dict[str, Any] = {"content": content, "senderId": sender_id}
        if recipient_id:
            body["recipientId"] = recipient_id
        return await self._request("POST", f"/chat-rooms/{room_id}/messages", json=body)

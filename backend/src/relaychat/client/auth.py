"""Identity service access and the signed-in session of a chat client."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

import httpx

from .api import ChatApiClient, ChatClientError
from .config import ClientSettings

logger = logging.getLogger(__name__)


class AuthError(Exception):
    """Raised when signing in, signing up or signing out fails."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code


@dataclass(slots=True, frozen=True)
class IdentityUser:
    id: str
    email: str | None = None
    username: str | None = None

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "IdentityUser":
        metadata = payload.get("user_metadata") or {}
        user_id = payload.get("id")
        if not isinstance(user_id, str) or not user_id:
            raise AuthError("Identity service returned a user without an id")
        return cls(id=user_id, email=payload.get("email"), username=metadata.get("username"))


@dataclass(slots=True, frozen=True)
class IdentitySession:
    """Tokens issued by the identity service for one signed-in user."""

    access_token: str
    user: IdentityUser
    refresh_token: str | None = None

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "IdentitySession":
        return cls(
            access_token=payload["access_token"],
            refresh_token=payload.get("refresh_token"),
            user=IdentityUser.from_payload(payload.get("user") or {}),
        )


def _identity_error(response: httpx.Response) -> AuthError:
    message = response.reason_phrase
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        for key in ("msg", "error_description", "message", "error"):
            if isinstance(body.get(key), str):
                message = body[key]
                break
    return AuthError(message, status_code=response.status_code)


class IdentityClient:
    """Password sign-in against the hosted auth REST API (``/auth/v1``)."""

    def __init__(
        self,
        base_url: str,
        anon_key: str,
        *,
        http: httpx.AsyncClient | None = None,
        timeout: float = 10.0,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._anon_key = anon_key
        self._owns_http = http is None
        self._http = http or httpx.AsyncClient(timeout=timeout)

    @classmethod
    def from_settings(cls, settings: ClientSettings, *, http: httpx.AsyncClient | None = None) -> "IdentityClient":
        if not settings.supabase_url or not settings.supabase_anon_key:
            raise AuthError("Identity service is not configured")
        return cls(
            settings.supabase_url,
            settings.supabase_anon_key,
            http=http,
            timeout=settings.request_timeout_seconds,
        )

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    def _headers(self, access_token: str | None = None) -> dict[str, str]:
        return {
            "apikey": self._anon_key,
            "Authorization": f"Bearer {access_token or self._anon_key}",
            "Content-Type": "application/json",
        }

    async def _post(
        self,
        path: str,
        *,
        json: dict[str, Any] | None = None,
        params: dict[str, str] | None = None,
        access_token: str | None = None,
    ) -> httpx.Response:
        try:
            response = await self._http.post(
                f"{self.base_url}/auth/v1{path}",
                json=json,
                params=params,
                headers=self._headers(access_token),
            )
        except httpx.HTTPError as exc:
            raise AuthError(f"Identity service is unreachable: {exc}") from exc
        if response.is_error:
            raise _identity_error(response)
        return response

    async def sign_up(
        self, email: str, password: str, username: str
    ) -> tuple[IdentityUser, IdentitySession | None]:
        """Create an identity; the session is None while email confirmation is pending."""

        response = await self._post(
            "/signup",
            json={"email": email, "password": password, "data": {"username": username}},
        )
        body = response.json()
        if "access_token" in body:
            session = IdentitySession.from_payload(body)
            return session.user, session
        return IdentityUser.from_payload(body), None

    async def sign_in(self, email: str, password: str) -> IdentitySession:
        response = await self._post(
            "/token",
            params={"grant_type": "password"},
            json={"email": email, "password": password},
        )
        return IdentitySession.from_payload(response.json())

    async def sign_out(self, access_token: str) -> None:
        await self._post("/logout", access_token=access_token)


SessionListener = Callable[[IdentitySession | None], Awaitable[None]]


class AuthSession:
    """Tracks the signed-in user and mirrors its online status to the server.

    Listeners registered with :meth:`subscribe` are awaited, in registration
    order, every time the session changes.
    """

    def __init__(self, identity: IdentityClient, api: ChatApiClient) -> None:
        self._identity = identity
        self._api = api
        self._session: IdentitySession | None = None
        self._listeners: list[SessionListener] = []

    @property
    def session(self) -> IdentitySession | None:
        return self._session

    @property
    def user(self) -> IdentityUser | None:
        return self._session.user if self._session else None

    def subscribe(self, listener: SessionListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    async def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                await listener(self._session)
            except Exception:
                logger.exception("Session listener failed")

    async def _establish(self, session: IdentitySession) -> None:
        self._session = session
        await self.set_online_status(True)
        await self._notify()

    async def restore(self, session: IdentitySession) -> None:
        await self._establish(session)

    async def sign_in(self, email: str, password: str) -> IdentitySession:
        session = await self._identity.sign_in(email, password)
        await self._establish(session)
        return session

    async def sign_up(self, email: str, password: str, username: str) -> IdentityUser:
        """Create the identity, then its profile row on the chat server."""

        user, session = await self._identity.sign_up(email, password, username)
        logger.info("Registering user profile", extra={"user_id": user.id})
        try:
            await self._api.register_user(user.id, email, username)
        except ChatClientError as exc:
            raise AuthError(exc.message, status_code=exc.status_code) from exc
        if session is not None:
            await self._establish(session)
        return user

    async def sign_out(self) -> None:
        session = self._session
        if session is None:
            return
        await self.set_online_status(False)
        try:
            await self._identity.sign_out(session.access_token)
        except AuthError:
            logger.warning("Identity session could not be revoked", exc_info=True)
        self._session = None
        await self._notify()

    async def set_online_status(self, is_online: bool) -> None:
        """Mirror the online flag to the server; failures are only logged."""

        user = self.user
        if user is None:
            return
        try:
            await self._api.set_status(user.id, is_online)
        except ChatClientError:
            logger.exception("Error updating online status", extra={"user_id": user.id})

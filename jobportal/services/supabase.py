from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Any
from urllib.parse import quote, unquote

import httpx

from jobportal.core.config import Settings
from jobportal.core.errors import AuthError
from jobportal.schemas.auth import AuthEvent, Session

logger = logging.getLogger(__name__)

AuthListener = Callable[[AuthEvent, Session | None], None]

NOT_FOUND_CODES = {"PGRST116"}
SINGLE_OBJECT_MEDIA_TYPE = "application/vnd.pgrst.object+json"


class BackendError(Exception):
    """Remote failure reported by the auth, data or storage service."""

    def __init__(self, message: str, *, status_code: int | None = None, code: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.code = code

    @property
    def not_found(self) -> bool:
        return self.status_code == 406 or self.code in NOT_FOUND_CODES


@dataclass(slots=True)
class QueryResult:
    data: Any
    error: BackendError | None = None


class SupabaseClient:
    """Explicitly constructed handle on one Supabase project.

    The client owns the HTTP connection pool unless one is injected, and holds
    the auth state used to sign table and storage requests.
    """

    def __init__(
        self,
        url: str,
        anon_key: str,
        *,
        http_client: httpx.AsyncClient | None = None,
        timeout_seconds: float = 10.0,
    ) -> None:
        self.url = url.rstrip("/")
        self.anon_key = anon_key
        self._owns_http_client = http_client is None
        self.http = http_client or httpx.AsyncClient(timeout=timeout_seconds)
        self.auth = AuthAPI(self)
        self.storage = StorageAPI(self)

    @classmethod
    def from_settings(cls, settings: Settings, *, http_client: httpx.AsyncClient | None = None) -> "SupabaseClient":
        return cls(
            settings.supabase_url,
            settings.supabase_anon_key,
            http_client=http_client,
            timeout_seconds=settings.request_timeout_seconds,
        )

    def table(self, name: str) -> "TableQuery":
        return TableQuery(self, name)

    def headers(self) -> dict[str, str]:
        session = self.auth.current_session
        token = session.access_token if session is not None else self.anon_key
        return {
            "apikey": self.anon_key,
            "Authorization": f"Bearer {token}",
        }

    async def aclose(self) -> None:
        if self._owns_http_client:
            await self.http.aclose()

    async def __aenter__(self) -> "SupabaseClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()


class Subscription:
    def __init__(self, listeners: list[AuthListener], callback: AuthListener) -> None:
        self._listeners = listeners
        self.callback = callback
        self.active = True

    def unsubscribe(self) -> None:
        if not self.active:
            return
        self.active = False
        if self.callback in self._listeners:
            self._listeners.remove(self.callback)


class AuthAPI:
    def __init__(self, client: SupabaseClient) -> None:
        self._client = client
        self._session: Session | None = None
        self._listeners: list[AuthListener] = []

    @property
    def current_session(self) -> Session | None:
        return self._session

    def on_auth_state_change(self, callback: AuthListener) -> Subscription:
        self._listeners.append(callback)
        return Subscription(self._listeners, callback)

    async def sign_in_with_password(self, email: str, password: str) -> Session:
        session = await self._token_request("password", {"email": email, "password": password})
        self._session = session
        self._emit(AuthEvent.SIGNED_IN, session)
        return session

    async def sign_out(self) -> None:
        session = self._session
        try:
            if session is not None:
                await self._logout(session)
        finally:
            self._session = None
            self._emit(AuthEvent.SIGNED_OUT, None)

    async def get_session(self) -> Session | None:
        session = self._session
        if session is None or not session.is_expired():
            return session

        if not session.refresh_token:
            self._session = None
            self._emit(AuthEvent.SIGNED_OUT, None)
            return None

        try:
            refreshed = await self._token_request("refresh_token", {"refresh_token": session.refresh_token})
        except AuthError:
            self._session = None
            self._emit(AuthEvent.SIGNED_OUT, None)
            raise

        self._session = refreshed
        self._emit(AuthEvent.TOKEN_REFRESHED, refreshed)
        return refreshed

    async def _token_request(self, grant_type: str, payload: dict[str, str]) -> Session:
        try:
            response = await self._client.http.post(
                f"{self._client.url}/auth/v1/token",
                params={"grant_type": grant_type},
                json=payload,
                headers={"apikey": self._client.anon_key},
            )
        except httpx.HTTPError as exc:
            raise AuthError("auth service unavailable") from exc

        if response.status_code != 200:
            error = backend_error_from_response(response)
            raise AuthError(error.message or "invalid login credentials")

        try:
            return Session.model_validate(response.json())
        except ValueError as exc:
            raise AuthError("auth service returned an unreadable session") from exc

    async def _logout(self, session: Session) -> None:
        headers = {
            "apikey": self._client.anon_key,
            "Authorization": f"Bearer {session.access_token}",
        }
        try:
            response = await self._client.http.post(f"{self._client.url}/auth/v1/logout", headers=headers)
        except httpx.HTTPError as exc:
            logger.warning("remote sign-out failed user_id=%s error=%s", session.user.id, exc)
            return
        # An already revoked token still counts as signed out.
        if response.status_code >= 400 and response.status_code not in {401, 403, 404}:
            logger.warning(
                "remote sign-out rejected user_id=%s status=%s", session.user.id, response.status_code
            )

    def _emit(self, event: AuthEvent, session: Session | None) -> None:
        for listener in list(self._listeners):
            try:
                listener(event, session)
            except Exception:
                logger.exception("auth listener failed event=%s", event.value)


class TableQuery:
    """PostgREST request builder for a single table."""

    def __init__(self, client: SupabaseClient, table: str) -> None:
        self._client = client
        self.table = table
        self.method = "GET"
        self.columns = "*"
        self.filters: list[tuple[str, str]] = []
        self.ordering: list[str] = []
        self.payload: Any = None
        self.single_row = False

    def select(self, columns: str = "*") -> "TableQuery":
        self.columns = "".join(columns.split())
        return self

    def eq(self, column: str, value: Any) -> "TableQuery":
        self.filters.append((column, f"eq.{_format_filter_value(value)}"))
        return self

    def order(self, column: str, *, ascending: bool = True) -> "TableQuery":
        self.ordering.append(f"{column}.{'asc' if ascending else 'desc'}")
        return self

    def single(self) -> "TableQuery":
        self.single_row = True
        return self

    def insert(self, record: dict[str, Any] | list[dict[str, Any]]) -> "TableQuery":
        self.method = "POST"
        self.payload = record
        return self

    def update(self, record: dict[str, Any]) -> "TableQuery":
        self.method = "PATCH"
        self.payload = record
        return self

    def build_params(self) -> list[tuple[str, str]]:
        params = [("select", self.columns), *self.filters]
        if self.ordering:
            params.append(("order", ",".join(self.ordering)))
        return params

    async def execute(self) -> QueryResult:
        headers = self._client.headers()
        if self.method != "GET":
            headers["Prefer"] = "return=representation"
        if self.single_row:
            headers["Accept"] = SINGLE_OBJECT_MEDIA_TYPE

        try:
            response = await self._client.http.request(
                self.method,
                f"{self._client.url}/rest/v1/{self.table}",
                params=self.build_params(),
                json=self.payload,
                headers=headers,
            )
        except httpx.HTTPError as exc:
            return QueryResult(data=None, error=BackendError(str(exc) or exc.__class__.__name__))

        if response.status_code >= 400:
            return QueryResult(data=None, error=backend_error_from_response(response))
        if not response.content:
            return QueryResult(data=None)
        try:
            return QueryResult(data=response.json())
        except ValueError:
            return QueryResult(
                data=None,
                error=BackendError("unreadable response body", status_code=response.status_code),
            )


class StorageAPI:
    def __init__(self, client: SupabaseClient) -> None:
        self._client = client

    def from_(self, bucket: str) -> "BucketAPI":
        return BucketAPI(self._client, bucket)


class BucketAPI:
    def __init__(self, client: SupabaseClient, bucket: str) -> None:
        self._client = client
        self.bucket = bucket

    async def upload(
        self,
        key: str,
        content: bytes,
        *,
        content_type: str = "application/octet-stream",
    ) -> BackendError | None:
        headers = self._client.headers()
        headers["Content-Type"] = content_type
        headers["x-upsert"] = "false"
        try:
            response = await self._client.http.post(self._object_url(key), content=content, headers=headers)
        except httpx.HTTPError as exc:
            return BackendError(str(exc) or exc.__class__.__name__)
        if response.status_code >= 400:
            return backend_error_from_response(response)
        return None

    async def remove(self, keys: Sequence[str]) -> BackendError | None:
        if not keys:
            return None
        try:
            response = await self._client.http.request(
                "DELETE",
                f"{self._client.url}/storage/v1/object/{self.bucket}",
                json={"prefixes": list(keys)},
                headers=self._client.headers(),
            )
        except httpx.HTTPError as exc:
            return BackendError(str(exc) or exc.__class__.__name__)
        if response.status_code >= 400:
            return backend_error_from_response(response)
        return None

    def get_public_url(self, key: str) -> str:
        return f"{self._client.url}/storage/v1/object/public/{self.bucket}/{quote(key)}"

    def key_from_public_url(self, url: str) -> str | None:
        prefix = f"{self._client.url}/storage/v1/object/public/{self.bucket}/"
        if not url.startswith(prefix):
            return None
        return unquote(url[len(prefix):])

    def _object_url(self, key: str) -> str:
        return f"{self._client.url}/storage/v1/object/{self.bucket}/{quote(key)}"


def backend_error_from_response(response: httpx.Response) -> BackendError:
    message = response.text or response.reason_phrase
    code: str | None = None
    try:
        payload = response.json()
    except ValueError:
        payload = None
    if isinstance(payload, dict):
        for key in ("message", "error_description", "msg", "error"):
            value = payload.get(key)
            if isinstance(value, str) and value:
                message = value
                break
        raw_code = payload.get("code") or payload.get("error_code")
        code = str(raw_code) if raw_code is not None else None
    return BackendError(message, status_code=response.status_code, code=code)


def _format_filter_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if hasattr(value, "value"):
        return str(value.value)
    return str(value)

from __future__ import annotations

import asyncio
from typing import Any

import httpx
import pytest

from fake_supabase import ANON_KEY, BASE_URL, FakeSupabase
from jobportal.core.errors import AuthError
from jobportal.schemas.auth import AuthEvent
from jobportal.services.supabase import SupabaseClient


def test_table_query_builds_postgrest_params() -> None:
    client = SupabaseClient(BASE_URL, ANON_KEY, http_client=httpx.AsyncClient())
    query = (
        client.table("jobs")
        .select("id, title,\n categories(name)")
        .eq("category_id", 3)
        .order("id", ascending=False)
    )

    assert query.build_params() == [
        ("select", "id,title,categories(name)"),
        ("category_id", "eq.3"),
        ("order", "id.desc"),
    ]
    asyncio.run(client.http.aclose())


def test_requests_use_anon_key_until_signed_in() -> None:
    fake = FakeSupabase()
    fake.seed_scenario()

    async def run() -> None:
        async with fake.client() as client:
            await client.table("categories").select("*").execute()
            await client.auth.sign_in_with_password("admin@example.com", "correct-horse")
            await client.table("categories").select("*").execute()

    asyncio.run(run())
    first, second = fake.requests_to("GET", "/rest/v1/categories")
    assert first.headers["apikey"] == ANON_KEY
    assert first.headers["authorization"] == f"Bearer {ANON_KEY}"
    assert second.headers["authorization"] == "Bearer access-1"


def test_execute_reports_errors_instead_of_raising() -> None:
    fake = FakeSupabase()
    fake.failures[("GET", "articles")] = 503

    async def run() -> Any:
        async with fake.client() as client:
            return await client.table("articles").select("*").execute()

    result = asyncio.run(run())
    assert result.data is None
    assert result.error is not None
    assert result.error.status_code == 503
    assert result.error.message == "articles unavailable"
    assert not result.error.not_found


def test_execute_reports_network_failures() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    async def run() -> Any:
        http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        async with SupabaseClient(BASE_URL, ANON_KEY, http_client=http_client) as client:
            result = await client.table("jobs").select("*").execute()
        await http_client.aclose()
        return result

    result = asyncio.run(run())
    assert result.error is not None
    assert result.error.status_code is None
    assert "connection refused" in result.error.message


def test_single_row_miss_is_flagged_not_found() -> None:
    fake = FakeSupabase()
    fake.seed_scenario()

    async def run() -> Any:
        async with fake.client() as client:
            return await client.table("jobs").select("*").eq("id", 404).single().execute()

    result = asyncio.run(run())
    assert result.error is not None
    assert result.error.not_found
    assert result.error.code == "PGRST116"


def test_sign_in_rejected_raises_auth_error_without_events() -> None:
    fake = FakeSupabase()
    events: list[AuthEvent] = []

    async def run() -> SupabaseClient:
        async with fake.client() as client:
            client.auth.on_auth_state_change(lambda event, session: events.append(event))
            with pytest.raises(AuthError, match="Invalid login credentials"):
                await client.auth.sign_in_with_password("admin@example.com", "wrong")
            return client

    client = asyncio.run(run())
    assert events == []
    assert client.auth.current_session is None


def test_expired_session_is_refreshed_on_read() -> None:
    fake = FakeSupabase()
    events: list[AuthEvent] = []

    async def run() -> tuple[str, str]:
        async with fake.client() as client:
            session = await client.auth.sign_in_with_password("admin@example.com", "correct-horse")
            client.auth._session = session.model_copy(update={"expires_at": 0})
            client.auth.on_auth_state_change(lambda event, _: events.append(event))
            refreshed = await client.auth.get_session()
            assert refreshed is not None
            return session.access_token, refreshed.access_token

    original, refreshed = asyncio.run(run())
    assert original == "access-1"
    assert refreshed == "access-2"
    assert events == [AuthEvent.TOKEN_REFRESHED]


def test_failed_refresh_signs_out() -> None:
    fake = FakeSupabase()
    events: list[AuthEvent] = []

    async def run() -> SupabaseClient:
        async with fake.client() as client:
            session = await client.auth.sign_in_with_password("admin@example.com", "correct-horse")
            fake.valid_refresh_tokens.clear()
            client.auth._session = session.model_copy(update={"expires_at": 0})
            client.auth.on_auth_state_change(lambda event, _: events.append(event))
            with pytest.raises(AuthError):
                await client.auth.get_session()
            return client

    client = asyncio.run(run())
    assert client.auth.current_session is None
    assert events == [AuthEvent.SIGNED_OUT]


def test_unsubscribe_is_idempotent() -> None:
    fake = FakeSupabase()
    events: list[AuthEvent] = []

    async def run() -> None:
        async with fake.client() as client:
            subscription = client.auth.on_auth_state_change(lambda event, _: events.append(event))
            subscription.unsubscribe()
            subscription.unsubscribe()
            await client.auth.sign_in_with_password("admin@example.com", "correct-horse")

    asyncio.run(run())
    assert events == []


def test_storage_public_url_round_trips_key() -> None:
    client = SupabaseClient(BASE_URL, ANON_KEY, http_client=httpx.AsyncClient())
    bucket = client.storage.from_("posters")

    url = bucket.get_public_url("1700000000000_job poster.png")

    assert url == f"{BASE_URL}/storage/v1/object/public/posters/1700000000000_job%20poster.png"
    assert bucket.key_from_public_url(url) == "1700000000000_job poster.png"
    assert bucket.key_from_public_url("https://cdn.example.com/other.png") is None
    asyncio.run(client.http.aclose())

from __future__ import annotations

import asyncio
from typing import Any

import pytest

from fake_supabase import FakeSupabase, TickingClock, public_url
from jobportal.core.errors import NotFoundError, PersistenceError, UploadError
from jobportal.schemas.listings import JobPosting, JobPostingForm, JobType, UploadFile
from jobportal.services.listings import ListingQueryEngine
from jobportal.services.mutations import RecordMutationService
from jobportal.services.supabase import SupabaseClient
from jobportal.services.uploads import AssetUploadPipeline

FORM = JobPostingForm.from_fields(
    {
        "title": "Platform Engineer",
        "company": "Acme",
        "location": "Remote",
        "job_type": "Remote",
        "description": "Run the platform.",
        "apply_link": "https://acme.example.com/apply",
        "category_id": "1",
    }
)


def _file(name: str) -> UploadFile:
    return UploadFile(filename=name, content=b"png", content_type="image/png")


def _service(client: SupabaseClient) -> tuple[RecordMutationService, ListingQueryEngine]:
    listings = ListingQueryEngine(client)
    uploads = AssetUploadPipeline(client, clock=TickingClock())
    return RecordMutationService(client, uploads, listings), listings


def _run_with_service(fake: FakeSupabase, action) -> Any:
    async def run() -> Any:
        async with fake.client() as client:
            service, listings = _service(client)
            return await action(service, listings)

    return asyncio.run(run())


def test_create_uploads_then_inserts_and_refetches() -> None:
    fake = FakeSupabase()
    fake.seed_scenario()

    async def action(service: RecordMutationService, listings: ListingQueryEngine) -> tuple[JobPosting | None, list[int]]:
        created = await service.create(FORM, [_file("a.png"), _file("b.png")])
        return created, [posting.id for posting in listings.postings]

    created, refreshed_ids = _run_with_service(fake, action)
    assert created is not None
    assert created.id == 7
    assert created.category_id == 1
    assert created.job_type is JobType.REMOTE
    assert created.poster_urls == [public_url("1700000000000_a.png"), public_url("1700000000001_b.png")]
    assert refreshed_ids == [7, 6, 5]

    paths = [request.url.path for request in fake.requests]
    upload_index = max(i for i, path in enumerate(paths) if path.startswith("/storage/"))
    insert_index = next(i for i, request in enumerate(fake.requests) if request.method == "POST" and "/rest/" in request.url.path)
    assert upload_index < insert_index


def test_create_without_files_stores_empty_poster_list() -> None:
    fake = FakeSupabase()
    blank_category = JobPostingForm.from_fields(
        {"title": "Clerk", "company": "Initech", "apply_link": "https://initech.example.com", "category_id": ""}
    )

    async def action(service: RecordMutationService, _: ListingQueryEngine) -> JobPosting | None:
        return await service.create(blank_category)

    created = _run_with_service(fake, action)
    assert created is not None
    assert created.poster_urls == []
    assert created.category_id is None
    assert fake.tables["jobs"][0]["poster_url"] == []
    assert fake.tables["jobs"][0]["job_type"] == "Full Time"


def test_create_upload_failure_writes_nothing() -> None:
    fake = FakeSupabase()
    fake.failing_uploads.add("b.png")

    async def action(service: RecordMutationService, _: ListingQueryEngine) -> None:
        await service.create(FORM, [_file("a.png"), _file("b.png")])

    with pytest.raises(UploadError):
        _run_with_service(fake, action)
    assert fake.tables["jobs"] == []
    assert fake.objects["posters"] == {}


def test_create_insert_rejection_raises_persistence_error_and_drops_uploads() -> None:
    fake = FakeSupabase()
    fake.failures[("POST", "jobs")] = 409

    async def action(service: RecordMutationService, _: ListingQueryEngine) -> None:
        await service.create(FORM, [_file("a.png")])

    with pytest.raises(PersistenceError, match="jobs unavailable"):
        _run_with_service(fake, action)
    assert fake.tables["jobs"] == []
    assert fake.removed == ["1700000000000_a.png"]


def test_update_appends_new_posters_in_file_order() -> None:
    fake = FakeSupabase()
    fake.seed_scenario()
    fake.tables["jobs"][0]["poster_url"] = ["x.png"]

    async def action(service: RecordMutationService, _: ListingQueryEngine) -> JobPosting:
        return await service.update(5, FORM, [_file("a.png"), _file("b.png")])

    updated = _run_with_service(fake, action)
    expected = ["x.png", public_url("1700000000000_a.png"), public_url("1700000000001_b.png")]
    assert updated.poster_urls == expected
    assert fake.tables["jobs"][0]["poster_url"] == expected
    assert fake.tables["jobs"][0]["title"] == "Platform Engineer"


def test_update_without_files_keeps_posters() -> None:
    fake = FakeSupabase()
    fake.seed_scenario()
    fake.tables["jobs"][1]["poster_url"] = ["x.png", "y.png"]

    async def action(service: RecordMutationService, _: ListingQueryEngine) -> JobPosting:
        return await service.update(6, FORM, [])

    updated = _run_with_service(fake, action)
    assert updated.poster_urls == ["x.png", "y.png"]
    assert fake.requests_to("POST", "/storage/") == []


def test_update_missing_record_raises_not_found_before_uploading() -> None:
    fake = FakeSupabase()
    fake.seed_scenario()

    async def action(service: RecordMutationService, _: ListingQueryEngine) -> None:
        await service.update(404, FORM, [_file("a.png")])

    with pytest.raises(NotFoundError):
        _run_with_service(fake, action)
    assert fake.requests_to("POST", "/storage/") == []
    assert fake.requests_to("PATCH", "/rest/v1/jobs") == []


def test_update_record_deleted_between_read_and_write(monkeypatch) -> None:
    fake = FakeSupabase()
    fake.seed_scenario()

    async def action(service: RecordMutationService, listings: ListingQueryEngine) -> None:
        original_fetch = listings.fetch_posting

        async def fetch_then_delete(posting_id: int) -> JobPosting:
            posting = await original_fetch(posting_id)
            fake.tables["jobs"] = [row for row in fake.tables["jobs"] if row["id"] != posting_id]
            return posting

        monkeypatch.setattr(listings, "fetch_posting", fetch_then_delete)
        await service.update(5, FORM, [_file("a.png")])

    with pytest.raises(NotFoundError):
        _run_with_service(fake, action)
    assert fake.removed == ["1700000000000_a.png"]


def test_update_write_rejection_raises_persistence_error() -> None:
    fake = FakeSupabase()
    fake.seed_scenario()
    fake.failures[("PATCH", "jobs")] = 500

    async def action(service: RecordMutationService, _: ListingQueryEngine) -> None:
        await service.update(5, FORM)

    with pytest.raises(PersistenceError):
        _run_with_service(fake, action)
    assert fake.tables["jobs"][0]["title"] == "Backend Engineer"


def test_refetch_failure_does_not_fail_the_write(caplog) -> None:
    fake = FakeSupabase()
    fake.seed_scenario()

    async def action(service: RecordMutationService, listings: ListingQueryEngine) -> tuple[JobPosting | None, list[int]]:
        await listings.fetch_postings()
        fake.failures[("GET", "jobs")] = 503
        created = await service.create(FORM)
        return created, [posting.id for posting in listings.postings]

    created, postings = _run_with_service(fake, action)
    assert created is not None
    assert postings == [6, 5]
    assert "refetch after write failed" in caplog.text


def test_refetch_keeps_selected_category() -> None:
    fake = FakeSupabase()
    fake.seed_scenario()

    async def action(service: RecordMutationService, listings: ListingQueryEngine) -> list[int]:
        await listings.select_category(2)
        await service.update(6, JobPostingForm.from_posting(await listings.fetch_posting(6), title="Senior Sales Rep"))
        return [posting.id for posting in listings.postings]

    assert _run_with_service(fake, action) == [6]
    assert fake.requests_to("GET", "/rest/v1/jobs")[-1].url.params["category_id"] == "eq.2"
    assert fake.tables["jobs"][1]["title"] == "Senior Sales Rep"

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Any

from opentelemetry import trace

from jobportal.core.errors import FetchError, NotFoundError, PersistenceError
from jobportal.schemas.listings import JobPosting, JobPostingForm, UploadFile
from jobportal.services.listings import JOBS_TABLE, ListingQueryEngine
from jobportal.services.supabase import SupabaseClient
from jobportal.services.uploads import AssetUploadPipeline

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


class RecordMutationService:
    """Create and edit postings: upload posters first, then write the record.

    Poster URLs only ever grow; an edit appends new uploads to the list read
    from the record just before the write. Successful writes refetch postings
    through the query engine instead of patching the rendered list.
    """

    def __init__(
        self,
        client: SupabaseClient,
        uploads: AssetUploadPipeline,
        listings: ListingQueryEngine,
    ) -> None:
        self._client = client
        self._uploads = uploads
        self._listings = listings

    async def create(self, form: JobPostingForm, files: Sequence[UploadFile] | None = None) -> JobPosting | None:
        with tracer.start_as_current_span("mutations.create"):
            poster_urls = await self._uploads.upload(files)
            record = {**form.to_record(), "poster_url": poster_urls}
            result = await self._client.table(JOBS_TABLE).insert(record).execute()
            if result.error is not None:
                logger.warning(
                    "posting insert rejected status=%s error=%s", result.error.status_code, result.error.message
                )
                await self._uploads.discard(poster_urls)
                raise PersistenceError(f"failed to save posting: {result.error.message}") from result.error

            posting = _first_posting(result.data)
            logger.info(
                "posting created id=%s posters=%d", posting.id if posting else None, len(poster_urls)
            )

        await self._refresh()
        return posting

    async def update(
        self,
        posting_id: int,
        form: JobPostingForm,
        files: Sequence[UploadFile] | None = None,
    ) -> JobPosting:
        with tracer.start_as_current_span("mutations.update") as span:
            span.set_attribute("mutations.posting_id", posting_id)
            try:
                existing = await self._listings.fetch_posting(posting_id)
            except FetchError as exc:
                raise PersistenceError(f"could not read posting {posting_id} before update") from exc

            new_urls = await self._uploads.upload(files)
            record = {**form.to_record(), "poster_url": [*existing.poster_urls, *new_urls]}
            result = await self._client.table(JOBS_TABLE).update(record).eq("id", posting_id).execute()

            if result.error is not None:
                await self._uploads.discard(new_urls)
                if result.error.not_found:
                    raise NotFoundError(f"posting {posting_id} not found") from result.error
                logger.warning(
                    "posting update rejected id=%s status=%s error=%s",
                    posting_id,
                    result.error.status_code,
                    result.error.message,
                )
                raise PersistenceError(f"failed to update posting {posting_id}: {result.error.message}") from result.error

            posting = _first_posting(result.data)
            if posting is None:
                # The record disappeared between the read and the write.
                await self._uploads.discard(new_urls)
                raise NotFoundError(f"posting {posting_id} not found")
            logger.info("posting updated id=%s new_posters=%d", posting_id, len(new_urls))

        await self._refresh()
        return posting

    async def _refresh(self) -> None:
        try:
            await self._listings.refresh_postings()
        except FetchError as exc:
            logger.warning("refetch after write failed; showing stale postings error=%s", exc)


def _first_posting(data: Any) -> JobPosting | None:
    rows = data if isinstance(data, list) else [data] if data else []
    if not rows:
        return None
    try:
        return JobPosting.model_validate(rows[0])
    except ValueError as exc:
        raise PersistenceError("saved posting could not be read back") from exc

from __future__ import annotations

import asyncio
import logging
from typing import Any, TypeVar

from opentelemetry import trace
from pydantic import BaseModel

from jobportal.core.errors import FetchError, NotFoundError
from jobportal.schemas.listings import Article, Category, JobPosting, PostingStats, POSTING_COLUMNS
from jobportal.services.supabase import QueryResult, SupabaseClient

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

JOBS_TABLE = "jobs"
CATEGORIES_TABLE = "categories"
ARTICLES_TABLE = "articles"
POSTING_SELECT = ",".join((*POSTING_COLUMNS, "categories(name)"))


class ListingQueryEngine:
    """Fetches postings, categories and articles and keeps the last good copy of each.

    Every fetch takes a token for its collection; starting a newer fetch for the
    same collection makes older tokens stale, and results carrying a stale token
    are dropped instead of overwriting newer data.
    """

    def __init__(self, client: SupabaseClient) -> None:
        self._client = client
        self.postings: list[JobPosting] = []
        self.categories: list[Category] = []
        self.articles: list[Article] = []
        self.selected_category: int | None = None
        self._generations: dict[str, int] = {}
        self._postings_task: asyncio.Task[list[JobPosting]] | None = None

    async def fetch_postings(self, category_id: int | None = None) -> list[JobPosting]:
        token = self._issue_token(JOBS_TABLE)
        with tracer.start_as_current_span("listings.fetch_postings") as span:
            if category_id is not None:
                span.set_attribute("listings.category_id", category_id)
            query = self._client.table(JOBS_TABLE).select(POSTING_SELECT).order("id", ascending=False)
            if category_id is not None:
                query = query.eq("category_id", category_id)
            result = await query.execute()
            postings = self._parse_rows(JobPosting, JOBS_TABLE, result, stale_count=len(self.postings))
            span.set_attribute("listings.row_count", len(postings))

        if not self._is_current(JOBS_TABLE, token):
            logger.info("discarding superseded postings result category_id=%s", category_id)
            return self.postings
        self.postings = postings
        return postings

    async def fetch_categories(self) -> list[Category]:
        token = self._issue_token(CATEGORIES_TABLE)
        with tracer.start_as_current_span("listings.fetch_categories"):
            result = await self._client.table(CATEGORIES_TABLE).select("*").order("name", ascending=True).execute()
            categories = self._parse_rows(Category, CATEGORIES_TABLE, result, stale_count=len(self.categories))

        if not self._is_current(CATEGORIES_TABLE, token):
            return self.categories
        self.categories = categories
        return categories

    async def fetch_articles(self) -> list[Article]:
        token = self._issue_token(ARTICLES_TABLE)
        with tracer.start_as_current_span("listings.fetch_articles"):
            result = await (
                self._client.table(ARTICLES_TABLE).select("*").order("date_posted", ascending=False).execute()
            )
            articles = self._parse_rows(Article, ARTICLES_TABLE, result, stale_count=len(self.articles))

        if not self._is_current(ARTICLES_TABLE, token):
            return self.articles
        self.articles = articles
        return articles

    async def fetch_posting(self, posting_id: int) -> JobPosting:
        with tracer.start_as_current_span("listings.fetch_posting") as span:
            span.set_attribute("listings.posting_id", posting_id)
            result = await self._client.table(JOBS_TABLE).select(POSTING_SELECT).eq("id", posting_id).single().execute()
            return self._parse_single(JobPosting, JOBS_TABLE, posting_id, result)

    async def fetch_article(self, article_id: int) -> Article:
        with tracer.start_as_current_span("listings.fetch_article") as span:
            span.set_attribute("listings.article_id", article_id)
            result = await self._client.table(ARTICLES_TABLE).select("*").eq("id", article_id).single().execute()
            return self._parse_single(Article, ARTICLES_TABLE, article_id, result)

    async def load_all(self, category_id: int | None = None) -> list[FetchError]:
        """Initial load: the three collections are fetched concurrently and fail independently."""
        self.selected_category = category_id
        outcomes = await asyncio.gather(
            self.fetch_categories(),
            self.fetch_postings(category_id),
            self.fetch_articles(),
            return_exceptions=True,
        )
        failures: list[FetchError] = []
        for outcome in outcomes:
            if isinstance(outcome, FetchError):
                failures.append(outcome)
            elif isinstance(outcome, BaseException):
                raise outcome
        return failures

    async def select_category(self, category_id: int | None) -> list[JobPosting]:
        """Refetch postings for a new category, cancelling the fetch it supersedes."""
        self.selected_category = category_id
        previous = self._postings_task
        if previous is not None and not previous.done():
            previous.cancel()

        task = asyncio.ensure_future(self.fetch_postings(category_id))
        self._postings_task = task
        await asyncio.wait({task})
        if task.cancelled():
            return self.postings
        return task.result()

    async def refresh_postings(self) -> list[JobPosting]:
        return await self.fetch_postings(self.selected_category)

    def stats(self) -> PostingStats:
        return PostingStats(
            postings=len(self.postings),
            categories=len(self.categories),
            postings_with_posters=sum(1 for posting in self.postings if posting.poster_urls),
        )

    def _issue_token(self, key: str) -> int:
        generation = self._generations.get(key, 0) + 1
        self._generations[key] = generation
        return generation

    def _is_current(self, key: str, token: int) -> bool:
        return self._generations.get(key) == token

    def _parse_rows(
        self,
        model: type[ModelT],
        table: str,
        result: QueryResult,
        *,
        stale_count: int,
    ) -> list[ModelT]:
        if result.error is not None:
            logger.warning(
                "fetch failed table=%s status=%s error=%s; keeping %d stale rows",
                table,
                result.error.status_code,
                result.error.message,
                stale_count,
            )
            raise FetchError(f"failed to fetch {table}: {result.error.message}") from result.error

        rows: Any = result.data or []
        if not isinstance(rows, list):
            raise FetchError(f"unexpected {table} payload: {type(rows).__name__}")
        try:
            return [model.model_validate(row) for row in rows]
        except ValueError as exc:
            logger.warning("fetch returned malformed rows table=%s error=%s", table, exc)
            raise FetchError(f"malformed {table} rows") from exc

    def _parse_single(self, model: type[ModelT], table: str, record_id: int, result: QueryResult) -> ModelT:
        error = result.error
        if (error is not None and error.not_found) or (error is None and not result.data):
            raise NotFoundError(f"{table} record {record_id} not found")
        if error is not None:
            logger.warning("fetch failed table=%s id=%s error=%s", table, record_id, error.message)
            raise FetchError(f"failed to fetch {table} record {record_id}: {error.message}") from error
        try:
            return model.model_validate(result.data)
        except ValueError as exc:
            raise FetchError(f"malformed {table} record {record_id}") from exc

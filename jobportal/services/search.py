from __future__ import annotations

from collections.abc import Sequence
from enum import Enum
from typing import Any, Generic, TypeVar

from jobportal.schemas.listings import Article, JobPosting

T = TypeVar("T")

POSTING_SEARCH_FIELDS = ("title", "company", "location", "job_type")
ARTICLE_SEARCH_FIELDS = ("title", "content")


def filter_items(items: Sequence[T], query: str | None, fields: Sequence[str]) -> list[T]:
    """Keep items whose joined display fields contain the query, case-insensitively.

    Input order is preserved. A blank query returns the items unchanged.
    """
    keyword = (query or "").strip().lower()
    if not keyword:
        return list(items)
    return [item for item in items if keyword in _haystack(item, fields)]


def filter_postings(items: Sequence[JobPosting], query: str | None) -> list[JobPosting]:
    return filter_items(items, query, POSTING_SEARCH_FIELDS)


def filter_articles(items: Sequence[Article], query: str | None) -> list[Article]:
    return filter_items(items, query, ARTICLE_SEARCH_FIELDS)


def _haystack(item: Any, fields: Sequence[str]) -> str:
    return " ".join(_display_text(getattr(item, field, None)) for field in fields).lower()


def _display_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, Enum):
        return str(value.value)
    return str(value)


class SearchView(Generic[T]):
    """Derived view over a fetched collection; recomputed whenever its inputs change."""

    def __init__(self, fields: Sequence[str], items: Sequence[T] = (), query: str = "") -> None:
        self.fields = tuple(fields)
        self._items: list[T] = list(items)
        self._query = query
        self._results = filter_items(self._items, self._query, self.fields)

    @property
    def query(self) -> str:
        return self._query

    @property
    def results(self) -> list[T]:
        return self._results

    def set_items(self, items: Sequence[T]) -> list[T]:
        self._items = list(items)
        return self._recompute()

    def set_query(self, query: str) -> list[T]:
        self._query = query
        return self._recompute()

    def _recompute(self) -> list[T]:
        self._results = filter_items(self._items, self._query, self.fields)
        return self._results

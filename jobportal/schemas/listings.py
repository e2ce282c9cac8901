from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from jobportal.core.errors import ValidationError

POSTING_COLUMNS = (
    "id",
    "title",
    "company",
    "location",
    "job_type",
    "description",
    "apply_link",
    "category_id",
    "poster_url",
    "date_posted",
)
REQUIRED_FORM_FIELDS = ("title", "company", "apply_link")


class JobType(str, Enum):
    FULL_TIME = "Full Time"
    PART_TIME = "Part Time"
    REMOTE = "Remote"
    CONTRACT = "Contract"

    @classmethod
    def parse(cls, value: Any) -> "JobType":
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            wanted = value.replace(" ", "").replace("-", "").lower()
            for member in cls:
                if member.value.replace(" ", "").lower() == wanted:
                    return member
        raise ValueError(f"unknown job type: {value!r}")


class Category(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    id: int
    name: str


class JobPosting(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    id: int
    title: str
    company: str | None = None
    location: str | None = None
    job_type: JobType | None = None
    description: str | None = None
    apply_link: str | None = None
    category_id: int | None = None
    category_name: str | None = None
    poster_urls: list[str] = Field(default_factory=list)
    date_posted: datetime | None = None

    @model_validator(mode="before")
    @classmethod
    def from_row(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        row = dict(data)
        if "poster_urls" not in row and "poster_url" in row:
            row["poster_urls"] = row.pop("poster_url")
        joined = row.pop("categories", None)
        if isinstance(joined, dict) and "category_name" not in row:
            row["category_name"] = joined.get("name")
        return row

    @field_validator("poster_urls", mode="before")
    @classmethod
    def null_posters(cls, value: Any) -> Any:
        return [] if value is None else value

    @field_validator("job_type", mode="before")
    @classmethod
    def parse_job_type(cls, value: Any) -> Any:
        if value is None or value == "":
            return None
        return JobType.parse(value)


class Article(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    id: int
    title: str
    content: str | None = None
    excerpt: str | None = None
    image: str | None = None
    date_posted: datetime | None = None


class JobPostingForm(BaseModel):
    """Operator input for creating or editing a posting."""

    model_config = ConfigDict(frozen=True)

    title: str
    company: str
    apply_link: str
    location: str = ""
    description: str = ""
    job_type: JobType | None = None
    category_id: int | None = None

    @classmethod
    def from_fields(
        cls,
        fields: Mapping[str, Any],
        *,
        default_job_type: JobType | None = JobType.FULL_TIME,
    ) -> "JobPostingForm":
        cleaned = {key: value.strip() if isinstance(value, str) else value for key, value in fields.items()}
        missing = [name for name in REQUIRED_FORM_FIELDS if not cleaned.get(name)]
        if missing:
            raise ValidationError(f"required fields are empty: {', '.join(missing)}", fields=missing)

        try:
            category_id = parse_category_id(cleaned.get("category_id"))
        except ValueError as exc:
            raise ValidationError(str(exc), fields=["category_id"]) from exc

        raw_job_type = cleaned.get("job_type") or default_job_type
        try:
            job_type = JobType.parse(raw_job_type) if raw_job_type is not None else None
        except ValueError as exc:
            raise ValidationError(str(exc), fields=["job_type"]) from exc

        return cls(
            title=cleaned["title"],
            company=cleaned["company"],
            apply_link=cleaned["apply_link"],
            location=cleaned.get("location") or "",
            description=cleaned.get("description") or "",
            job_type=job_type,
            category_id=category_id,
        )

    @classmethod
    def from_posting(cls, posting: JobPosting, **overrides: Any) -> "JobPostingForm":
        """Prefill the edit form from a stored posting, replacing any provided fields.

        A stored posting without a job type keeps none unless one is supplied.
        """
        fields: dict[str, Any] = {
            "title": posting.title,
            "company": posting.company,
            "apply_link": posting.apply_link,
            "location": posting.location,
            "description": posting.description,
            "job_type": posting.job_type,
            "category_id": posting.category_id,
        }
        fields.update({key: value for key, value in overrides.items() if value is not None})
        return cls.from_fields(fields, default_job_type=None)

    def to_record(self) -> dict[str, Any]:
        return {
            "title": self.title,
            "company": self.company,
            "location": self.location,
            "description": self.description,
            "apply_link": self.apply_link,
            "category_id": self.category_id,
            "job_type": self.job_type.value if self.job_type is not None else None,
        }


def parse_category_id(value: Any) -> int | None:
    if value is None:
        return None
    if isinstance(value, bool):
        raise ValueError(f"invalid category id: {value!r}")
    if isinstance(value, int):
        return value
    text = str(value).strip()
    if not text:
        return None
    if not text.isdigit():
        raise ValueError(f"invalid category id: {value!r}")
    return int(text)


@dataclass(slots=True, frozen=True)
class UploadFile:
    filename: str
    content: bytes
    content_type: str = "application/octet-stream"


@dataclass(slots=True, frozen=True)
class PostingStats:
    postings: int
    categories: int
    postings_with_posters: int

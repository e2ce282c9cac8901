from __future__ import annotations

import argparse
import asyncio
from collections.abc import AsyncIterator, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass
import logging
import mimetypes
from pathlib import Path
import sys

import httpx

from jobportal.core.config import Settings, get_settings
from jobportal.core.errors import PortalError
from jobportal.core.telemetry import configure_logging, setup_telemetry, shutdown_telemetry
from jobportal.schemas.listings import JobPosting, JobPostingForm, UploadFile, parse_category_id
from jobportal.services.access import AccessGate
from jobportal.services.listings import ListingQueryEngine
from jobportal.services.mutations import RecordMutationService
from jobportal.services.search import filter_articles, filter_postings
from jobportal.services.session import SessionManager
from jobportal.services.supabase import SupabaseClient
from jobportal.services.uploads import AssetUploadPipeline

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Portal:
    client: SupabaseClient
    sessions: SessionManager
    gate: AccessGate
    listings: ListingQueryEngine
    uploads: AssetUploadPipeline
    mutations: RecordMutationService


@asynccontextmanager
async def open_portal(settings: Settings, *, http_client: httpx.AsyncClient | None = None) -> AsyncIterator[Portal]:
    """Build every component around one backend client and tear them down together."""
    client = SupabaseClient.from_settings(settings, http_client=http_client)
    try:
        async with SessionManager(client.auth) as sessions:
            listings = ListingQueryEngine(client)
            uploads = AssetUploadPipeline(client, bucket=settings.poster_bucket)
            yield Portal(
                client=client,
                sessions=sessions,
                gate=AccessGate(sessions, login_path=settings.login_path),
                listings=listings,
                uploads=uploads,
                mutations=RecordMutationService(client, uploads, listings),
            )
    finally:
        await client.aclose()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="jobportal", description="Browse and manage job portal listings.")
    commands = parser.add_subparsers(dest="command", required=True)

    jobs = commands.add_parser("jobs", help="List job postings, newest first.")
    jobs.add_argument("--category", default=None, help="Category id to filter by.")
    jobs.add_argument("--search", default="", help="Free-text filter over title, company, location and type.")

    articles = commands.add_parser("articles", help="List articles, latest first.")
    articles.add_argument("--search", default="", help="Free-text filter over title and content.")

    commands.add_parser("categories", help="List categories.")

    for name in ("create", "update"):
        command = commands.add_parser(name, help=f"{name.capitalize()} a posting (requires sign-in).")
        if name == "update":
            command.add_argument("posting_id", type=int)
        command.add_argument("--email", required=True)
        command.add_argument("--password", required=True)
        command.add_argument("--title")
        command.add_argument("--company")
        command.add_argument("--location")
        command.add_argument("--job-type", dest="job_type")
        command.add_argument("--description")
        command.add_argument("--apply-link", dest="apply_link")
        command.add_argument("--category", dest="category_id")
        command.add_argument("--poster", dest="posters", action="append", default=[], type=Path)
    return parser


async def run_cli(argv: Sequence[str], settings: Settings, *, http_client: httpx.AsyncClient | None = None) -> int:
    args = build_parser().parse_args(argv)
    async with open_portal(settings, http_client=http_client) as portal:
        try:
            if args.command == "jobs":
                postings = await portal.listings.fetch_postings(parse_category_id(args.category))
                for posting in filter_postings(postings, args.search):
                    print(format_posting(posting))
            elif args.command == "articles":
                articles = await portal.listings.fetch_articles()
                for article in filter_articles(articles, args.search):
                    print(f"{article.id}\t{article.date_posted or '-'}\t{article.title}")
            elif args.command == "categories":
                for category in await portal.listings.fetch_categories():
                    print(f"{category.id}\t{category.name}")
            else:
                return await _run_mutation(portal, args)
        except (PortalError, ValueError, OSError) as exc:
            print(f"error: {exc}", file=sys.stderr)
            return 1
    return 0


async def _run_mutation(portal: Portal, args: argparse.Namespace) -> int:
    files = [load_upload(path) for path in args.posters]
    await portal.sessions.sign_in(args.email, args.password)
    decision = portal.gate.check()
    if not decision.allowed:
        print(f"error: sign-in required ({decision.redirect_to})", file=sys.stderr)
        return 1

    overrides = {
        "title": args.title,
        "company": args.company,
        "location": args.location,
        "job_type": args.job_type,
        "description": args.description,
        "apply_link": args.apply_link,
        "category_id": args.category_id,
    }
    try:
        if args.command == "create":
            form = JobPostingForm.from_fields({key: value for key, value in overrides.items() if value is not None})
            posting = await portal.mutations.create(form, files)
        else:
            existing = await portal.listings.fetch_posting(args.posting_id)
            form = JobPostingForm.from_posting(existing, **overrides)
            posting = await portal.mutations.update(args.posting_id, form, files)
    finally:
        await portal.sessions.sign_out()

    if posting is not None:
        print(format_posting(posting))
    return 0


def load_upload(path: Path) -> UploadFile:
    content_type, _ = mimetypes.guess_type(path.name)
    return UploadFile(
        filename=path.name,
        content=path.read_bytes(),
        content_type=content_type or "application/octet-stream",
    )


def format_posting(posting: JobPosting) -> str:
    job_type = posting.job_type.value if posting.job_type else "-"
    return "\t".join(
        (
            str(posting.id),
            posting.title,
            posting.company or "-",
            posting.location or "-",
            job_type,
            posting.category_name or "-",
            str(len(posting.poster_urls)),
        )
    )


def main() -> None:
    settings = get_settings()
    configure_logging(settings)
    telemetry_runtime = setup_telemetry(settings)
    try:
        exit_code = asyncio.run(run_cli(sys.argv[1:], settings))
    finally:
        shutdown_telemetry(telemetry_runtime)
    raise SystemExit(exit_code)


if __name__ == "__main__":
    main()

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Sequence

from opentelemetry import trace

from jobportal.core.errors import UploadError
from jobportal.schemas.listings import UploadFile
from jobportal.services.supabase import SupabaseClient

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


def object_key(filename: str, *, now: float) -> str:
    return f"{round(now * 1000)}_{filename}"


class AssetUploadPipeline:
    """Uploads a batch of files in order and hands back their public URLs.

    A batch is all-or-nothing for the caller: if any file fails, the objects
    already stored by that batch are removed and ``UploadError`` is raised.
    """

    def __init__(
        self,
        client: SupabaseClient,
        *,
        bucket: str = "posters",
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._bucket = client.storage.from_(bucket)
        self._clock = clock

    async def upload(self, files: Sequence[UploadFile] | None) -> list[str]:
        if not files:
            return []

        stored_keys: list[str] = []
        urls: list[str] = []
        with tracer.start_as_current_span("uploads.upload") as span:
            span.set_attribute("uploads.file_count", len(files))
            for file in files:
                key = object_key(file.filename, now=self._clock())
                error = await self._bucket.upload(key, file.content, content_type=file.content_type)
                if error is not None:
                    logger.warning(
                        "upload failed bucket=%s key=%s status=%s error=%s",
                        self._bucket.bucket,
                        key,
                        error.status_code,
                        error.message,
                    )
                    await self.remove_keys(stored_keys)
                    raise UploadError(f"failed to upload {file.filename}: {error.message}") from error
                stored_keys.append(key)
                urls.append(self._bucket.get_public_url(key))

        logger.info("uploaded files bucket=%s count=%d", self._bucket.bucket, len(urls))
        return urls

    async def discard(self, urls: Sequence[str]) -> None:
        keys = [key for key in (self._bucket.key_from_public_url(url) for url in urls) if key]
        await self.remove_keys(keys)

    async def remove_keys(self, keys: Sequence[str]) -> None:
        """Best-effort cleanup; a failed removal leaves orphans and is only logged."""
        if not keys:
            return
        error = await self._bucket.remove(keys)
        if error is not None:
            logger.error(
                "orphaned uploads left in storage bucket=%s keys=%s error=%s",
                self._bucket.bucket,
                list(keys),
                error.message,
            )
        else:
            logger.info("removed uploads bucket=%s count=%d", self._bucket.bucket, len(keys))

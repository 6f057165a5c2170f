"""
upload_cache.py
Document identity → uploaded OpenAI file id, uploading at most once.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, List, Optional, Sequence, Tuple, Union

import openai

from assistant_config import FILE_PURPOSE
from assistant_errors import UploadError
from core_assistant import SYSTEM_CLOCK, Clock, call_remote, get_client
from session_manager import SessionState

_logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


class UploadCache:
    def __init__(self, session: SessionState, *, client: Optional[Any] = None, clock: Optional[Clock] = None):
        self.session = session
        self._client = client
        self._clock = clock or SYSTEM_CLOCK

    @property
    def client(self) -> Any:
        return self._client or get_client()

    async def ensure_uploaded(self, document_id: str, local_path: PathLike) -> str:
        """Return the file id for *document_id*, uploading *local_path* if needed.

        The cache entry is written only after a successful upload, so a
        failed call can simply be retried.
        """
        cached = self.session.get_file_id(document_id)
        if cached:
            _logger.info("Using cached file ID for %s: %s", document_id, cached)
            return cached

        path = Path(local_path)
        try:
            content = path.read_bytes()
        except OSError as exc:
            raise UploadError(
                f"File does not exist or is unreadable: {path}",
                details={"document_id": document_id},
            ) from exc

        _logger.info("Uploading %s (%d bytes) for %s", path, len(content), document_id)
        try:
            fobj = await call_remote(
                self.client.files.create,
                file=(path.name, content),
                purpose=FILE_PURPOSE,
                label="files.create",
                clock=self._clock,
            )
        except openai.APIError as exc:
            raise UploadError(
                f"Failed to upload {path.name}: {exc}",
                details={"document_id": document_id},
            ) from exc

        file_id = getattr(fobj, "id", None)
        if not file_id:
            raise UploadError(
                f"Upload of {path.name} returned an empty file ID",
                details={"document_id": document_id},
            )

        self.session.remember_file(document_id, file_id)
        _logger.info("Uploaded %s → %s", document_id, file_id)
        return file_id

    async def ensure_uploaded_many(self, documents: Sequence[Tuple[str, PathLike]]) -> List[str]:
        """Upload several documents concurrently; ids come back in input order.

        The first failure is raised once every upload has settled, so
        successful uploads are still cached.
        """
        results = await asyncio.gather(
            *(self.ensure_uploaded(doc_id, path) for doc_id, path in documents),
            return_exceptions=True,
        )
        failures = [
            (doc_id, result)
            for (doc_id, _), result in zip(documents, results)
            if isinstance(result, BaseException)
        ]
        for doc_id, exc in failures:
            _logger.error("Upload failed for %s: %s", doc_id, exc)
        if failures:
            raise failures[0][1]
        return list(results)

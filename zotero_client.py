"""
zotero_client.py
Thin Zotero Web API v3 client: collections, collection items with PDF
attachment discovery, and PDF download into the local temp cache.
"""

from __future__ import annotations

import atexit
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Set, Tuple

import requests

from assistant_config import (
    HTTP_TIMEOUT_SECONDS,
    TEMP_DIR,
    ZOTERO_API_VERSION,
    ZOTERO_BASE_URL,
    ZOTERO_PAGE_SIZE,
)

_logger = logging.getLogger(__name__)

PDF_CONTENT_TYPE = "application/pdf"

ACADEMIC_ITEM_TYPES = frozenset({
    "journalArticle", "book", "bookSection", "document", "report",
    "conferencePaper", "thesis", "manuscript", "preprint", "blogPost",
    "webpage", "magazineArticle", "newspaperArticle", "letter", "interview",
    "presentation", "audioRecording", "videoRecording", "podcast", "case",
    "statute", "bill", "hearing", "patent", "map",
})


class ZoteroError(Exception):
    """Zotero request failed or returned something unusable."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


@dataclass(frozen=True)
class PdfAttachment:
    key: str
    title: str = "PDF"


@dataclass(frozen=True)
class DocumentReference:
    """A selectable library item. ``item_key`` is its document identity."""

    item_key: str
    title: str
    item_type: str = ""
    attachment_key: Optional[str] = None
    pdf_attachments: Tuple[PdfAttachment, ...] = field(default_factory=tuple)

    @property
    def has_pdf(self) -> bool:
        return bool(self.pdf_attachments) or self.attachment_key is not None

    @property
    def document_id(self) -> str:
        return self.item_key


@dataclass(frozen=True)
class Collection:
    key: str
    name: str
    num_items: int = 0
    parent_key: Optional[str] = None


class ZoteroClient:
    def __init__(
        self,
        api_key: str,
        user_id: str,
        *,
        base_url: str = ZOTERO_BASE_URL,
        temp_dir: Optional[Path] = None,
        session: Optional[requests.Session] = None,
        timeout: float = HTTP_TIMEOUT_SECONDS,
        max_retries: int = 4,
    ):
        self.user_id = user_id
        self.base_url = base_url.rstrip("/")
        self.temp_dir = Path(temp_dir or TEMP_DIR)
        self.timeout = timeout
        self.max_retries = max_retries
        self.http = session or requests.Session()
        self.http.headers.update({
            "Zotero-API-Version": ZOTERO_API_VERSION,
            "Authorization": f"Bearer {api_key}",
        })

    def _url(self, path: str) -> str:
        return f"{self.base_url}/users/{self.user_id}/{path.lstrip('/')}"

    # ──────────────────────────────────────────────────────────────
    #  HTTP with retry (429 Retry-After, 5xx, network errors)
    # ──────────────────────────────────────────────────────────────
    def _get(self, path: str, **kw: Any) -> requests.Response:
        url = self._url(path)
        retry_delay = 1.0
        last_exc: Optional[Exception] = None
        for attempt in range(self.max_retries):
            try:
                resp = self.http.get(url, timeout=self.timeout, **kw)
            except (requests.exceptions.Timeout, requests.exceptions.ConnectionError) as exc:
                last_exc = exc
                _logger.warning("Network error (%s). Retrying in %.0fs...", type(exc).__name__, retry_delay)
                time.sleep(retry_delay)
                retry_delay *= 2
                continue

            if resp.status_code == 429:
                wait_time = float(resp.headers.get("Retry-After", retry_delay))
                _logger.warning("Rate limit hit (429). Waiting %.0fs...", wait_time)
                time.sleep(wait_time)
                retry_delay *= 2
                continue
            if resp.status_code >= 500:
                _logger.warning("Server error (%d). Retrying in %.0fs...", resp.status_code, retry_delay)
                time.sleep(retry_delay)
                retry_delay *= 2
                continue
            if resp.status_code >= 400:
                raise ZoteroError(f"Zotero request failed: GET {path} → {resp.status_code}", resp.status_code)
            return resp

        raise ZoteroError(f"Zotero request failed after {self.max_retries} attempts: GET {path} ({last_exc})")

    def _get_json(self, path: str, **kw: Any) -> Any:
        resp = self._get(path, **kw)
        try:
            return resp.json()
        except ValueError as exc:
            raise ZoteroError(f"Invalid JSON from Zotero for {path}") from exc

    # ──────────────────────────────────────────────────────────────
    #  Collections & items
    # ──────────────────────────────────────────────────────────────
    def list_collections(self) -> List[Collection]:
        raw = self._get_json("collections")
        collections = []
        for entry in raw:
            data = entry.get("data", {})
            collections.append(Collection(
                key=entry.get("key") or data.get("key", ""),
                name=data.get("name", ""),
                num_items=int(entry.get("meta", {}).get("numItems", 0) or 0),
                parent_key=data.get("parentCollection") or None,
            ))
        return collections

    def _fetch_all_items(self, collection_key: str) -> List[Dict[str, Any]]:
        path = f"collections/{collection_key}/items"
        items: List[Dict[str, Any]] = []
        start = 0
        total: Optional[int] = None
        while True:
            resp = self._get(path, params={"format": "json", "include": "data", "limit": ZOTERO_PAGE_SIZE, "start": start})
            page = resp.json()
            items.extend(page)
            if total is None and resp.headers.get("Total-Results"):
                total = int(resp.headers["Total-Results"])
                _logger.info("Collection %s has %d total items", collection_key, total)
            start += len(page)
            if not page or len(page) < ZOTERO_PAGE_SIZE or (total is not None and start >= total):
                break
        _logger.info("Total %d items fetched", len(items))
        return items

    def pdf_attachments(self, item_key: str) -> List[PdfAttachment]:
        children = self._get_json(f"items/{item_key}/children")
        return [
            PdfAttachment(key=child["key"], title=child.get("data", {}).get("title") or "PDF")
            for child in children
            if child.get("data", {}).get("contentType") == PDF_CONTENT_TYPE
        ]

    def list_collection_documents(self, collection_key: str) -> List[DocumentReference]:
        """Academic items in a collection, each annotated with its PDF attachments.

        Attachments are listed on their own only when their parent is not
        in the collection.
        """
        raw = self._fetch_all_items(collection_key)
        present = {item.get("key") for item in raw}

        documents: List[DocumentReference] = []
        for item in raw:
            data = item.get("data", {})
            item_type = data.get("itemType", "")
            title = data.get("title") or "Untitled"
            if item_type == "attachment":
                parent = data.get("parentItem")
                if not parent or parent in present:
                    continue
                is_pdf = data.get("contentType") == PDF_CONTENT_TYPE
                documents.append(DocumentReference(
                    item_key=item["key"],
                    title=title,
                    item_type=item_type,
                    attachment_key=item["key"] if is_pdf else None,
                ))
                continue

            num_children = int(item.get("meta", {}).get("numChildren", 0) or 0)
            if item_type not in ACADEMIC_ITEM_TYPES and num_children == 0:
                continue
            try:
                pdfs = tuple(self.pdf_attachments(item["key"]))
            except ZoteroError as exc:
                _logger.error("Error checking attachments for item %s: %s", item["key"], exc)
                pdfs = ()
            documents.append(DocumentReference(
                item_key=item["key"],
                title=title,
                item_type=item_type,
                attachment_key=pdfs[0].key if pdfs else None,
                pdf_attachments=pdfs,
            ))

        _logger.info("Found %d academic items out of %d total items", len(documents), len(raw))
        return documents

    # ──────────────────────────────────────────────────────────────
    #  PDF download
    # ──────────────────────────────────────────────────────────────
    def _resolve_pdf_key(self, item_key: str) -> str:
        item = self._get_json(f"items/{item_key}")
        if item.get("data", {}).get("contentType") == PDF_CONTENT_TYPE:
            return item_key
        pdfs = self.pdf_attachments(item_key)
        if not pdfs:
            raise ZoteroError(f"No PDF attachment found for item {item_key}", 404)
        return pdfs[0].key

    def download_pdf(self, item_key: str, attachment_key: Optional[str] = None) -> Path:
        """Download the item's PDF to ``<temp_dir>/<item_key>.pdf`` and return the path."""
        pdf_key = attachment_key or self._resolve_pdf_key(item_key)
        resp = self._get(f"items/{pdf_key}/file")
        self.temp_dir.mkdir(parents=True, exist_ok=True)
        path = self.temp_dir / f"{item_key}.pdf"
        path.write_bytes(resp.content)
        _logger.info("Saved PDF for %s (%d bytes) to %s", item_key, len(resp.content), path)
        return path

    def cleanup_temp_files(self) -> int:
        """Delete downloaded PDFs; returns how many files were removed."""
        return cleanup_temp_dir(self.temp_dir)

    def register_cleanup(self) -> bool:
        """Clear this client's temp directory when the process exits."""
        return register_temp_cleanup(self.temp_dir)


# ──────────────────────────────────────────────────────────────────────
#  Temp directory housekeeping
# ──────────────────────────────────────────────────────────────────────
_registered_dirs: Set[Path] = set()


def cleanup_temp_dir(temp_dir: Path) -> int:
    temp_dir = Path(temp_dir)
    if not temp_dir.exists():
        return 0
    removed = 0
    for path in temp_dir.iterdir():
        if path.name == ".gitkeep" or not path.is_file():
            continue
        try:
            path.unlink()
            removed += 1
        except OSError as exc:
            _logger.error("Failed to delete temp file %s: %s", path.name, exc)
    if removed:
        _logger.info("Removed %d temp files from %s", removed, temp_dir)
    return removed


def register_temp_cleanup(temp_dir: Path) -> bool:
    """Register an atexit cleanup for *temp_dir*, once per directory.

    Returns False when the directory was already registered.
    """
    temp_dir = Path(temp_dir).resolve()
    if temp_dir in _registered_dirs:
        return False
    _registered_dirs.add(temp_dir)
    atexit.register(cleanup_temp_dir, temp_dir)
    return True

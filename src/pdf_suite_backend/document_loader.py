"""
Resolution of tracked file ids to parsed PDF documents.

Parsing and serializing each run on their own worker thread so every call
can be bounded by a deadline. The clock starts with the work itself, never
while queued. A job that overruns is abandoned: the request fails with a
timeout, the thread is left to finish, and whatever it produces is closed
once it does. Too many abandoned jobs at once make new work fail fast.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Any, Callable, Dict, Optional, Set, TypeVar

import pymupdf

from .errors import CorruptDocumentError, InvalidInputError, NotFoundError, OperationTimeoutError
from .file_store import TrackedFileStore
from .utils import FileKind

logger = logging.getLogger(__name__)

T = TypeVar("T")


class DocumentCache:
    """
    Per-request cache of opened documents, keyed by file id.

    Use as a context manager: every cached document is closed on exit. A cache
    must never outlive the request that created it.
    """

    def __init__(self) -> None:
        self._documents: Dict[str, pymupdf.Document] = {}

    def __contains__(self, file_id: str) -> bool:
        return file_id in self._documents

    def __len__(self) -> int:
        return len(self._documents)

    def get(self, file_id: str) -> Optional[pymupdf.Document]:
        return self._documents.get(file_id)

    def add(self, file_id: str, document: pymupdf.Document) -> None:
        self._documents[file_id] = document

    def close(self) -> None:
        for document in self._documents.values():
            document.close()
        self._documents.clear()

    def __enter__(self) -> "DocumentCache":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


class DocumentLoader:
    """
    Loads PDF documents for tracked file ids.

    Attributes:
        timeout_seconds: Deadline for a single parse or serialize
        max_stalled_jobs: Abandoned jobs tolerated before new work is refused
    """

    def __init__(self, store: TrackedFileStore, timeout_seconds: float = 60.0, max_stalled_jobs: int = 4) -> None:
        self._store = store
        self.timeout_seconds = timeout_seconds
        self.max_stalled_jobs = max_stalled_jobs
        self._lock = threading.Lock()
        self._stalled_jobs = 0
        self._parse_count = 0
        # documents still in use by an abandoned serialize, keyed by id()
        self._pinned: Dict[int, pymupdf.Document] = {}
        # pinned documents their caller has already let go of
        self._released: Set[int] = set()

    @property
    def store(self) -> TrackedFileStore:
        return self._store

    @property
    def parse_count(self) -> int:
        """Number of successful parses since the loader was created."""
        with self._lock:
            return self._parse_count

    @property
    def stalled_jobs(self) -> int:
        """Jobs that overran their deadline and are still running."""
        with self._lock:
            return self._stalled_jobs

    def resolve(self, file_id: str, cache: DocumentCache) -> pymupdf.Document:
        """
        Return the parsed document for ``file_id``, loading it at most once per cache.

        Args:
            file_id: Tracked file id
            cache: The request's document cache

        Returns:
            The opened document (owned by ``cache``)

        Raises:
            NotFoundError: If the id is not tracked or its file has disappeared
            InvalidInputError: If the file is not a PDF or is password protected
            CorruptDocumentError: If the file cannot be parsed
            OperationTimeoutError: If parsing exceeds the deadline
        """
        cached = cache.get(file_id)
        if cached is not None:
            return cached

        record = self._store.get(file_id)
        if record.kind is not FileKind.PDF:
            raise InvalidInputError(f"File {file_id} is not a PDF.")
        try:
            data = record.storage_path.read_bytes()
        except FileNotFoundError as exc:
            raise NotFoundError("File not found or expired.") from exc

        document = self.parse(data, label=file_id)
        cache.add(file_id, document)
        return document

    def parse(self, data: bytes, label: str = "document") -> pymupdf.Document:
        """
        Parse PDF bytes under the loader deadline.

        Raises:
            InvalidInputError: If the document is password protected
            CorruptDocumentError: If the bytes are not a readable PDF
            OperationTimeoutError: If parsing exceeds the deadline
        """
        document = self._run_with_deadline(
            lambda: _open_pdf(data, label),
            f"parsing {label}",
            on_late_result=lambda late: late.close(),
        )
        with self._lock:
            self._parse_count += 1
        if document.needs_pass:
            document.close()
            raise InvalidInputError("Password-protected PDFs are not supported.")
        return document

    def serialize(self, document: pymupdf.Document, label: str = "document") -> bytes:
        """
        Serialize a document under the loader deadline.

        On timeout the document stays pinned to the abandoned job; ``release``
        leaves it open and it is closed once the job finishes.
        """
        return self._run_with_deadline(
            lambda: document.tobytes(garbage=3, deflate=True),
            f"serializing {label}",
            pinned=document,
        )

    def release(self, document: pymupdf.Document) -> None:
        """Close a document the caller created, or hand it to the abandoned job still using it."""
        with self._lock:
            if id(document) in self._pinned:
                self._released.add(id(document))
                return
        document.close()

    def _run_with_deadline(
        self,
        func: Callable[[], T],
        description: str,
        on_late_result: Optional[Callable[[Any], None]] = None,
        pinned: Optional[pymupdf.Document] = None,
    ) -> T:
        with self._lock:
            if self._stalled_jobs >= self.max_stalled_jobs:
                logger.error(f"Refusing {description}: {self._stalled_jobs} earlier job(s) still stalled")
                raise OperationTimeoutError()

        future: Future = Future()
        future.set_running_or_notify_cancel()

        def work() -> None:
            try:
                future.set_result(func())
            except BaseException as exc:
                future.set_exception(exc)

        threading.Thread(target=work, name="document-io", daemon=True).start()
        try:
            return future.result(timeout=self.timeout_seconds)
        except FutureTimeoutError as exc:
            with self._lock:
                self._stalled_jobs += 1
                if pinned is not None:
                    self._pinned[id(pinned)] = pinned
            logger.error(f"Timed out after {self.timeout_seconds:g}s while {description}")
            future.add_done_callback(lambda done: self._reap(done, description, on_late_result, pinned))
            raise OperationTimeoutError() from exc

    def _reap(
        self,
        future: Future,
        description: str,
        on_late_result: Optional[Callable[[Any], None]],
        pinned: Optional[pymupdf.Document],
    ) -> None:
        close_pinned = False
        with self._lock:
            self._stalled_jobs -= 1
            if pinned is not None:
                self._pinned.pop(id(pinned), None)
                close_pinned = id(pinned) in self._released
                self._released.discard(id(pinned))
        logger.warning(f"Abandoned job finished: {description}")
        if close_pinned:
            pinned.close()
        if on_late_result is not None and future.exception() is None:
            on_late_result(future.result())


def _open_pdf(data: bytes, label: str) -> pymupdf.Document:
    try:
        document = pymupdf.open(stream=data, filetype="pdf")
    except Exception as exc:
        logger.error(f"Failed to parse {label}: {exc}")
        raise CorruptDocumentError() from exc
    if document.page_count == 0 and not document.needs_pass:
        document.close()
        logger.error(f"Failed to parse {label}: no pages")
        raise CorruptDocumentError()
    return document

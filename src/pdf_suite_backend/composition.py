"""
Page composition: building one output PDF from pages of one or more sources.

Every PDF-producing operation (merge, split, organize) is expressed as a
CompositionPlan, an ordered list of SourcePage entries, and executed by the
same engine. The engine writes pages in plan order; callers decide the order.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence, Tuple

import pymupdf

from .document_loader import DocumentCache, DocumentLoader
from .errors import (
    EmptyOutputError,
    InvalidInputError,
    InvalidPageIndexError,
    NotFoundError,
    SourceNotFoundError,
)

logger = logging.getLogger(__name__)


def normalize_rotation(degrees: int) -> int:
    """
    Normalize a rotation to one of 0, 90, 180 or 270.

    Raises:
        InvalidInputError: If ``degrees`` is not a multiple of 90
    """
    if degrees % 90 != 0:
        raise InvalidInputError(f"Rotation must be a multiple of 90 degrees, got {degrees}.")
    return degrees % 360


@dataclass(frozen=True)
class SourcePage:
    """
    One slot of a composition plan.

    ``rotation`` of None keeps whatever rotation the source page has; any
    other value replaces it.
    """

    source_id: str
    page_index: int
    rotation: Optional[int] = None
    deleted: bool = False

    def __post_init__(self) -> None:
        if self.rotation is not None:
            object.__setattr__(self, "rotation", normalize_rotation(self.rotation))


@dataclass(frozen=True)
class CompositionPlan:
    pages: Tuple[SourcePage, ...]

    @property
    def live_pages(self) -> List[SourcePage]:
        return [page for page in self.pages if not page.deleted]

    def __len__(self) -> int:
        return len(self.pages)


@dataclass(frozen=True)
class PageRange:
    """A 1-based, inclusive page range."""

    start: int
    end: int

    @property
    def page_count(self) -> int:
        return self.end - self.start + 1


def page_level_plan(entries: Iterable[SourcePage]) -> CompositionPlan:
    return CompositionPlan(pages=tuple(entries))


def file_level_plan(source_ids: Sequence[str], loader: DocumentLoader, cache: DocumentCache) -> CompositionPlan:
    """
    Plan the concatenation of whole documents in the given order.

    Raises:
        SourceNotFoundError: If a source id is not tracked
    """
    pages: List[SourcePage] = []
    for source_id in source_ids:
        document = resolve_source(loader, source_id, cache)
        pages.extend(SourcePage(source_id=source_id, page_index=index) for index in range(document.page_count))
    return CompositionPlan(pages=tuple(pages))


def clamp_range(start: int, end: Optional[int], page_count: int) -> PageRange:
    """
    Clamp a 1-based inclusive range to ``[1, page_count]``.

    ``end`` defaults to ``start``.

    Raises:
        InvalidInputError: If nothing of the range is left after clamping
    """
    if end is None:
        end = start
    clamped = PageRange(start=max(1, start), end=min(page_count, end))
    if clamped.start > clamped.end:
        raise InvalidInputError(f"Page range {start}-{end} does not select any page of a {page_count}-page document.")
    return clamped


def range_plans(
    source_id: str,
    ranges: Sequence[Tuple[int, Optional[int]]],
    page_count: int,
) -> List[Tuple[PageRange, CompositionPlan]]:
    """One contiguous plan per requested range, in request order."""
    if not ranges:
        raise InvalidInputError("At least one page range is required.")
    plans = []
    for start, end in ranges:
        page_range = clamp_range(start, end, page_count)
        pages = tuple(
            SourcePage(source_id=source_id, page_index=number - 1)
            for number in range(page_range.start, page_range.end + 1)
        )
        plans.append((page_range, CompositionPlan(pages=pages)))
    return plans


def extract_all_plans(source_id: str, page_count: int) -> List[Tuple[PageRange, CompositionPlan]]:
    return range_plans(source_id, [(number, number) for number in range(1, page_count + 1)], page_count)


class CompositionEngine:
    """Executes composition plans against tracked source documents."""

    def __init__(self, loader: DocumentLoader) -> None:
        self._loader = loader

    def compose(self, plan: CompositionPlan, cache: Optional[DocumentCache] = None) -> bytes:
        """
        Build a new PDF from the plan's non-deleted pages, in plan order.

        Each page is copied whole from its source; an explicit rotation is set
        as the page's absolute rotation. On any failure nothing is returned.

        Args:
            plan: Pages to write
            cache: Document cache shared with the caller's request; a private
                one is used (and closed) when omitted

        Returns:
            The serialized output document

        Raises:
            EmptyOutputError: If every entry is deleted (or the plan is empty)
            SourceNotFoundError: If an entry references an unknown source
            InvalidPageIndexError: If an entry's page index is out of range
        """
        live_pages = plan.live_pages
        if not live_pages:
            raise EmptyOutputError()

        if cache is None:
            with DocumentCache() as private_cache:
                return self._compose(live_pages, private_cache)
        return self._compose(live_pages, cache)

    def _compose(self, live_pages: List[SourcePage], cache: DocumentCache) -> bytes:
        output = pymupdf.open()
        try:
            for entry in live_pages:
                source = resolve_source(self._loader, entry.source_id, cache)
                if not 0 <= entry.page_index < source.page_count:
                    raise InvalidPageIndexError(entry.source_id, entry.page_index, source.page_count)
                output.insert_pdf(source, from_page=entry.page_index, to_page=entry.page_index)
                if entry.rotation is not None:
                    output[output.page_count - 1].set_rotation(entry.rotation)
            data = self._loader.serialize(output, label="composed output")
        finally:
            self._loader.release(output)
        logger.debug(f"Composed {len(live_pages)} page(s) from {len(cache)} source(s)")
        return data


def resolve_source(loader: DocumentLoader, source_id: str, cache: DocumentCache) -> pymupdf.Document:
    """Resolve a plan source, reporting an unknown id as SourceNotFoundError."""
    try:
        return loader.resolve(source_id, cache)
    except NotFoundError as exc:
        raise SourceNotFoundError(source_id) from exc

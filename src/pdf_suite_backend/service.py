"""
Operation orchestration for the PDF suite API.

PdfToolService is the single entry point the HTTP layer talks to. It turns
requests into composition plans or conversion calls, writes every result into
the tracked file store, and returns response models. Each operation allocates
its own DocumentCache and closes it before returning.
"""

from __future__ import annotations

import logging
from typing import List, Optional, Sequence

from .composition import (
    CompositionEngine,
    SourcePage,
    extract_all_plans,
    file_level_plan,
    page_level_plan,
    range_plans,
    resolve_source,
)
from .conversion import (
    DEFAULT_RENDER_DPI,
    RasterImage,
    assemble_images,
    compression_settings,
    decode_data_uri,
    jpeg_quality,
    page_info,
    probe_image,
    reduction_percent,
    render_page_jpeg,
    render_plan,
)
from .document_loader import DocumentCache, DocumentLoader
from .errors import InvalidInputError, NotFoundError, TooManyError
from .file_store import OUTPUT_AREA, FileRecord, TrackedFileStore
from .models import (
    CompressRequest,
    CompressResponse,
    CompressSaveRequest,
    CompressSaveResponse,
    DeleteResponse,
    DocumentResponse,
    ExpiryResponse,
    JpgToPdfRequest,
    MergeRequest,
    OrganizeRequest,
    OutputFile,
    PageDetails,
    PageDimensions,
    PdfInfoResponse,
    PdfToJpgRequest,
    PdfToJpgResponse,
    RenderedPage,
    SplitRequest,
    SplitResponse,
    UploadedFile,
)
from .utils import FileKind, base_name, sanitize_filename

logger = logging.getLogger(__name__)

OUTPUT_OWNER = "output"


def to_millis(epoch_seconds: float) -> int:
    return int(epoch_seconds * 1000)


class PdfToolService:
    """
    Coordinates the store, loader, composition engine and conversion adapters.

    Thread Safety:
        Holds no mutable state of its own; concurrency is delegated to the
        store. Document caches are per call and never shared.
    """

    def __init__(self, store: TrackedFileStore, loader: DocumentLoader, max_images: int = 2000) -> None:
        self.store = store
        self.loader = loader
        self.max_images = max_images
        self.engine = CompositionEngine(loader)

    def _save_output(self, data: bytes, filename: str, kind: FileKind = FileKind.PDF) -> FileRecord:
        """Write generated bytes to the outputs area and start tracking them."""
        _, path = self.store.allocate(kind, OUTPUT_AREA)
        try:
            path.write_bytes(data)
            record = self.store.put(path, OUTPUT_OWNER, filename, kind)
        except Exception:
            path.unlink(missing_ok=True)
            raise
        logger.info(f"Created {filename} as {record.id} ({record.size_bytes} bytes)")
        return record

    def _output_file(self, record: FileRecord) -> OutputFile:
        return OutputFile(
            file_id=record.id,
            filename=record.original_name,
            size=record.size_bytes,
            expiry=to_millis(record.expires_at),
        )

    def _document_response(self, record: FileRecord, page_count: int) -> DocumentResponse:
        return DocumentResponse(**self._output_file(record).model_dump(), page_count=page_count)

    def _pdf_record(self, file_id: str) -> FileRecord:
        record = self.store.get(file_id)
        if record.kind is not FileKind.PDF:
            raise InvalidInputError(f"File {file_id} is not a PDF.")
        return record

    def _source_base_name(self, file_id: str) -> str:
        try:
            return base_name(self.store.get(file_id).original_name)
        except NotFoundError:
            return "document"

    def describe_upload(self, record: FileRecord) -> UploadedFile:
        return UploadedFile(
            id=record.id,
            original_name=record.original_name,
            size=record.size_bytes,
            expiry=to_millis(record.expires_at),
        )

    def lookup(self, file_id: str) -> FileRecord:
        return self.store.get(file_id)

    def merge(self, request: MergeRequest) -> DocumentResponse:
        """
        Merge two or more PDFs, either whole files in order or page by page.

        Raises:
            InvalidInputError: If fewer than 2 files are given
            SourceNotFoundError: If a referenced file is not tracked
        """
        if len(request.file_ids) < 2:
            raise InvalidInputError("At least 2 files required for merge.")

        with DocumentCache() as cache:
            for file_id in request.file_ids:
                resolve_source(self.loader, file_id, cache)

            if request.pages is not None:
                plan = page_level_plan(
                    SourcePage(source_id=page.file_id, page_index=page.page_index, rotation=page.rotation)
                    for page in request.pages
                )
                first_id = request.pages[0].file_id if request.pages else request.file_ids[0]
            else:
                ordered_ids = request.order or request.file_ids
                plan = file_level_plan(ordered_ids, self.loader, cache)
                first_id = ordered_ids[0]
            data = self.engine.compose(plan, cache)

        record = self._save_output(data, f"merged_{self._source_base_name(first_id)}.pdf")
        return self._document_response(record, len(plan.live_pages))

    def split(self, request: SplitRequest) -> SplitResponse:
        """
        Split one PDF into several, by ranges or one file per page.

        Every range is validated before anything is written; if a later step
        fails, outputs already written by this call are removed again.
        """
        source = self._pdf_record(request.file_id)
        base = base_name(source.original_name)
        created: List[FileRecord] = []

        with DocumentCache() as cache:
            document = self.loader.resolve(request.file_id, cache)
            total_pages = document.page_count

            if request.extract_all:
                plans = extract_all_plans(request.file_id, total_pages)
                filenames = [f"split_{base}_page{page_range.start}.pdf" for page_range, _ in plans]
            else:
                ranges = [(entry.start, entry.end) for entry in request.ranges or []]
                plans = range_plans(request.file_id, ranges, total_pages)
                # Named after the range as requested, before clamping
                filenames = [f"split_{base}_pages{start}-{start if end is None else end}.pdf" for start, end in ranges]

            try:
                for (_, plan), filename in zip(plans, filenames):
                    data = self.engine.compose(plan, cache)
                    created.append(self._save_output(data, filename))
            except Exception:
                for record in created:
                    self.store.delete(record.id)
                raise

        return SplitResponse(files=[self._output_file(record) for record in created], total_pages=total_pages)

    def organize(self, request: OrganizeRequest) -> DocumentResponse:
        """
        Reorder, rotate, delete and insert pages of a PDF.

        ``pages`` may pull pages from other tracked PDFs via ``source_file``;
        an unknown source fails the whole call. Without ``pages`` the legacy
        ``operations`` form (order, rotations, deletions) applies to the
        primary file only.
        """
        self._pdf_record(request.file_id)

        with DocumentCache() as cache:
            document = self.loader.resolve(request.file_id, cache)

            if request.pages is not None:
                entries = [
                    SourcePage(
                        source_id=page.source_file or request.file_id,
                        page_index=page.index,
                        rotation=page.rotation,
                        deleted=page.deleted,
                    )
                    for page in request.pages
                ]
            else:
                operations = request.operations
                order = list(range(document.page_count))
                rotations = {}
                deletions: Sequence[int] = ()
                if operations is not None:
                    order = operations.order if operations.order is not None else order
                    rotations = operations.rotations
                    deletions = operations.deletions
                entries = [
                    SourcePage(
                        source_id=request.file_id,
                        page_index=index,
                        rotation=rotations.get(index),
                        deleted=index in deletions,
                    )
                    for index in order
                ]
            plan = page_level_plan(entries)
            data = self.engine.compose(plan, cache)

        record = self._save_output(data, f"organized_{self._source_base_name(request.file_id)}.pdf")
        return self._document_response(record, len(plan.live_pages))

    def compress(self, request: CompressRequest) -> CompressResponse:
        """
        Work out raster round-trip parameters for compressing a PDF.

        The client renders pages with these parameters and posts the JPEGs
        back to ``compress_save``.
        """
        record = self._pdf_record(request.file_id)
        settings = compression_settings(
            level=request.level,
            target_bytes=request.target_bytes,
            original_bytes=record.size_bytes,
        )
        with DocumentCache() as cache:
            document = self.loader.resolve(request.file_id, cache)
            pages = [
                PageDimensions(index=info.index, width=info.width, height=info.height)
                for info in page_info(document)
            ]

        return CompressResponse(
            file_id=record.id,
            original_size=record.size_bytes,
            page_count=len(pages),
            pages=pages,
            quality=settings.quality,
            dpi=settings.dpi,
            level="custom" if request.target_bytes is not None else str(request.level),
            base_name=base_name(record.original_name),
        )

    def compress_save(self, request: CompressSaveRequest) -> CompressSaveResponse:
        """
        Assemble client-rendered JPEG pages into the compressed PDF.

        The reduction is measured from the bytes actually written.
        """
        if not request.images:
            raise InvalidInputError("No images provided.")
        if len(request.images) > self.max_images:
            raise TooManyError(f"Too many images. Maximum is {self.max_images} pages.")
        if request.original_size <= 0:
            raise InvalidInputError("Original size must be positive.")

        images = [probe_image(decode_data_uri(value)) for value in request.images]
        data = assemble_images(images, self.loader, paper_size="original")
        base = sanitize_filename(request.base_name, default="document")
        record = self._save_output(data, f"compressed_{base}.pdf")

        return CompressSaveResponse(
            file_id=record.id,
            filename=record.original_name,
            original_size=request.original_size,
            compressed_size=record.size_bytes,
            reduction=reduction_percent(request.original_size, record.size_bytes),
            expiry=to_millis(record.expires_at),
        )

    def pdf_to_jpg(self, request: PdfToJpgRequest) -> PdfToJpgResponse:
        """Page count and pixel sizes for rendering a PDF to JPEG images."""
        self._pdf_record(request.file_id)
        with DocumentCache() as cache:
            document = self.loader.resolve(request.file_id, cache)
            plan = render_plan(document, request.quality, request.dpi or DEFAULT_RENDER_DPI)

        return PdfToJpgResponse(
            file_id=request.file_id,
            pages=[
                RenderedPage(page=page.page, width=page.width, height=page.height, quality=plan.quality)
                for page in plan.pages
            ],
            total_pages=plan.page_count,
            quality=plan.quality,
            scale=plan.scale,
        )

    def render_page(self, file_id: str, page_number: int, quality: Optional[str], dpi: Optional[int]) -> bytes:
        """Render one page (1-based) of a tracked PDF to JPEG."""
        self._pdf_record(file_id)
        with DocumentCache() as cache:
            document = self.loader.resolve(file_id, cache)
            return render_page_jpeg(
                document,
                page_number,
                dpi=dpi or DEFAULT_RENDER_DPI,
                quality=jpeg_quality(quality),
                source_id=file_id,
            )

    def jpg_to_pdf(self, request: JpgToPdfRequest) -> DocumentResponse:
        """
        Combine uploaded JPEG/PNG images into one PDF, one page per image.

        Raises:
            InvalidInputError: If no images are given or a file is not an image
            NotFoundError: If an image id is not tracked
        """
        ordered_ids = request.order or request.file_ids
        if not ordered_ids:
            raise InvalidInputError("At least 1 image required.")

        images: List[RasterImage] = []
        for file_id in ordered_ids:
            try:
                record = self.store.get(file_id)
                data = record.storage_path.read_bytes()
            except (NotFoundError, FileNotFoundError) as exc:
                raise NotFoundError(f"Image {file_id} not found.") from exc
            if not record.kind.is_image:
                raise InvalidInputError(f"File {file_id} is not a JPG or PNG image.")
            images.append(probe_image(data))

        data = assemble_images(images, self.loader, request.paper_size, request.orientation)
        first_name = base_name(self.store.get(ordered_ids[0]).original_name, fallback="images")
        record = self._save_output(data, f"images_{first_name}.pdf")
        return self._document_response(record, len(images))

    def pdf_info(self, file_id: str) -> PdfInfoResponse:
        self._pdf_record(file_id)
        with DocumentCache() as cache:
            document = self.loader.resolve(file_id, cache)
            pages = [
                PageDetails(index=info.index, width=info.width, height=info.height, rotation=info.rotation)
                for info in page_info(document)
            ]
        return PdfInfoResponse(page_count=len(pages), pages=pages)

    def expiry(self, file_id: str) -> ExpiryResponse:
        record = self.store.get(file_id)
        return ExpiryResponse(
            expiry=to_millis(record.expires_at),
            remaining_seconds=record.remaining_seconds(self.store.now()),
        )

    def touch(self, file_id: str) -> ExpiryResponse:
        record = self.store.retrack(file_id)
        return ExpiryResponse(
            expiry=to_millis(record.expires_at),
            remaining_seconds=record.remaining_seconds(self.store.now()),
        )

    def delete(self, file_id: str) -> DeleteResponse:
        if not self.store.delete(file_id):
            raise NotFoundError()
        return DeleteResponse()

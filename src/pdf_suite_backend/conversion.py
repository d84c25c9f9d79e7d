"""
Conversion adapters between PDF documents and raster images.

- Compression policy: compression level or target size -> JPEG quality and DPI
- Raster -> PDF assembly with paper sizing and fitting
- PDF -> raster rendering parameters, and single-page rendering
- Page introspection (count, size, rotation)
"""

from __future__ import annotations

import base64
import binascii
import io
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

import pymupdf
from PIL import Image, UnidentifiedImageError

from .document_loader import DocumentLoader
from .errors import InvalidInputError, InvalidPageIndexError
from .utils import FileKind, sniff_kind

logger = logging.getLogger(__name__)

# PDF user space is 72 points per inch
POINTS_PER_INCH = 72.0
PAGE_MARGIN = 36.0

DEFAULT_RENDER_DPI = 144

JPEG_QUALITY_TIERS = {"high": 95, "medium": 80, "low": 60}

ORIENTATIONS = ("auto", "portrait", "landscape")


@dataclass(frozen=True)
class CompressionSettings:
    quality: int
    dpi: int


COMPRESSION_LEVELS: Dict[str, CompressionSettings] = {
    "low": CompressionSettings(quality=85, dpi=150),
    "recommended": CompressionSettings(quality=70, dpi=120),
    "extreme": CompressionSettings(quality=50, dpi=96),
}

# (minimum target/original ratio, settings), checked top to bottom
TARGET_RATIO_STEPS = (
    (0.7, CompressionSettings(quality=85, dpi=150)),
    (0.5, CompressionSettings(quality=70, dpi=120)),
    (0.3, CompressionSettings(quality=55, dpi=100)),
    (0.2, CompressionSettings(quality=45, dpi=85)),
)
SMALLEST_TARGET_SETTINGS = CompressionSettings(quality=35, dpi=72)


@dataclass(frozen=True)
class PaperSize:
    width: float
    height: float


PAPER_SIZES: Dict[str, PaperSize] = {
    "a4": PaperSize(595.28, 841.89),
    "letter": PaperSize(612, 792),
    "legal": PaperSize(612, 1008),
    "a3": PaperSize(841.89, 1190.55),
    "a5": PaperSize(419.53, 595.28),
}


@dataclass(frozen=True)
class Placement:
    """Page size and image rectangle, in PDF user space (origin bottom-left)."""

    page_width: float
    page_height: float
    x: float
    y: float
    width: float
    height: float


@dataclass(frozen=True)
class RasterImage:
    data: bytes
    width: int
    height: int
    kind: FileKind


@dataclass(frozen=True)
class PageRaster:
    page: int
    width: int
    height: int


@dataclass(frozen=True)
class RenderPlan:
    quality: int
    dpi: int
    scale: float
    pages: List[PageRaster]

    @property
    def page_count(self) -> int:
        return len(self.pages)


@dataclass(frozen=True)
class PageInfo:
    index: int
    width: float
    height: float
    rotation: int


def compression_settings(
    level: Optional[str] = None,
    target_bytes: Optional[int] = None,
    original_bytes: Optional[int] = None,
) -> CompressionSettings:
    """
    Pick JPEG quality and render DPI for a raster round-trip compression.

    A target size, when given, takes precedence over the level. The mapping is
    a heuristic; the real output size has to be measured afterwards.

    Args:
        level: ``low``, ``recommended`` or ``extreme``
        target_bytes: Desired output size
        original_bytes: Size of the document being compressed (required with ``target_bytes``)

    Raises:
        InvalidInputError: For an unknown level, a missing level and target, or non-positive sizes
    """
    if target_bytes is not None:
        if target_bytes <= 0 or not original_bytes or original_bytes <= 0:
            raise InvalidInputError("Target size and original size must be positive.")
        ratio = target_bytes / original_bytes
        for minimum_ratio, settings in TARGET_RATIO_STEPS:
            if ratio >= minimum_ratio:
                return settings
        return SMALLEST_TARGET_SETTINGS

    if level is None:
        raise InvalidInputError("A compression level or a target size is required.")
    settings = COMPRESSION_LEVELS.get(level)
    if settings is None:
        raise InvalidInputError(f"Unknown compression level '{level}'. Choose from: {list(COMPRESSION_LEVELS)}")
    return settings


def reduction_percent(original_bytes: int, compressed_bytes: int) -> int:
    """Achieved size reduction in whole percent, never negative."""
    if original_bytes <= 0:
        return 0
    return max(0, round((1 - compressed_bytes / original_bytes) * 100))


def jpeg_quality(tier: Optional[str]) -> int:
    """Map a quality tier to a JPEG quality; anything but high or medium renders at low."""
    return JPEG_QUALITY_TIERS.get((tier or "").lower(), JPEG_QUALITY_TIERS["low"])


def place_image(
    image_width: float,
    image_height: float,
    paper: Optional[PaperSize],
    orientation: str = "auto",
) -> Placement:
    """
    Lay out one image on its own page.

    Without a paper size the page takes the image's pixel dimensions and the
    image fills it. With a paper size the page is oriented (``auto`` picks
    landscape iff the image is wider than tall), and the image is scaled
    uniformly to fit inside the margins and centered.
    """
    if paper is None:
        return Placement(
            page_width=image_width,
            page_height=image_height,
            x=0.0,
            y=0.0,
            width=image_width,
            height=image_height,
        )

    if orientation not in ORIENTATIONS:
        raise InvalidInputError(f"Unknown orientation '{orientation}'. Choose from: {list(ORIENTATIONS)}")
    landscape = orientation == "landscape" or (orientation == "auto" and image_width > image_height)
    page_width = paper.height if landscape else paper.width
    page_height = paper.width if landscape else paper.height

    scale = min(
        (page_width - 2 * PAGE_MARGIN) / image_width,
        (page_height - 2 * PAGE_MARGIN) / image_height,
    )
    width = image_width * scale
    height = image_height * scale
    return Placement(
        page_width=page_width,
        page_height=page_height,
        x=(page_width - width) / 2,
        y=(page_height - height) / 2,
        width=width,
        height=height,
    )


def resolve_paper_size(name: Optional[str]) -> Optional[PaperSize]:
    """Named paper size, or None for ``original`` and any unknown name."""
    return PAPER_SIZES.get((name or "original").lower())


def probe_image(data: bytes) -> RasterImage:
    """
    Validate raster bytes and read their pixel dimensions.

    Raises:
        InvalidInputError: If the bytes are not a readable JPEG or PNG
    """
    kind = sniff_kind(data[:8])
    if kind is None or not kind.is_image:
        raise InvalidInputError("Only JPEG and PNG images are supported.")
    try:
        with Image.open(io.BytesIO(data)) as image:
            width, height = image.size
    except Image.DecompressionBombError as exc:
        raise InvalidInputError("The image has too many pixels.") from exc
    except (UnidentifiedImageError, OSError) as exc:
        raise InvalidInputError("The image could not be read.") from exc
    if width <= 0 or height <= 0:
        raise InvalidInputError("The image has no pixels.")
    return RasterImage(data=data, width=width, height=height, kind=kind)


def decode_data_uri(value: str) -> bytes:
    """
    Decode a base64 JPEG, with or without its ``data:image/jpeg;base64,`` prefix.

    Raises:
        InvalidInputError: If the payload is not base64 or not a JPEG
    """
    payload = value.split(",", 1)[1] if value.startswith("data:") else value
    try:
        data = base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise InvalidInputError("Images must be base64-encoded JPEG data.") from exc
    if sniff_kind(data[:8]) is not FileKind.JPEG:
        raise InvalidInputError("Images must be base64-encoded JPEG data.")
    return data


def assemble_images(
    images: Sequence[RasterImage],
    loader: DocumentLoader,
    paper_size: Optional[str] = "original",
    orientation: str = "auto",
) -> bytes:
    """
    Build a PDF with one page per image, in the given order.

    Raises:
        InvalidInputError: If no images are given or the orientation is unknown
    """
    if not images:
        raise InvalidInputError("At least 1 image required.")
    paper = resolve_paper_size(paper_size)
    document = pymupdf.open()
    try:
        for image in images:
            placement = place_image(image.width, image.height, paper, orientation)
            page = document.new_page(width=placement.page_width, height=placement.page_height)
            # PyMuPDF measures y from the top of the page
            top = placement.page_height - placement.y - placement.height
            rect = pymupdf.Rect(placement.x, top, placement.x + placement.width, top + placement.height)
            page.insert_image(rect, stream=image.data)
        logger.debug(f"Assembled {len(images)} image page(s) on {paper_size or 'original'} paper")
        return loader.serialize(document, label="image document")
    finally:
        loader.release(document)


def page_info(document: pymupdf.Document) -> List[PageInfo]:
    """Unrotated media box size and rotation of every page."""
    pages = []
    for index, page in enumerate(document):
        box = page.mediabox
        pages.append(PageInfo(index=index, width=box.width, height=box.height, rotation=page.rotation))
    return pages


def render_plan(document: pymupdf.Document, tier: Optional[str] = None, dpi: int = DEFAULT_RENDER_DPI) -> RenderPlan:
    """
    Pixel dimensions of every page rendered at ``dpi``, plus the JPEG quality to encode with.

    Dimensions follow the displayed (rotated) page, as a renderer would produce them.
    """
    if dpi <= 0:
        raise InvalidInputError("DPI must be positive.")
    scale = dpi / POINTS_PER_INCH
    pages = [
        PageRaster(page=index + 1, width=round(page.rect.width * scale), height=round(page.rect.height * scale))
        for index, page in enumerate(document)
    ]
    return RenderPlan(quality=jpeg_quality(tier), dpi=dpi, scale=scale, pages=pages)


def render_page_jpeg(
    document: pymupdf.Document,
    page_number: int,
    dpi: int,
    quality: int,
    source_id: str = "document",
) -> bytes:
    """
    Rasterize one page (1-based) to JPEG bytes.

    Raises:
        InvalidPageIndexError: If the page does not exist
    """
    if not 1 <= page_number <= document.page_count:
        raise InvalidPageIndexError(source_id, page_number - 1, document.page_count)
    if dpi <= 0:
        raise InvalidInputError("DPI must be positive.")
    pixmap = document[page_number - 1].get_pixmap(dpi=dpi, alpha=False)
    return pixmap.tobytes(output="jpeg", jpg_quality=quality)

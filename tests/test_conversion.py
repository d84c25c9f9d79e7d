"""
Tests for conversion adapters: compression parameters, image placement,
image assembly and page rendering.
"""

import base64

import pymupdf
import pytest
from conftest import make_image, make_pdf
from PIL import Image

from pdf_suite_backend.conversion import (
    PAGE_MARGIN,
    PAPER_SIZES,
    CompressionSettings,
    assemble_images,
    compression_settings,
    decode_data_uri,
    jpeg_quality,
    page_info,
    place_image,
    probe_image,
    reduction_percent,
    render_page_jpeg,
    render_plan,
    resolve_paper_size,
)
from pdf_suite_backend.errors import InvalidInputError, InvalidPageIndexError
from pdf_suite_backend.utils import FileKind


class TestCompressionSettings:
    @pytest.mark.parametrize(
        "level, expected",
        [
            ("low", CompressionSettings(85, 150)),
            ("recommended", CompressionSettings(70, 120)),
            ("extreme", CompressionSettings(50, 96)),
        ],
    )
    def test_levels(self, level, expected):
        assert compression_settings(level=level) == expected

    @pytest.mark.parametrize(
        "target, expected",
        [
            (800, CompressionSettings(85, 150)),
            (500, CompressionSettings(70, 120)),
            (300, CompressionSettings(55, 100)),
            (250, CompressionSettings(45, 85)),
            (100, CompressionSettings(35, 72)),
        ],
    )
    def test_target_ratio(self, target, expected):
        assert compression_settings(target_bytes=target, original_bytes=1000) == expected

    def test_target_wins_over_level(self):
        assert compression_settings(level="low", target_bytes=250, original_bytes=1000) == CompressionSettings(45, 85)

    def test_unknown_level(self):
        with pytest.raises(InvalidInputError):
            compression_settings(level="maximum")

    def test_missing_level_and_target(self):
        with pytest.raises(InvalidInputError):
            compression_settings()

    def test_non_positive_target(self):
        with pytest.raises(InvalidInputError):
            compression_settings(target_bytes=0, original_bytes=1000)

    def test_reduction_percent(self):
        assert reduction_percent(1000, 400) == 60
        assert reduction_percent(1000, 1500) == 0
        assert reduction_percent(0, 10) == 0


class TestPlacement:
    def test_original_size_page(self):
        placement = place_image(640, 480, None)
        assert (placement.page_width, placement.page_height) == (640, 480)
        assert (placement.x, placement.y, placement.width, placement.height) == (0, 0, 640, 480)

    def test_auto_orientation_picks_landscape_for_wide_images(self):
        a4 = PAPER_SIZES["a4"]
        placement = place_image(400, 200, a4, "auto")
        assert placement.page_width == a4.height
        assert placement.page_height == a4.width

    def test_image_fits_inside_margins_and_is_centered(self):
        a4 = PAPER_SIZES["a4"]
        placement = place_image(1000, 3000, a4, "portrait")

        assert placement.width <= a4.width - 2 * PAGE_MARGIN + 1e-6
        assert placement.height == pytest.approx(a4.height - 2 * PAGE_MARGIN)
        assert placement.width / placement.height == pytest.approx(1000 / 3000)
        assert placement.x == pytest.approx((a4.width - placement.width) / 2)
        assert placement.y == pytest.approx(PAGE_MARGIN)

    def test_unknown_orientation(self):
        with pytest.raises(InvalidInputError):
            place_image(10, 10, PAPER_SIZES["letter"], "diagonal")

    def test_paper_size_lookup(self):
        assert resolve_paper_size("Letter") == PAPER_SIZES["letter"]
        assert resolve_paper_size("original") is None
        assert resolve_paper_size("tabloid") is None
        assert resolve_paper_size(None) is None


class TestImages:
    def test_probe_image(self):
        image = probe_image(make_image(320, 240, "PNG"))
        assert (image.width, image.height, image.kind) == (320, 240, FileKind.PNG)

    def test_probe_rejects_other_formats(self):
        with pytest.raises(InvalidInputError):
            probe_image(b"GIF89a....")

    def test_probe_rejects_oversized_images(self, monkeypatch):
        monkeypatch.setattr(Image, "MAX_IMAGE_PIXELS", 1000)

        with pytest.raises(InvalidInputError, match="too many pixels"):
            probe_image(make_image(200, 100))

    def test_decode_data_uri(self):
        jpeg = make_image()
        encoded = base64.b64encode(jpeg).decode()
        assert decode_data_uri(f"data:image/jpeg;base64,{encoded}") == jpeg
        assert decode_data_uri(encoded) == jpeg

    def test_decode_data_uri_rejects_non_jpeg(self):
        with pytest.raises(InvalidInputError):
            decode_data_uri(base64.b64encode(make_image(fmt="PNG")).decode())
        with pytest.raises(InvalidInputError):
            decode_data_uri("data:image/jpeg;base64,***")

    def test_jpeg_quality_tiers(self):
        assert jpeg_quality("high") == 95
        assert jpeg_quality("MEDIUM") == 80
        assert jpeg_quality("anything") == 60
        assert jpeg_quality(None) == 60

    def test_assemble_one_page_per_image(self, loader):
        images = [probe_image(make_image(300, 100)), probe_image(make_image(100, 300, "PNG"))]

        data = assemble_images(images, loader, paper_size="a4")

        with pymupdf.open(stream=data, filetype="pdf") as document:
            assert document.page_count == 2
            assert document[0].rect.width == pytest.approx(PAPER_SIZES["a4"].height, abs=0.01)
            assert document[1].rect.width == pytest.approx(PAPER_SIZES["a4"].width, abs=0.01)
            assert len(document[0].get_images()) == 1

    def test_assemble_original_size(self, loader):
        data = assemble_images([probe_image(make_image(250, 125))], loader, paper_size="original")
        with pymupdf.open(stream=data, filetype="pdf") as document:
            assert (document[0].rect.width, document[0].rect.height) == (250, 125)

    def test_assemble_requires_images(self, loader):
        with pytest.raises(InvalidInputError):
            assemble_images([], loader)


class TestRendering:
    def test_page_info(self):
        with pymupdf.open(stream=make_pdf(2, width=300, height=400), filetype="pdf") as document:
            document[1].set_rotation(90)
            pages = page_info(document)

        assert [(p.index, p.width, p.height, p.rotation) for p in pages] == [(0, 300, 400, 0), (1, 300, 400, 90)]

    def test_render_plan(self):
        with pymupdf.open(stream=make_pdf(2, width=72, height=144), filetype="pdf") as document:
            plan = render_plan(document, "high", dpi=144)

        assert plan.quality == 95
        assert plan.scale == 2
        assert plan.page_count == 2
        assert (plan.pages[0].page, plan.pages[0].width, plan.pages[0].height) == (1, 144, 288)

    def test_render_page_jpeg(self):
        with pymupdf.open(stream=make_pdf(1), filetype="pdf") as document:
            data = render_page_jpeg(document, 1, dpi=72, quality=60)
        assert data.startswith(b"\xff\xd8\xff")

    def test_render_missing_page(self):
        with pymupdf.open(stream=make_pdf(1), filetype="pdf") as document:
            with pytest.raises(InvalidPageIndexError):
                render_page_jpeg(document, 2, dpi=72, quality=60)

"""
Pytest configuration and fixtures for PDF Suite Backend tests.
"""

import io
import os
import shutil
import tempfile

import pymupdf
import pytest
from fastapi.testclient import TestClient
from PIL import Image

# Point the module-level app at throwaway directories before importing it
_IMPORT_DIR = tempfile.mkdtemp(prefix="pdf_suite_import_")
os.environ["PDF_SUITE__STORAGE__UPLOAD_DIR"] = os.path.join(_IMPORT_DIR, "uploads")
os.environ["PDF_SUITE__STORAGE__OUTPUT_DIR"] = os.path.join(_IMPORT_DIR, "outputs")

from pdf_suite_backend.configuration import load_config  # noqa: E402
from pdf_suite_backend.document_loader import DocumentLoader  # noqa: E402
from pdf_suite_backend.file_store import UPLOAD_AREA, TrackedFileStore  # noqa: E402
from pdf_suite_backend.main import create_app  # noqa: E402
from pdf_suite_backend.utils import FileKind  # noqa: E402


def pytest_sessionfinish(session, exitstatus):
    shutil.rmtree(_IMPORT_DIR, ignore_errors=True)


def make_pdf(page_count, label="doc", width=612, height=792):
    """Build a PDF whose page n carries the text '<label>-<n>'."""
    document = pymupdf.open()
    for number in range(1, page_count + 1):
        page = document.new_page(width=width, height=height)
        page.insert_text((72, 72), f"{label}-{number}", fontsize=24)
    data = document.tobytes()
    document.close()
    return data


def make_image(width=200, height=100, fmt="JPEG", color=(200, 30, 30)):
    buffer = io.BytesIO()
    Image.new("RGB", (width, height), color).save(buffer, format=fmt)
    return buffer.getvalue()


def page_labels(data):
    """First line of text on every page of a PDF."""
    with pymupdf.open(stream=data, filetype="pdf") as document:
        return [page.get_text().strip().splitlines()[0] for page in document]


def page_rotations(data):
    with pymupdf.open(stream=data, filetype="pdf") as document:
        return [page.rotation for page in document]


class FakeClock:
    def __init__(self, start=1_700_000_000.0):
        self.current = start

    def __call__(self):
        return self.current

    def advance(self, seconds):
        self.current += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(tmp_path, clock):
    """A store on temporary directories, driven by a fake clock."""
    file_store = TrackedFileStore(
        upload_root=tmp_path / "uploads",
        output_root=tmp_path / "outputs",
        ttl_seconds=1800,
        sweep_interval_seconds=60,
        clock=clock,
    )
    yield file_store
    file_store.close()


@pytest.fixture
def loader(store):
    return DocumentLoader(store, timeout_seconds=30)


@pytest.fixture
def track(store):
    """Write bytes into the upload area and track them; returns the record."""

    def _track(data, name="document.pdf", kind=FileKind.PDF, session="session-1"):
        _, path = store.allocate(kind, UPLOAD_AREA)
        path.write_bytes(data)
        return store.put(path, session, name, kind)

    return _track


@pytest.fixture
def app_config(tmp_path):
    return load_config(
        {
            "storage": {
                "upload_dir": str(tmp_path / "uploads"),
                "output_dir": str(tmp_path / "outputs"),
            },
            "rate_limit": {"enabled": False},
        },
        environ={},
    )


@pytest.fixture
def app(app_config):
    return create_app(app_config)


@pytest.fixture
def client(app):
    """Create a test client for the FastAPI app, running its lifespan."""
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def upload(client):
    """Upload files and return their ids in upload order."""

    def _upload(*files):
        response = client.post(
            "/api/upload",
            files=[("files", (name, data, content_type)) for name, data, content_type in files],
        )
        assert response.status_code == 200, response.text
        return [entry["id"] for entry in response.json()["files"]]

    return _upload

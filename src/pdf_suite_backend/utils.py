"""
Utility functions for file kinds, filesystem operations and string sanitization.

This module provides helper functions for:
- Sniffing uploaded bytes to decide whether a file is a PDF, JPEG or PNG
- Sanitizing user-provided names for safe filesystem and header usage
- Ensuring directory creation
"""

from __future__ import annotations

import re
from enum import Enum
from pathlib import Path
from typing import Optional

# Pattern to match characters that are not safe for filenames
# Allows: alphanumeric characters, dots, underscores, hyphens and spaces
SANITIZE_PATTERN = re.compile(r"[^a-zA-Z0-9._ -]+")

PDF_MAGIC = b"%PDF-"
JPEG_MAGIC = b"\xff\xd8\xff"
PNG_MAGIC = b"\x89PNG"

# Longest magic number we look at
SNIFF_BYTES = 8


class FileKind(str, Enum):
    PDF = "pdf"
    JPEG = "jpeg"
    PNG = "png"

    @property
    def extension(self) -> str:
        return {FileKind.PDF: ".pdf", FileKind.JPEG: ".jpg", FileKind.PNG: ".png"}[self]

    @property
    def media_type(self) -> str:
        return {
            FileKind.PDF: "application/pdf",
            FileKind.JPEG: "image/jpeg",
            FileKind.PNG: "image/png",
        }[self]

    @property
    def is_image(self) -> bool:
        return self is not FileKind.PDF


def sniff_kind(header: bytes) -> Optional[FileKind]:
    """
    Classify a file by its leading magic bytes.

    The claimed content type of an upload is never trusted; only the bytes
    decide. Anything that is not a PDF, JPEG or PNG is rejected.

    Args:
        header: The first bytes of the file (at least ``SNIFF_BYTES`` when available)

    Returns:
        The detected FileKind, or None if the file is rejected

    Example:
        >>> sniff_kind(b"%PDF-1.7\\n")
        <FileKind.PDF: 'pdf'>
        >>> sniff_kind(b"GIF89a") is None
        True
    """
    if header.startswith(PDF_MAGIC):
        return FileKind.PDF
    if header.startswith(JPEG_MAGIC):
        return FileKind.JPEG
    if header.startswith(PNG_MAGIC):
        return FileKind.PNG
    return None


def ensure_directory(path: Path) -> Path:
    """
    Create a directory if it doesn't exist, including parent directories.

    Args:
        path: The directory path to create

    Returns:
        The same path object for chaining
    """
    path.mkdir(parents=True, exist_ok=True)
    return path


def base_name(original_name: Optional[str], fallback: str = "document") -> str:
    """
    Strip the extension from an original filename for use in output names.

    Example:
        >>> base_name("report.final.pdf")
        'report.final'
        >>> base_name(None)
        'document'
    """
    if not original_name:
        return fallback
    return Path(original_name).stem or fallback


def sanitize_filename(filename: Optional[str], default: str = "document.pdf") -> str:
    """
    Make a client-supplied download filename safe for a Content-Disposition header.

    Directory components are dropped and unsafe characters replaced with hyphens.
    Returns ``default`` when nothing usable remains.
    """
    if not filename:
        return default
    name = Path(filename.replace("\\", "/")).name
    cleaned = SANITIZE_PATTERN.sub("-", name).strip(" -_.")
    return cleaned or default

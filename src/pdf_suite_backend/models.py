from __future__ import annotations

from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class ApiModel(BaseModel):
    """Request/response base: snake_case in Python, camelCase on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# Requests


class PageRef(ApiModel):
    file_id: str
    page_index: int
    rotation: Optional[int] = None


class MergeRequest(ApiModel):
    file_ids: List[str] = Field(default_factory=list)
    order: Optional[List[str]] = None
    pages: Optional[List[PageRef]] = None


class PageRangeRequest(ApiModel):
    start: int
    end: Optional[int] = None


class SplitRequest(ApiModel):
    file_id: str
    extract_all: bool = False
    ranges: Optional[List[PageRangeRequest]] = None


class CompressRequest(ApiModel):
    file_id: str
    level: Optional[str] = None
    target_bytes: Optional[int] = None


class CompressSaveRequest(ApiModel):
    images: List[str] = Field(default_factory=list)
    base_name: str = "document"
    original_size: int


class PdfToJpgRequest(ApiModel):
    file_id: str
    quality: Optional[str] = None
    dpi: Optional[int] = None


class JpgToPdfRequest(ApiModel):
    file_ids: List[str] = Field(default_factory=list)
    order: Optional[List[str]] = None
    paper_size: str = "original"
    orientation: str = "auto"


class OrganizePage(ApiModel):
    index: int
    rotation: Optional[int] = None
    deleted: bool = False
    source_file: Optional[str] = None


class OrganizeOperations(ApiModel):
    order: Optional[List[int]] = None
    rotations: Dict[int, int] = Field(default_factory=dict)
    deletions: List[int] = Field(default_factory=list)


class OrganizeRequest(ApiModel):
    file_id: str
    pages: Optional[List[OrganizePage]] = None
    operations: Optional[OrganizeOperations] = None


# Responses


class UploadedFile(ApiModel):
    id: str
    original_name: str
    size: int
    expiry: int


class UploadResponse(ApiModel):
    success: bool = True
    session_id: str
    files: List[UploadedFile]
    expires_in: float


class OutputFile(ApiModel):
    file_id: str
    filename: str
    size: int
    expiry: int


class DocumentResponse(OutputFile):
    success: bool = True
    page_count: int


class SplitResponse(ApiModel):
    success: bool = True
    files: List[OutputFile]
    total_pages: int


class PageDimensions(ApiModel):
    index: int
    width: float
    height: float


class PageDetails(PageDimensions):
    rotation: int


class CompressResponse(ApiModel):
    success: bool = True
    file_id: str
    original_size: int
    page_count: int
    pages: List[PageDimensions]
    quality: int
    dpi: int
    level: str
    base_name: str
    use_client_compression: bool = True


class CompressSaveResponse(ApiModel):
    success: bool = True
    file_id: str
    filename: str
    original_size: int
    compressed_size: int
    reduction: int
    expiry: int


class RenderedPage(ApiModel):
    page: int
    width: int
    height: int
    quality: int


class PdfToJpgResponse(ApiModel):
    success: bool = True
    file_id: str
    pages: List[RenderedPage]
    total_pages: int
    quality: int
    scale: float


class PdfInfoResponse(ApiModel):
    success: bool = True
    page_count: int
    pages: List[PageDetails]


class ExpiryResponse(ApiModel):
    success: bool = True
    expiry: int
    remaining_seconds: int


class DeleteResponse(ApiModel):
    success: bool = True
    message: str = "File deleted."


class ServiceLimits(ApiModel):
    max_upload_bytes: int
    max_upload_files: int
    expires_in_minutes: float

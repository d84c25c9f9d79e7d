from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Dict, List, Optional
from uuid import uuid4

from fastapi import APIRouter, Depends, FastAPI, File, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse, Response
from omegaconf import DictConfig
from starlette.exceptions import HTTPException as StarletteHTTPException

from .configuration import load_config
from .document_loader import DocumentLoader
from .errors import InvalidInputError, NotFoundError, PdfSuiteError, TooLargeError, TooManyError
from .file_store import UPLOAD_AREA, FileRecord, TrackedFileStore
from .middleware import BodySizeLimitMiddleware, RateLimiter, RateLimitMiddleware, SecurityHeadersMiddleware
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
    PdfInfoResponse,
    PdfToJpgRequest,
    PdfToJpgResponse,
    ServiceLimits,
    SplitRequest,
    SplitResponse,
    UploadResponse,
)
from .service import PdfToolService
from .utils import SNIFF_BYTES, sanitize_filename, sniff_kind

logger = logging.getLogger(__name__)

UPLOAD_CHUNK_BYTES = 1024 * 1024

router = APIRouter()


def get_service(request: Request) -> PdfToolService:
    return request.app.state.service


def get_config(request: Request) -> DictConfig:
    return request.app.state.config


@router.get("/healthz")
def healthcheck() -> Dict[str, str]:
    return {"status": "ok"}


@router.get("/api/config", response_model=ServiceLimits)
def service_limits(config: DictConfig = Depends(get_config)) -> ServiceLimits:
    return ServiceLimits(
        max_upload_bytes=config.limits.max_upload_bytes,
        max_upload_files=config.limits.max_upload_files,
        expires_in_minutes=config.storage.ttl_minutes,
    )


async def _store_upload(
    file: UploadFile,
    service: PdfToolService,
    session_id: str,
    max_bytes: int,
) -> Optional[FileRecord]:
    """
    Stream one upload to disk and track it.

    Returns None when the file is not a PDF, JPEG or PNG.

    Raises:
        TooLargeError: If the file exceeds ``max_bytes``
    """
    first_chunk = await file.read(UPLOAD_CHUNK_BYTES)
    kind = sniff_kind(first_chunk[:SNIFF_BYTES])
    if kind is None:
        logger.info(f"Rejected upload {file.filename!r}: not a PDF, JPEG or PNG")
        return None

    _, destination = service.store.allocate(kind, UPLOAD_AREA)
    written = 0
    try:
        with destination.open("wb") as buffer:
            chunk = first_chunk
            while chunk:
                written += len(chunk)
                if written > max_bytes:
                    raise TooLargeError(f"File too large. Maximum size is {max_bytes / (1024 * 1024):g}MB.")
                buffer.write(chunk)
                chunk = await file.read(UPLOAD_CHUNK_BYTES)
        original_name = sanitize_filename(file.filename, default=f"upload{kind.extension}")
        return service.store.put(destination, session_id, original_name, kind)
    except Exception:
        destination.unlink(missing_ok=True)
        raise
    finally:
        await file.close()


@router.post("/api/upload", response_model=UploadResponse)
async def upload_files(
    files: List[UploadFile] = File(...),
    service: PdfToolService = Depends(get_service),
    config: DictConfig = Depends(get_config),
) -> UploadResponse:
    limits = config.limits
    if len(files) > limits.max_upload_files:
        raise TooManyError(f"Too many files. Maximum is {limits.max_upload_files} files.")

    session_id = uuid4().hex
    accepted: List[FileRecord] = []
    try:
        for file in files:
            record = await _store_upload(file, service, session_id, limits.max_upload_bytes)
            if record is not None:
                accepted.append(record)
    except Exception:
        for record in accepted:
            service.store.delete(record.id)
        raise

    if not accepted:
        raise InvalidInputError("No valid files uploaded. Only PDF, JPG and PNG files are accepted.")

    logger.info(f"Session {session_id}: accepted {len(accepted)} of {len(files)} upload(s)")
    return UploadResponse(
        session_id=session_id,
        files=[service.describe_upload(record) for record in accepted],
        expires_in=service.store.ttl_seconds,
    )


@router.post("/api/merge", response_model=DocumentResponse)
def merge(payload: MergeRequest, service: PdfToolService = Depends(get_service)) -> DocumentResponse:
    return service.merge(payload)


@router.post("/api/split", response_model=SplitResponse)
def split(payload: SplitRequest, service: PdfToolService = Depends(get_service)) -> SplitResponse:
    return service.split(payload)


@router.post("/api/compress", response_model=CompressResponse)
def compress(payload: CompressRequest, service: PdfToolService = Depends(get_service)) -> CompressResponse:
    return service.compress(payload)


@router.post("/api/compress-save", response_model=CompressSaveResponse)
def compress_save(
    payload: CompressSaveRequest, service: PdfToolService = Depends(get_service)
) -> CompressSaveResponse:
    return service.compress_save(payload)


@router.post("/api/pdf-to-jpg", response_model=PdfToJpgResponse)
def pdf_to_jpg(payload: PdfToJpgRequest, service: PdfToolService = Depends(get_service)) -> PdfToJpgResponse:
    return service.pdf_to_jpg(payload)


@router.get("/api/page-image/{file_id}/{page}")
def page_image(
    file_id: str,
    page: int,
    quality: Optional[str] = None,
    dpi: Optional[int] = None,
    service: PdfToolService = Depends(get_service),
) -> Response:
    data = service.render_page(file_id, page, quality, dpi)
    return Response(content=data, media_type="image/jpeg")


@router.post("/api/jpg-to-pdf", response_model=DocumentResponse)
def jpg_to_pdf(payload: JpgToPdfRequest, service: PdfToolService = Depends(get_service)) -> DocumentResponse:
    return service.jpg_to_pdf(payload)


@router.post("/api/organize", response_model=DocumentResponse)
def organize(payload: OrganizeRequest, service: PdfToolService = Depends(get_service)) -> DocumentResponse:
    return service.organize(payload)


@router.get("/api/pdf-info/{file_id}", response_model=PdfInfoResponse)
def pdf_info(file_id: str, service: PdfToolService = Depends(get_service)) -> PdfInfoResponse:
    return service.pdf_info(file_id)


def _existing_path(record: FileRecord) -> Path:
    if not record.storage_path.is_file():
        raise NotFoundError("File not found or expired.")
    return record.storage_path


@router.get("/api/pdf-file/{file_id}")
def pdf_file(file_id: str, service: PdfToolService = Depends(get_service)) -> FileResponse:
    record = service.lookup(file_id)
    if record.kind.is_image:
        raise InvalidInputError(f"File {file_id} is not a PDF.")
    return FileResponse(_existing_path(record), media_type=record.kind.media_type)


@router.get("/api/download/{file_id}")
def download(
    file_id: str,
    filename: Optional[str] = None,
    service: PdfToolService = Depends(get_service),
) -> FileResponse:
    record = service.lookup(file_id)
    download_name = sanitize_filename(filename, default=record.original_name)
    return FileResponse(_existing_path(record), media_type=record.kind.media_type, filename=download_name)


@router.delete("/api/delete/{file_id}", response_model=DeleteResponse)
def delete_file(file_id: str, service: PdfToolService = Depends(get_service)) -> DeleteResponse:
    return service.delete(file_id)


@router.get("/api/expiry/{file_id}", response_model=ExpiryResponse)
def expiry(file_id: str, service: PdfToolService = Depends(get_service)) -> ExpiryResponse:
    return service.expiry(file_id)


@router.post("/api/touch/{file_id}", response_model=ExpiryResponse)
def touch(file_id: str, service: PdfToolService = Depends(get_service)) -> ExpiryResponse:
    return service.touch(file_id)


def _register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(PdfSuiteError)
    async def pdf_suite_error_handler(request: Request, exc: PdfSuiteError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
        return JSONResponse(status_code=exc.status_code, content={"error": exc.message})

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        logger.info(f"Rejected invalid request to {request.url.path}: {exc.errors()}")
        return JSONResponse(status_code=400, content={"error": "Invalid request."})

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content={"error": str(exc.detail)})

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception(f"Unhandled error on {request.method} {request.url.path}")
        return JSONResponse(status_code=500, content={"error": "Internal server error."})


async def _limiter_cleanup_worker(limiters: List[RateLimiter], interval_seconds: float) -> None:
    # Periodically forget clients whose rate-limit window has ended.
    while True:
        await asyncio.sleep(interval_seconds)
        for limiter in limiters:
            limiter.cleanup()


def create_app(config: Optional[DictConfig] = None) -> FastAPI:
    """
    Build the API application.

    Args:
        config: Runtime configuration (default: ``load_config()``)
    """
    config = config if config is not None else load_config()
    logging.basicConfig(level=config.log_level)

    storage = config.storage
    store = TrackedFileStore(
        upload_root=Path(storage.upload_dir),
        output_root=Path(storage.output_dir),
        ttl_seconds=storage.ttl_minutes * 60,
        sweep_interval_seconds=storage.sweep_interval_seconds,
        shard_count=storage.shard_count,
    )
    loader = DocumentLoader(
        store,
        timeout_seconds=config.limits.operation_timeout_seconds,
        max_stalled_jobs=config.limits.max_stalled_jobs,
    )
    service = PdfToolService(store, loader, max_images=config.limits.max_compress_images)

    rate_limit = config.rate_limit
    limiters: List[RateLimiter] = []
    if rate_limit.enabled:
        limiters = [
            RateLimiter(rate_limit.api_max_requests, rate_limit.window_seconds),
            RateLimiter(rate_limit.upload_max_requests, rate_limit.window_seconds),
        ]

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        store.purge_orphans()
        store.start()
        task = asyncio.create_task(_limiter_cleanup_worker(limiters, rate_limit.window_seconds)) if limiters else None
        try:
            yield
        finally:
            if task is not None:
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
            store.close(purge=storage.purge_on_shutdown)

    app = FastAPI(title="PDF Suite API", version="0.1.0", lifespan=lifespan)
    app.state.config = config
    app.state.store = store
    app.state.service = service

    # Added last runs first: CORS, security headers, rate limiting, body size
    app.add_middleware(BodySizeLimitMiddleware, max_bytes=config.limits.max_json_bytes)
    if limiters:
        app.add_middleware(RateLimitMiddleware, api_limiter=limiters[0], upload_limiter=limiters[1])
    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(config.cors_origins),
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    _register_exception_handlers(app)
    app.include_router(router)
    return app


app = create_app()

"""
PDF Suite Backend - REST API for browser-based PDF utilities

This package provides a FastAPI-based web service for short-lived PDF and
image work. It enables:

- PDF, JPEG and PNG uploads, validated by their leading bytes
- Merging, splitting and organizing PDFs page by page
- Raster round-trip compression driven by a browser client
- Converting images to PDF and PDFs to JPEG
- Automatic expiry of every stored file

Nothing is kept beyond a file's lifetime: uploads and outputs live on disk
for 30 minutes (configurable) and are swept by a background thread.

Key Components:
    - main: FastAPI application and HTTP endpoint definitions
    - service: Operation orchestration behind the endpoints
    - file_store: Tracked ephemeral files with expiry
    - document_loader: PDF parsing and serialization under a deadline
    - composition: Page-level composition plans and the engine that runs them
    - conversion: Image/PDF conversion and compression parameters
    - models: Pydantic models for request/response validation
    - configuration: Config loading and merging logic
    - middleware: Rate limiting and security headers
    - utils: File sniffing, filesystem and string utilities

Usage:
    Run the API server with:
        uvicorn pdf_suite_backend.main:app --host 0.0.0.0 --port 3000
"""

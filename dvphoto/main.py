from __future__ import annotations

import base64
import logging
import os
from typing import Any

from fastapi import FastAPI, File, Form, HTTPException, Request, UploadFile
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from dvphoto.schemas import (
    AdvancedRequirements,
    BasicRequirements,
    OptimizeResponse,
    RequirementsResponse,
    ValidateResponse,
)
from dvphoto.services.constraints import PhotoBlob
from dvphoto.services.image_ops import DecodeError, optimize_for_dv
from dvphoto.services.pipeline import PhotoCompliancePipeline

LOG = logging.getLogger("dvphoto.api")

app = FastAPI(title="DV Photo Compliance Service", version="0.1.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

pipeline = PhotoCompliancePipeline()

MAX_UPLOAD_MB = max(1.0, float(os.getenv("DV_PHOTO_MAX_UPLOAD_MB", "20")))
MAX_UPLOAD_BYTES = int(MAX_UPLOAD_MB * 1024 * 1024)
UPLOAD_READ_CHUNK_BYTES = max(64 * 1024, int(os.getenv("DV_PHOTO_UPLOAD_CHUNK_BYTES", str(1024 * 1024))))
VALIDATION_TYPES = {"basic", "advanced"}
ADVANCED_CHECKS = [
    "face_detected",
    "single_face",
    "centered_face",
    "eyes_open",
    "neutral_expression",
    "plain_background",
    "no_shadows",
    "sharpness",
    "proper_lighting",
    "contrast",
]


def _content_length_exceeds_limit(request: Request, max_bytes: int) -> bool:
    header = request.headers.get("content-length")
    if not header:
        return False
    try:
        return int(header) > max_bytes
    except ValueError:
        return False


async def _read_upload_with_limit(photo: UploadFile, max_bytes: int, chunk_size: int) -> bytes:
    chunks = bytearray()
    total_bytes = 0
    while True:
        chunk = await photo.read(chunk_size)
        if not chunk:
            break
        total_bytes += len(chunk)
        if total_bytes > max_bytes:
            raise HTTPException(
                status_code=413,
                detail=f"Uploaded file is too large. Hard limit is {MAX_UPLOAD_MB:.0f}MB.",
            )
        chunks.extend(chunk)
    return bytes(chunks)


@app.get("/api/health")
def health() -> dict[str, Any]:
    return {
        "status": "ok",
        "policy": pipeline.policy.name,
        "face_backend": pipeline.face_detector.name,
        "upload_limits": {
            "max_upload_mb": MAX_UPLOAD_MB,
            "read_chunk_bytes": UPLOAD_READ_CHUNK_BYTES,
        },
    }


@app.get("/api/photos/requirements", response_model=RequirementsResponse)
def requirements() -> RequirementsResponse:
    policy = pipeline.policy
    constraints = policy.constraints
    return RequirementsResponse(
        policy_name=policy.name,
        basic=BasicRequirements(
            min_width=constraints.min_dimension_px,
            max_width=constraints.max_dimension_px,
            min_height=constraints.min_dimension_px,
            max_height=constraints.max_dimension_px,
            max_size=constraints.max_file_size_bytes,
            allowed_formats=constraints.allowed_mime_types,
            aspect_ratio_tolerance=constraints.aspect_ratio_tolerance,
        ),
        advanced=AdvancedRequirements(
            face_backend=pipeline.face_detector.name,
            compliance_checks=ADVANCED_CHECKS,
        ),
    )


@app.post("/api/photos/validate", response_model=ValidateResponse)
async def validate_photo(
    request: Request,
    photo: UploadFile = File(...),
    validation_type: str = Form("basic", alias="type"),
) -> ValidateResponse:
    filename = photo.filename or "upload.jpg"
    try:
        if _content_length_exceeds_limit(request, MAX_UPLOAD_BYTES):
            raise HTTPException(
                status_code=413,
                detail=f"Request body is too large. Hard limit is {MAX_UPLOAD_MB:.0f}MB.",
            )

        kind = (validation_type or "basic").strip().lower()
        if kind not in VALIDATION_TYPES:
            raise HTTPException(status_code=400, detail="Validation type must be 'basic' or 'advanced'.")

        if photo.content_type is None or not photo.content_type.startswith("image/"):
            raise HTTPException(status_code=400, detail="Please upload a valid image file.")

        file_bytes = await _read_upload_with_limit(
            photo,
            max_bytes=MAX_UPLOAD_BYTES,
            chunk_size=UPLOAD_READ_CHUNK_BYTES,
        )
        if not file_bytes:
            raise HTTPException(status_code=400, detail="Uploaded image is empty.")

        blob = PhotoBlob(data=file_bytes, mime_type=photo.content_type, filename=filename)
        result = await run_in_threadpool(pipeline.validate, blob, advanced=kind == "advanced")
    except HTTPException as exc:
        LOG.warning("validate_rejected filename=%s status=%s detail=%s", filename, exc.status_code, exc.detail)
        raise
    except Exception:  # pragma: no cover
        LOG.exception("validate_failed filename=%s", filename)
        return JSONResponse(status_code=500, content={"error": "validation_failed", "detail": "Internal error"})
    finally:
        await photo.close()

    return ValidateResponse(validation_type=kind, result=result)


@app.post("/api/photos/optimize", response_model=OptimizeResponse)
async def optimize_photo(request: Request, photo: UploadFile = File(...)) -> OptimizeResponse:
    filename = photo.filename or "upload.jpg"
    try:
        if _content_length_exceeds_limit(request, MAX_UPLOAD_BYTES):
            raise HTTPException(
                status_code=413,
                detail=f"Request body is too large. Hard limit is {MAX_UPLOAD_MB:.0f}MB.",
            )
        if photo.content_type is None or not photo.content_type.startswith("image/"):
            raise HTTPException(status_code=400, detail="Please upload a valid image file.")

        file_bytes = await _read_upload_with_limit(
            photo,
            max_bytes=MAX_UPLOAD_BYTES,
            chunk_size=UPLOAD_READ_CHUNK_BYTES,
        )
        if not file_bytes:
            raise HTTPException(status_code=400, detail="Uploaded image is empty.")

        try:
            optimized = await run_in_threadpool(optimize_for_dv, file_bytes, pipeline.policy.processing)
        except DecodeError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
    except HTTPException as exc:
        LOG.warning("optimize_rejected filename=%s status=%s detail=%s", filename, exc.status_code, exc.detail)
        raise
    except Exception:  # pragma: no cover
        LOG.exception("optimize_failed filename=%s", filename)
        return JSONResponse(status_code=500, content={"error": "optimize_failed", "detail": "Internal error"})
    finally:
        await photo.close()

    LOG.info(
        "photo_optimized filename=%s size=%dx%d original_bytes=%d processed_bytes=%d",
        filename,
        optimized.width,
        optimized.height,
        optimized.original_size,
        optimized.processed_size,
    )
    stem = filename.rsplit(".", 1)[0] if "." in filename else filename
    return OptimizeResponse(
        filename=f"processed_{stem}.jpeg",
        width=optimized.width,
        height=optimized.height,
        original_size=optimized.original_size,
        processed_size=optimized.processed_size,
        compression_ratio=optimized.compression_ratio,
        image_base64=base64.b64encode(optimized.data).decode("ascii"),
    )

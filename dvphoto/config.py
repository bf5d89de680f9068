from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path

import yaml
from pydantic import BaseModel, Field

BASE_DIR = Path(__file__).resolve().parent
DEFAULT_POLICY_PATH = BASE_DIR / "policy" / "dv_photo_policy.yaml"


class ConstraintPolicy(BaseModel):
    allowed_mime_types: list[str] = Field(default_factory=lambda: ["image/jpeg", "image/jpg", "image/png"])
    allowed_containers: list[str] = Field(default_factory=lambda: ["JPEG", "PNG"])
    max_file_size_bytes: int = 5 * 1024 * 1024
    min_dimension_px: int = 600
    max_dimension_px: int = 1200
    aspect_ratio_tolerance: float = 0.1
    recommended_min_dimension_px: int = 800
    small_file_warning_bytes: int = 100 * 1024
    screenshot_keywords: list[str] = Field(default_factory=lambda: ["screenshot"])


class QualityPolicy(BaseModel):
    sharpness_normalization: float = Field(default=50.0, gt=0)
    min_sharpness: float = 70.0
    min_brightness: float = 40.0
    max_brightness: float = 80.0
    min_contrast: float = 50.0


class BackgroundPolicy(BaseModel):
    plain_max_stddev: float = 20.0
    pattern_min_stddev: float = 30.0
    shadow_min_stddev: float = 15.0
    shadow_max_stddev: float = 30.0
    light_min_mean: float = 200.0
    medium_min_mean: float = 100.0


class FacePolicy(BaseModel):
    backend: str = "heuristic"
    center_region_ratio: float = Field(default=0.4, gt=0, le=1)
    skin_min_red: int = 95
    skin_min_green: int = 40
    skin_min_blue: int = 20
    skin_min_red_green_gap: int = 15
    dark_max_channel: int = 50
    min_skin_ratio: float = 0.10
    min_dark_ratio: float = 0.05
    eyes_open_min_dark_ratio: float = 0.02
    # Landmark backend only.
    center_tolerance_fraction: float = 0.08
    min_eye_aspect_ratio: float = 0.17
    max_mouth_gap_ratio: float = 0.085


class ProcessingPolicy(BaseModel):
    max_dimension_px: int = 1200
    compress_above_bytes: int = 2 * 1024 * 1024
    preferred_mime_types: list[str] = Field(default_factory=lambda: ["image/jpeg", "image/jpg"])
    jpeg_quality: int = Field(default=85, ge=1, le=95)


class DeductionTable(BaseModel):
    face_not_detected: int = 50
    multiple_faces: int = 30
    face_not_centered: int = 10
    eyes_not_open: int = 15
    non_neutral_expression: int = 10
    complex_background: int = 15
    shadows_detected: int = 10
    low_sharpness: int = 15
    poor_lighting: int = 10
    low_contrast: int = 10
    retake_recommendation_below: int = 90


class PhotoPolicy(BaseModel):
    name: str = "DV Lottery entry photo"
    constraints: ConstraintPolicy = Field(default_factory=ConstraintPolicy)
    quality: QualityPolicy = Field(default_factory=QualityPolicy)
    background: BackgroundPolicy = Field(default_factory=BackgroundPolicy)
    face: FacePolicy = Field(default_factory=FacePolicy)
    deductions: DeductionTable = Field(default_factory=DeductionTable)
    processing: ProcessingPolicy = Field(default_factory=ProcessingPolicy)


def resolve_policy_path() -> Path:
    override = os.getenv("DV_PHOTO_POLICY_PATH", "").strip()
    return Path(override) if override else DEFAULT_POLICY_PATH


def read_policy_file(path: Path) -> PhotoPolicy:
    with path.open("r", encoding="utf-8") as handle:
        raw = yaml.safe_load(handle) or {}
    return PhotoPolicy(**raw)


@lru_cache(maxsize=1)
def load_photo_policy() -> PhotoPolicy:
    return read_policy_file(resolve_policy_path())

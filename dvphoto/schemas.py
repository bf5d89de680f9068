from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field


OverallQuality = Literal["poor", "fair", "good", "excellent"]
BackgroundTone = Literal["light", "medium", "dark"]
ValidationType = Literal["basic", "advanced"]


class QualityMetrics(BaseModel):
    sharpness: float
    brightness: float
    contrast: float
    overall_quality: OverallQuality


class BackgroundReport(BaseModel):
    is_plain: bool
    dominant_tone: BackgroundTone
    has_patterns: bool
    has_shadows: bool
    mean: float
    stddev: float


class FaceReport(BaseModel):
    detected: bool
    count: int = Field(ge=0)
    centered: bool
    eyes_open: bool
    neutral_expression: bool
    backend: str = "heuristic"


class PhotoMetadata(BaseModel):
    width: int
    height: int
    byte_size: int
    format: str


class ProcessingAdvice(BaseModel):
    needs_resize: bool
    needs_compression: bool
    needs_format_change: bool
    recommendations: list[str] = Field(default_factory=list)


class ComplianceResult(BaseModel):
    is_valid: bool
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    compliance_score: int = Field(ge=0, le=100)
    issues: list[str] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)
    metadata: PhotoMetadata
    analyzed: bool = False
    quality_assessment: QualityMetrics | None = None
    background_analysis: BackgroundReport | None = None
    face_detection: FaceReport | None = None
    processing: ProcessingAdvice | None = None


class ValidateResponse(BaseModel):
    validation_type: ValidationType
    result: ComplianceResult


class OptimizeResponse(BaseModel):
    filename: str
    mime_type: str = "image/jpeg"
    width: int
    height: int
    original_size: int
    processed_size: int
    compression_ratio: float
    image_base64: str


class BasicRequirements(BaseModel):
    min_width: int
    max_width: int
    min_height: int
    max_height: int
    max_size: int
    allowed_formats: list[str]
    aspect_ratio_tolerance: float


class AdvancedRequirements(BaseModel):
    face_detection: bool = True
    background_analysis: bool = True
    quality_assessment: bool = True
    face_backend: str
    compliance_checks: list[str] = Field(default_factory=list)


class RequirementsResponse(BaseModel):
    policy_name: str
    basic: BasicRequirements
    advanced: AdvancedRequirements

from __future__ import annotations

from dataclasses import dataclass

from dvphoto.config import DeductionTable, QualityPolicy
from dvphoto.schemas import BackgroundReport, FaceReport, QualityMetrics


@dataclass(frozen=True)
class ScoreCard:
    score: int
    issues: tuple[str, ...]
    warnings: tuple[str, ...]
    errors: tuple[str, ...]
    recommendations: tuple[str, ...]


def score_compliance(
    quality: QualityMetrics,
    background: BackgroundReport,
    face: FaceReport,
    deductions: DeductionTable,
    thresholds: QualityPolicy,
) -> ScoreCard:
    """Start at 100, subtract a fixed amount per violated condition, clamp once.

    Face sub-checks only apply when a face was found; a missing face already
    carries the largest deduction.
    """
    errors: list[str] = []
    warnings: list[str] = []
    issues: list[str] = []
    total = 0

    def deduct(tag: str, message: str, *, error: bool = False) -> None:
        nonlocal total
        (errors if error else warnings).append(message)
        issues.append(tag)
        total += int(getattr(deductions, tag))

    if not face.detected:
        deduct("face_not_detected", "No face detected in the photo.", error=True)
    else:
        if face.count > 1:
            deduct(
                "multiple_faces",
                "Multiple faces detected. Only one person should be in the photo.",
                error=True,
            )
        if not face.centered:
            deduct("face_not_centered", "Face should be centered in the photo.")
        if not face.eyes_open:
            deduct("eyes_not_open", "Eyes should be open and clearly visible.")
        if not face.neutral_expression:
            deduct("non_neutral_expression", "Maintain a neutral facial expression.")

    if not background.is_plain:
        deduct("complex_background", "Background should be plain and neutral.")
    if background.has_shadows:
        deduct("shadows_detected", "Avoid shadows on face or background.")

    if quality.sharpness < thresholds.min_sharpness:
        deduct("low_sharpness", "Photo appears blurry. Use a sharper image.")
    if quality.brightness < thresholds.min_brightness or quality.brightness > thresholds.max_brightness:
        deduct("poor_lighting", "Photo lighting should be even and natural.")
    if quality.contrast < thresholds.min_contrast:
        deduct("low_contrast", "Photo has low contrast. Ensure good lighting.")

    score = max(0, min(100, 100 - total))

    recommendations: list[str] = []
    if score < deductions.retake_recommendation_below:
        recommendations.append("Consider retaking the photo with better lighting.")
    if not background.is_plain:
        recommendations.append("Use a plain white or light-colored background.")
    if quality.sharpness < thresholds.min_sharpness:
        recommendations.append("Ensure the camera is steady and in focus.")
    if not face.centered:
        recommendations.append("Center your face in the frame.")

    return ScoreCard(
        score=score,
        issues=tuple(issues),
        warnings=tuple(warnings),
        errors=tuple(errors),
        recommendations=tuple(recommendations),
    )

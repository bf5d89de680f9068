from __future__ import annotations

import logging

from dvphoto.config import PhotoPolicy, load_photo_policy
from dvphoto.schemas import ComplianceResult, PhotoMetadata, ProcessingAdvice
from dvphoto.services.constraints import ConstraintReport, PhotoBlob, reject_unreadable, validate_constraints
from dvphoto.services.face import FaceDetector, HeuristicFaceDetector, build_face_detector
from dvphoto.services.image_ops import (
    DecodeError,
    analyze_background,
    assess_quality,
    decode_image_bytes,
    needs_processing,
    probe_image,
)
from dvphoto.services.scoring import score_compliance

LOG = logging.getLogger("dvphoto.pipeline")

ANALYSIS_FAILED_ERROR = "Failed to analyze photo. Please try again with a different image."
ANALYSIS_FAILED_RECOMMENDATION = "Try uploading a different photo"


class PhotoCompliancePipeline:
    """Constraint checks, pixel analysis and scoring for a single photo.

    Holds only immutable policy and the face detector; every call builds its own
    buffers, so one instance can serve concurrent requests.
    """

    def __init__(self, policy: PhotoPolicy | None = None, face_detector: FaceDetector | None = None) -> None:
        self.policy = policy or load_photo_policy()
        if face_detector is None:
            try:
                face_detector = build_face_detector(self.policy.face)
            except RuntimeError as exc:
                LOG.warning("face_backend_unavailable backend=%s fallback=heuristic reason=%s", self.policy.face.backend, exc)
                face_detector = HeuristicFaceDetector(self.policy.face)
        self.face_detector = face_detector

    def _metadata(self, blob: PhotoBlob, dimensions: tuple[int, int] | None) -> PhotoMetadata:
        width, height = dimensions or (0, 0)
        return PhotoMetadata(width=width, height=height, byte_size=blob.size, format=blob.mime_type or "")

    def _rejected(
        self,
        blob: PhotoBlob,
        report: ConstraintReport,
        dimensions: tuple[int, int] | None,
        processing: ProcessingAdvice | None = None,
    ) -> ComplianceResult:
        return ComplianceResult(
            is_valid=False,
            errors=list(report.errors),
            warnings=list(report.warnings),
            compliance_score=0,
            issues=list(report.issues),
            recommendations=[],
            metadata=self._metadata(blob, dimensions),
            analyzed=False,
            processing=processing,
        )

    def _analysis_failed(self, blob: PhotoBlob) -> ComplianceResult:
        return ComplianceResult(
            is_valid=False,
            errors=[ANALYSIS_FAILED_ERROR],
            warnings=[],
            compliance_score=0,
            issues=["analysis_failed"],
            recommendations=[ANALYSIS_FAILED_RECOMMENDATION],
            metadata=self._metadata(blob, None),
            analyzed=False,
        )

    def validate(self, blob: PhotoBlob, *, advanced: bool = True) -> ComplianceResult:
        """Validate one upload. Never raises; failures become an invalid result."""
        try:
            result = self._validate(blob, advanced=advanced)
        except DecodeError as exc:
            LOG.warning(
                "photo_decode_failed filename=%s mime=%s size=%d reason=%s",
                blob.filename,
                blob.mime_type,
                blob.size,
                exc,
            )
            return self._analysis_failed(blob)
        except Exception:
            LOG.exception("photo_analysis_failed filename=%s mime=%s size=%d", blob.filename, blob.mime_type, blob.size)
            return self._analysis_failed(blob)

        LOG.info(
            "photo_validated filename=%s advanced=%s valid=%s score=%d issues=%s",
            blob.filename,
            advanced,
            result.is_valid,
            result.compliance_score,
            ",".join(result.issues) or "-",
        )
        return result

    def _validate(self, blob: PhotoBlob, *, advanced: bool) -> ComplianceResult:
        constraints = self.policy.constraints

        # Format and size first: never open pixels of a file that is already rejected.
        report = validate_constraints(blob, constraints)
        if not report.is_valid:
            return self._rejected(blob, report, None)

        probe = probe_image(blob.data)
        if probe is None:
            return self._rejected(blob, reject_unreadable(report), None)

        processing = needs_processing(blob, probe.dimensions, self.policy.processing)
        report = validate_constraints(blob, constraints, probe.dimensions, container=probe.format)
        if not report.is_valid:
            return self._rejected(blob, report, probe.dimensions, processing)

        if not advanced:
            return ComplianceResult(
                is_valid=True,
                errors=[],
                warnings=list(report.warnings),
                compliance_score=100,
                issues=[],
                recommendations=[],
                metadata=self._metadata(blob, probe.dimensions),
                analyzed=False,
                processing=processing,
            )

        image = decode_image_bytes(blob.data)
        quality = assess_quality(image, self.policy.quality)
        background = analyze_background(image, self.policy.background)
        face = self.face_detector.detect_face(image)
        card = score_compliance(quality, background, face, self.policy.deductions, self.policy.quality)

        errors = list(report.errors) + list(card.errors)
        return ComplianceResult(
            is_valid=not errors,
            errors=errors,
            warnings=list(report.warnings) + list(card.warnings),
            compliance_score=card.score,
            issues=list(report.issues) + list(card.issues),
            recommendations=list(card.recommendations),
            metadata=self._metadata(blob, (image.width, image.height)),
            analyzed=True,
            quality_assessment=quality,
            background_analysis=background,
            face_detection=face,
            processing=processing,
        )

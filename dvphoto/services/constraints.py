from __future__ import annotations

from dataclasses import dataclass

from dvphoto.config import ConstraintPolicy


@dataclass(frozen=True)
class PhotoBlob:
    data: bytes
    mime_type: str
    filename: str | None = None

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass(frozen=True)
class ConstraintReport:
    """Hard pass/fail constraints plus advisory warnings for one upload."""

    is_valid: bool
    errors: tuple[str, ...] = ()
    issues: tuple[str, ...] = ()
    warnings: tuple[str, ...] = ()


def _format_mb(num_bytes: int) -> str:
    mb = num_bytes / (1024 * 1024)
    return f"{mb:.0f}MB" if mb == int(mb) else f"{mb:.2f}MB"


def validate_constraints(
    blob: PhotoBlob,
    policy: ConstraintPolicy,
    dimensions: tuple[int, int] | None = None,
    container: str | None = None,
) -> ConstraintReport:
    """Check format, size, dimensions and aspect ratio without touching pixels.

    Every violated constraint is reported; nothing short-circuits. Dimension
    and aspect checks only run when ``dimensions`` is known; ``container`` is
    the format found in the file header, checked independently of the
    declared MIME type.
    """
    errors: list[str] = []
    issues: list[str] = []
    warnings: list[str] = []

    mime_type = (blob.mime_type or "").strip().lower()
    if mime_type not in policy.allowed_mime_types:
        errors.append(f"Unsupported format '{blob.mime_type}'. Photo must be in JPEG or PNG format.")
        issues.append("unsupported_format")
    elif container is not None and container.upper() not in policy.allowed_containers:
        errors.append(f"File content is {container or 'unknown'}, not JPEG or PNG. Photo must be in JPEG or PNG format.")
        issues.append("unsupported_format")

    if blob.size > policy.max_file_size_bytes:
        errors.append(
            f"File too large ({_format_mb(blob.size)}). "
            f"File size must be less than {_format_mb(policy.max_file_size_bytes)}."
        )
        issues.append("file_too_large")

    if dimensions is not None:
        width, height = int(dimensions[0]), int(dimensions[1])
        lo, hi = policy.min_dimension_px, policy.max_dimension_px

        if width < lo or height < lo:
            errors.append(f"Dimensions out of range ({width}x{height}). Photo must be at least {lo}x{lo} pixels.")
            issues.append("dimensions_out_of_range")
        if width > hi or height > hi:
            errors.append(f"Dimensions out of range ({width}x{height}). Photo must not exceed {hi}x{hi} pixels.")
            if "dimensions_out_of_range" not in issues:
                issues.append("dimensions_out_of_range")

        if width > 0 and height > 0:
            aspect_ratio = width / height
            if abs(aspect_ratio - 1.0) > policy.aspect_ratio_tolerance:
                errors.append("Photo must be square (equal width and height).")
                issues.append("not_square")

            recommended = policy.recommended_min_dimension_px
            if width < recommended or height < recommended:
                warnings.append(
                    f"For best quality, consider using a photo that is at least {recommended}x{recommended} pixels."
                )

    if blob.size < policy.small_file_warning_bytes:
        warnings.append("Photo file size is quite small. Ensure the image is high quality.")

    filename = (blob.filename or "").lower()
    if any(keyword in filename for keyword in policy.screenshot_keywords):
        warnings.append("Screenshots are not recommended. Use a proper photo instead.")

    return ConstraintReport(
        is_valid=not errors,
        errors=tuple(errors),
        issues=tuple(issues),
        warnings=tuple(warnings),
    )


UNREADABLE_IMAGE_ERROR = "Could not read image dimensions. Photo must be a valid JPEG or PNG image."


def reject_unreadable(report: ConstraintReport) -> ConstraintReport:
    """Fail a report whose blob has no readable image header."""
    issues = report.issues if "unsupported_format" in report.issues else report.issues + ("unsupported_format",)
    return ConstraintReport(
        is_valid=False,
        errors=report.errors + (UNREADABLE_IMAGE_ERROR,),
        issues=issues,
        warnings=report.warnings,
    )

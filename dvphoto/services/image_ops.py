from __future__ import annotations

from dataclasses import dataclass, field
from io import BytesIO
import os
from typing import Any

import cv2
import numpy as np
from PIL import ExifTags, Image, ImageOps, UnidentifiedImageError

from dvphoto.config import BackgroundPolicy, ProcessingPolicy, QualityPolicy
from dvphoto.schemas import BackgroundReport, ProcessingAdvice, QualityMetrics
from dvphoto.services.constraints import PhotoBlob

EXIF_TAG_MAP = {v: k for k, v in ExifTags.TAGS.items()}
ORIENTATION_TAG = EXIF_TAG_MAP.get("Orientation", 274)
TRANSPOSED_ORIENTATION_VALUES = {5, 6, 7, 8}
SUPPORTED_FORMATS = {"JPEG", "PNG"}
MAX_DECODE_MEGAPIXELS = max(1.0, float(os.getenv("DV_PHOTO_MAX_DECODE_MEGAPIXELS", "36")))
MAX_DECODE_PIXELS = int(MAX_DECODE_MEGAPIXELS * 1_000_000)
Image.MAX_IMAGE_PIXELS = MAX_DECODE_PIXELS


class DecodeError(ValueError):
    """Raised when bytes cannot be decoded as a supported image."""


@dataclass
class DecodedImage:
    rgba: np.ndarray
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def width(self) -> int:
        return int(self.rgba.shape[1])

    @property
    def height(self) -> int:
        return int(self.rgba.shape[0])


def _enforce_decode_pixel_limit(width: int, height: int) -> None:
    total_pixels = int(width) * int(height)
    if total_pixels > MAX_DECODE_PIXELS:
        raise DecodeError(
            "Image resolution is too large to process safely. "
            f"Maximum decode limit is {MAX_DECODE_MEGAPIXELS:.0f} megapixels."
        )


def _raw_orientation(pil_img: Image.Image) -> int | None:
    exif = pil_img.getexif() if hasattr(pil_img, "getexif") else None
    if not exif:
        return None
    return exif.get(ORIENTATION_TAG)


@dataclass(frozen=True)
class ImageProbe:
    format: str
    width: int
    height: int

    @property
    def dimensions(self) -> tuple[int, int]:
        return self.width, self.height


def probe_image(file_bytes: bytes) -> ImageProbe | None:
    """Read the container format and width/height from the header only.

    Dimensions are reported after EXIF orientation, matching what
    decode_image_bytes() produces. Returns None when the header is unreadable.
    """
    try:
        with Image.open(BytesIO(file_bytes)) as pil_img:
            container = pil_img.format or ""
            width, height = pil_img.size
            # PNG keeps eXIf after the pixel data, so only JPEG orientation is read here.
            if container == "JPEG" and _raw_orientation(pil_img) in TRANSPOSED_ORIENTATION_VALUES:
                width, height = height, width
    except (OSError, ValueError, SyntaxError, Image.DecompressionBombError):
        return None
    return ImageProbe(format=container, width=int(width), height=int(height))


def decode_image_bytes(file_bytes: bytes) -> DecodedImage:
    """Decode a JPEG/PNG blob into a read-only (h, w, 4) RGBA buffer."""
    metadata: dict[str, Any] = {"format": None, "raw_orientation": None}

    try:
        with Image.open(BytesIO(file_bytes)) as pil_img:
            if pil_img.format not in SUPPORTED_FORMATS:
                raise DecodeError(f"Unsupported image format '{pil_img.format}'. Please upload a JPG or PNG image.")
            _enforce_decode_pixel_limit(*pil_img.size)
            metadata["format"] = pil_img.format
            metadata["raw_orientation"] = _raw_orientation(pil_img)

            # Applies EXIF orientation, including mirrored modes.
            rgba_img = ImageOps.exif_transpose(pil_img).convert("RGBA")
            rgba = np.array(rgba_img, dtype=np.uint8)
    except Image.DecompressionBombError as exc:
        raise DecodeError(
            "Image resolution is too large to process safely. "
            f"Maximum decode limit is {MAX_DECODE_MEGAPIXELS:.0f} megapixels."
        ) from exc
    except DecodeError:
        raise
    except UnidentifiedImageError as exc:
        raise DecodeError("Unable to decode image. Please upload a valid JPG/PNG image.") from exc
    except (OSError, ValueError, SyntaxError) as exc:
        # Truncated or corrupt payloads surface here while Pillow loads pixels.
        raise DecodeError(f"Unable to decode image: {exc}") from exc

    if rgba.ndim != 3 or rgba.shape[2] != 4 or rgba.size == 0:
        raise DecodeError("Decoded image has an unexpected pixel layout.")
    rgba.setflags(write=False)
    return DecodedImage(rgba=rgba, metadata=metadata)


def grayscale_mean(rgba: np.ndarray) -> np.ndarray:
    """Per-pixel (R + G + B) / 3 as float64."""
    return rgba[:, :, :3].astype(np.float64).sum(axis=2) / 3.0


def laplacian_sharpness(gray: np.ndarray, normalization: float) -> float:
    h, w = gray.shape
    if h < 3 or w < 3:
        return 0.0
    # ksize=1 is the 4-neighbour kernel; its sign is irrelevant once absolute values are taken.
    response = cv2.Laplacian(gray, cv2.CV_64F, ksize=1)
    interior = np.abs(response[1:-1, 1:-1])
    avg_response = float(interior.sum()) / float(interior.size)
    return float(min(100.0, avg_response / normalization * 100.0))


def classify_overall_quality(sharpness: float, brightness: float, contrast: float) -> str:
    quality_score = (sharpness + min(brightness, 100.0 - brightness) + contrast) / 3.0
    if quality_score >= 80:
        return "excellent"
    if quality_score >= 65:
        return "good"
    if quality_score >= 50:
        return "fair"
    return "poor"


def assess_quality(image: DecodedImage, policy: QualityPolicy) -> QualityMetrics:
    """Brightness, dynamic-range contrast and Laplacian sharpness, each on 0..100.

    Contrast is (max - min) of the per-pixel channel mean, so a single outlier
    pixel can saturate it. It is not a perceptual contrast measure.
    """
    gray = grayscale_mean(image.rgba)
    brightness = float(gray.mean()) / 255.0 * 100.0
    contrast = (float(gray.max()) - float(gray.min())) / 255.0 * 100.0
    sharpness = laplacian_sharpness(gray, policy.sharpness_normalization)
    return QualityMetrics(
        sharpness=sharpness,
        brightness=brightness,
        contrast=contrast,
        overall_quality=classify_overall_quality(sharpness, brightness, contrast),
    )


def border_ring(gray: np.ndarray) -> np.ndarray:
    # Rows and columns are sampled independently, so each corner appears twice.
    return np.concatenate([gray[0, :], gray[-1, :], gray[:, 0], gray[:, -1]])


def analyze_background(image: DecodedImage, policy: BackgroundPolicy) -> BackgroundReport:
    ring = border_ring(grayscale_mean(image.rgba))
    mean = float(ring.mean())
    stddev = float(ring.std())

    if mean > policy.light_min_mean:
        tone = "light"
    elif mean > policy.medium_min_mean:
        tone = "medium"
    else:
        tone = "dark"

    return BackgroundReport(
        is_plain=stddev < policy.plain_max_stddev,
        dominant_tone=tone,
        has_patterns=stddev > policy.pattern_min_stddev,
        has_shadows=policy.shadow_min_stddev < stddev < policy.shadow_max_stddev,
        mean=mean,
        stddev=stddev,
    )


@dataclass(frozen=True)
class OptimizedPhoto:
    data: bytes
    width: int
    height: int
    original_size: int

    @property
    def processed_size(self) -> int:
        return len(self.data)

    @property
    def compression_ratio(self) -> float:
        return self.original_size / max(1, self.processed_size)


def needs_processing(
    blob: PhotoBlob,
    dimensions: tuple[int, int],
    policy: ProcessingPolicy,
) -> ProcessingAdvice:
    width, height = dimensions
    limit = policy.max_dimension_px
    needs_resize = width > limit or height > limit
    needs_compression = blob.size > policy.compress_above_bytes
    needs_format_change = (blob.mime_type or "").strip().lower() not in policy.preferred_mime_types

    recommendations: list[str] = []
    if needs_resize:
        recommendations.append(f"Resize image to maximum {limit}x{limit} pixels")
    if needs_compression:
        recommendations.append("Compress image to reduce file size")
    if needs_format_change:
        recommendations.append("Convert to JPEG format for better compatibility")

    return ProcessingAdvice(
        needs_resize=needs_resize,
        needs_compression=needs_compression,
        needs_format_change=needs_format_change,
        recommendations=recommendations,
    )


def fit_within(width: int, height: int, max_width: int, max_height: int) -> tuple[int, int]:
    """Scale down to fit the box, keeping the aspect ratio. Never upscales."""
    aspect_ratio = width / height
    new_w, new_h = float(width), float(height)
    if new_w > max_width:
        new_w = float(max_width)
        new_h = new_w / aspect_ratio
    if new_h > max_height:
        new_h = float(max_height)
        new_w = new_h * aspect_ratio
    return max(1, int(np.floor(new_w + 0.5))), max(1, int(np.floor(new_h + 0.5)))


def optimize_for_dv(file_bytes: bytes, policy: ProcessingPolicy) -> OptimizedPhoto:
    """Re-encode an upload as a JPEG no larger than the DV maximum.

    Raises DecodeError when the input cannot be decoded.
    """
    image = decode_image_bytes(file_bytes)
    limit = policy.max_dimension_px
    width, height = fit_within(image.width, image.height, limit, limit)

    # JPEG has no alpha channel; transparent pixels keep their stored colour.
    pil_img = Image.fromarray(image.rgba.copy()).convert("RGB")
    if (width, height) != pil_img.size:
        pil_img = pil_img.resize((width, height), Image.Resampling.LANCZOS)

    buffer = BytesIO()
    pil_img.save(buffer, format="JPEG", quality=int(policy.jpeg_quality))
    return OptimizedPhoto(data=buffer.getvalue(), width=width, height=height, original_size=len(file_bytes))

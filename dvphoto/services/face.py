from __future__ import annotations

import threading
from typing import Any, Protocol

import numpy as np

from dvphoto.config import FacePolicy
from dvphoto.schemas import FaceReport
from dvphoto.services.image_ops import DecodedImage

try:
    import mediapipe as mp
except Exception:  # pragma: no cover
    mp = None


EAR_LEFT_IDX = [33, 160, 158, 133, 153, 144]
EAR_RIGHT_IDX = [362, 385, 387, 263, 373, 380]
LEFT_EYE_CENTER_IDX = [33, 133, 159, 145]
RIGHT_EYE_CENTER_IDX = [362, 263, 386, 374]
NOSE_TIP_IDX = 1
MOUTH_TOP_IDX = 13
MOUTH_BOTTOM_IDX = 14


class FaceDetector(Protocol):
    name: str

    def detect_face(self, image: DecodedImage) -> FaceReport: ...


def center_region(rgba: np.ndarray, ratio: float) -> np.ndarray:
    h, w = rgba.shape[:2]
    region_w = int(np.floor(w * ratio))
    region_h = int(np.floor(h * ratio))
    left = (w - region_w) // 2
    top = (h - region_h) // 2
    return rgba[top : top + region_h, left : left + region_w]


class HeuristicFaceDetector:
    """Colour-statistics stand-in for a face detector.

    Counts skin-tone-like and dark pixels in the centre of the frame. It cannot
    tell faces apart or locate one, so ``count`` is at most 1, ``centered``
    mirrors ``detected`` and expression is never evaluated. Swap in a landmark
    backend for anything beyond a smoke test.
    """

    name = "heuristic"

    def __init__(self, policy: FacePolicy | None = None) -> None:
        self.policy = policy or FacePolicy()

    def pixel_ratios(self, image: DecodedImage) -> tuple[float, float]:
        p = self.policy
        region = center_region(image.rgba, p.center_region_ratio)
        if region.size == 0:
            return 0.0, 0.0

        rgb = region[:, :, :3].astype(np.int16)
        r, g, b = rgb[:, :, 0], rgb[:, :, 1], rgb[:, :, 2]
        skin = (
            (r > p.skin_min_red)
            & (g > p.skin_min_green)
            & (b > p.skin_min_blue)
            & (r > g)
            & (r > b)
            & (np.abs(r - g) > p.skin_min_red_green_gap)
        )
        dark = (r < p.dark_max_channel) & (g < p.dark_max_channel) & (b < p.dark_max_channel)
        return float(skin.mean()), float(dark.mean())

    def detect_face(self, image: DecodedImage) -> FaceReport:
        skin_ratio, dark_ratio = self.pixel_ratios(image)
        detected = skin_ratio > self.policy.min_skin_ratio and dark_ratio > self.policy.min_dark_ratio
        return FaceReport(
            detected=detected,
            count=1 if detected else 0,
            centered=detected,
            eyes_open=dark_ratio > self.policy.eyes_open_min_dark_ratio,
            neutral_expression=True,
            backend=self.name,
        )


def eye_aspect_ratio(landmarks: np.ndarray, idx: list[int]) -> float:
    p1, p2, p3, p4, p5, p6 = [landmarks[i] for i in idx]
    vertical = np.linalg.norm(p2 - p6) + np.linalg.norm(p3 - p5)
    horizontal = max(np.linalg.norm(p1 - p4), 1e-6)
    return float(vertical / (2.0 * horizontal))


class MediaPipeFaceDetector:
    """FaceMesh-backed detector using eye aspect ratio and mouth gap."""

    name = "mediapipe"

    def __init__(self, policy: FacePolicy | None = None, face_mesh: Any = None) -> None:
        self.policy = policy or FacePolicy()
        if face_mesh is None:
            if mp is None:
                raise RuntimeError("MediaPipe backend unavailable. Install the 'vision' extra and restart.")
            face_mesh = mp.solutions.face_mesh.FaceMesh(
                static_image_mode=True,
                max_num_faces=2,
                refine_landmarks=True,
                min_detection_confidence=0.5,
            )
        self.face_mesh = face_mesh
        # FaceMesh graphs are not re-entrant.
        self._lock = threading.Lock()

    def detect_face(self, image: DecodedImage) -> FaceReport:
        rgb = np.ascontiguousarray(image.rgba[:, :, :3])
        with self._lock:
            result = self.face_mesh.process(rgb)

        faces = list(result.multi_face_landmarks or [])
        if not faces:
            return FaceReport(
                detected=False,
                count=0,
                centered=False,
                eyes_open=False,
                neutral_expression=False,
                backend=self.name,
            )

        w, h = image.width, image.height
        landmarks = np.array([(pt.x * w, pt.y * h) for pt in faces[0].landmark], dtype=np.float32)
        left_eye = np.mean(landmarks[LEFT_EYE_CENTER_IDX], axis=0)
        right_eye = np.mean(landmarks[RIGHT_EYE_CENTER_IDX], axis=0)
        inter_eye = float(np.linalg.norm(left_eye - right_eye))

        dx = float(landmarks[NOSE_TIP_IDX][0] - w / 2.0)
        centered = abs(dx) <= self.policy.center_tolerance_fraction * w

        ear_min = min(
            eye_aspect_ratio(landmarks, EAR_LEFT_IDX),
            eye_aspect_ratio(landmarks, EAR_RIGHT_IDX),
        )
        mouth_gap = float(np.linalg.norm(landmarks[MOUTH_TOP_IDX] - landmarks[MOUTH_BOTTOM_IDX]))
        mouth_gap_ratio = mouth_gap / max(inter_eye, 1e-6)

        return FaceReport(
            detected=True,
            count=len(faces),
            centered=centered,
            eyes_open=ear_min >= self.policy.min_eye_aspect_ratio,
            neutral_expression=mouth_gap_ratio <= self.policy.max_mouth_gap_ratio,
            backend=self.name,
        )


def build_face_detector(policy: FacePolicy) -> FaceDetector:
    backend = (policy.backend or "heuristic").strip().lower()
    if backend == "heuristic":
        return HeuristicFaceDetector(policy)
    if backend == "mediapipe":
        return MediaPipeFaceDetector(policy)
    raise ValueError(f"Unknown face detector backend '{policy.backend}'.")

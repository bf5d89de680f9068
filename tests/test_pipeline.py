import unittest
from concurrent.futures import ThreadPoolExecutor
from unittest.mock import patch

from dvphoto.config import FacePolicy, PhotoPolicy
from dvphoto.schemas import FaceReport
from dvphoto.services import pipeline as pipeline_module
from dvphoto.services import face as face_module
from dvphoto.services.constraints import UNREADABLE_IMAGE_ERROR, PhotoBlob
from dvphoto.services.face import HeuristicFaceDetector
from dvphoto.services.pipeline import (
    ANALYSIS_FAILED_ERROR,
    PhotoCompliancePipeline,
)
from tests._images import compliant_portrait, encode, jpeg_blob, png_blob, uniform


class CountingFaceDetector:
    name = "counting"

    def __init__(self, report: FaceReport | None = None):
        self.calls = 0
        self.report = report
        self.fallback = HeuristicFaceDetector()

    def detect_face(self, image):
        self.calls += 1
        return self.report or self.fallback.detect_face(image)


class TestPipelineScenarios(unittest.TestCase):
    def setUp(self):
        self.detector = CountingFaceDetector()
        self.pipeline = PhotoCompliancePipeline(policy=PhotoPolicy(), face_detector=self.detector)

    def test_too_small_png_is_rejected_before_analysis(self):
        result = self.pipeline.validate(png_blob(uniform(400, 128)))
        self.assertFalse(result.is_valid)
        self.assertEqual(result.compliance_score, 0)
        self.assertEqual(result.issues, ["dimensions_out_of_range"])
        self.assertTrue(result.errors[0].startswith("Dimensions out of range"))
        self.assertEqual((result.metadata.width, result.metadata.height), (400, 400))
        self.assertFalse(result.analyzed)
        self.assertIsNone(result.quality_assessment)
        self.assertEqual(self.detector.calls, 0)

    def test_uniform_gray_jpeg_has_no_face(self):
        result = self.pipeline.validate(jpeg_blob(uniform(800, 128)))
        self.assertFalse(result.is_valid)
        self.assertTrue(result.analyzed)
        self.assertIn("No face detected in the photo.", result.errors)
        self.assertEqual(result.issues, ["face_not_detected", "low_sharpness", "low_contrast"])
        self.assertEqual(result.compliance_score, 25)
        self.assertFalse(result.face_detection.detected)
        self.assertTrue(result.background_analysis.is_plain)
        self.assertAlmostEqual(result.background_analysis.stddev, 0.0)

    def test_compliant_portrait_passes(self):
        result = self.pipeline.validate(png_blob(compliant_portrait()))
        self.assertTrue(result.is_valid, result.errors)
        self.assertEqual(result.errors, [])
        self.assertGreaterEqual(result.compliance_score, 85)
        self.assertTrue(result.face_detection.detected)
        self.assertTrue(result.background_analysis.is_plain)
        self.assertEqual(result.background_analysis.dominant_tone, "medium")
        self.assertGreaterEqual(result.quality_assessment.sharpness, 70.0)
        self.assertTrue(40.0 <= result.quality_assessment.brightness <= 80.0)
        self.assertGreaterEqual(result.quality_assessment.contrast, 50.0)
        self.assertEqual(result.metadata.width, 800)
        self.assertEqual(result.metadata.format, "image/png")
        self.assertEqual(self.detector.calls, 1)

    def test_jpeg_quality_levels_stay_in_same_band(self):
        # Compression smooths the 1px texture, so only the sharpness deduction may differ.
        high = self.pipeline.validate(jpeg_blob(compliant_portrait(), quality=95))
        low = self.pipeline.validate(jpeg_blob(compliant_portrait(), quality=75))
        self.assertTrue(high.is_valid, high.errors)
        self.assertEqual(high.is_valid, low.is_valid)
        self.assertNotIn("face_not_detected", low.issues)
        self.assertLessEqual(abs(high.compliance_score - low.compliance_score), 15)


class TestPipelineBehaviour(unittest.TestCase):
    def setUp(self):
        self.detector = CountingFaceDetector()
        self.pipeline = PhotoCompliancePipeline(policy=PhotoPolicy(), face_detector=self.detector)

    def test_oversized_file_short_circuits(self):
        blob = PhotoBlob(data=b"\xff\xd8" + b"\x00" * (10 * 1024 * 1024), mime_type="image/jpeg")
        with patch.object(pipeline_module, "analyze_background", wraps=pipeline_module.analyze_background) as bg, \
                patch.object(pipeline_module, "decode_image_bytes", wraps=pipeline_module.decode_image_bytes) as dec, \
                patch.object(pipeline_module, "probe_image", wraps=pipeline_module.probe_image) as probe:
            result = self.pipeline.validate(blob)

        self.assertFalse(result.is_valid)
        self.assertEqual(result.compliance_score, 0)
        self.assertEqual(result.issues, ["file_too_large"])
        self.assertEqual(bg.call_count, 0)
        self.assertEqual(dec.call_count, 0)
        self.assertEqual(probe.call_count, 0)
        self.assertEqual(self.detector.calls, 0)

    def test_wrong_format_short_circuits(self):
        blob = PhotoBlob(data=encode(uniform(800, 128), "PNG"), mime_type="image/gif")
        result = self.pipeline.validate(blob)
        self.assertEqual(result.issues, ["unsupported_format"])
        self.assertEqual(self.detector.calls, 0)

    def test_truncated_pixel_data_becomes_analysis_failure(self):
        data = encode(compliant_portrait(), "PNG")
        blob = PhotoBlob(data=data[: len(data) // 3], mime_type="image/png", filename="x.png")
        result = self.pipeline.validate(blob)
        self.assertFalse(result.is_valid)
        self.assertEqual(result.errors, [ANALYSIS_FAILED_ERROR])
        self.assertEqual(result.issues, ["analysis_failed"])
        self.assertEqual(result.recommendations, ["Try uploading a different photo"])
        self.assertEqual(result.compliance_score, 0)
        self.assertEqual((result.metadata.width, result.metadata.height), (0, 0))
        self.assertEqual(result.metadata.byte_size, blob.size)

    def test_unexpected_exception_is_contained(self):
        with patch.object(pipeline_module, "assess_quality", side_effect=RuntimeError("boom")):
            result = self.pipeline.validate(png_blob(compliant_portrait()))
        self.assertFalse(result.is_valid)
        self.assertEqual(result.errors, [ANALYSIS_FAILED_ERROR])
        self.assertEqual(result.compliance_score, 0)

    def test_multiple_faces_invalidates_regardless_of_quality(self):
        report = FaceReport(detected=True, count=2, centered=True, eyes_open=True, neutral_expression=True)
        pipeline = PhotoCompliancePipeline(policy=PhotoPolicy(), face_detector=CountingFaceDetector(report))
        result = pipeline.validate(png_blob(compliant_portrait()))
        self.assertFalse(result.is_valid)
        self.assertIn("multiple_faces", result.issues)
        self.assertEqual(result.compliance_score, 70)

    def test_warnings_do_not_invalidate(self):
        arr = compliant_portrait()
        arr[0, :] = 0
        result = self.pipeline.validate(png_blob(arr))
        self.assertTrue(result.is_valid)
        self.assertIn("complex_background", result.issues)
        self.assertLess(result.compliance_score, 100)

    def test_basic_mode_skips_pixel_analysis(self):
        result = self.pipeline.validate(png_blob(compliant_portrait()), advanced=False)
        self.assertTrue(result.is_valid)
        self.assertFalse(result.analyzed)
        self.assertEqual(result.compliance_score, 100)
        self.assertIsNone(result.face_detection)
        self.assertEqual(self.detector.calls, 0)

    def test_unreadable_header_is_rejected_in_basic_mode(self):
        blob = PhotoBlob(data=b"\x00" * 200 * 1024, mime_type="image/png")
        with patch.object(pipeline_module, "decode_image_bytes") as dec:
            result = self.pipeline.validate(blob, advanced=False)
        self.assertFalse(result.is_valid)
        self.assertEqual(result.compliance_score, 0)
        self.assertEqual(result.issues, ["unsupported_format"])
        self.assertEqual(result.errors, [UNREADABLE_IMAGE_ERROR])
        self.assertEqual(dec.call_count, 0)

    def test_unreadable_header_is_rejected_in_advanced_mode(self):
        blob = PhotoBlob(data=b"this is not a jpeg" * 10000, mime_type="image/jpeg", filename="x.jpg")
        result = self.pipeline.validate(blob)
        self.assertFalse(result.is_valid)
        self.assertEqual(result.issues, ["unsupported_format"])
        self.assertEqual(self.detector.calls, 0)

    def test_foreign_container_behind_allowed_mime_is_rejected(self):
        for advanced in (False, True):
            blob = PhotoBlob(data=encode(uniform(800, 128), "GIF"), mime_type="image/jpeg", filename="x.jpg")
            result = self.pipeline.validate(blob, advanced=advanced)
            self.assertFalse(result.is_valid, advanced)
            self.assertEqual(result.issues, ["unsupported_format"], advanced)
            self.assertIn("GIF", result.errors[0])
            self.assertEqual((result.metadata.width, result.metadata.height), (800, 800))
        self.assertEqual(self.detector.calls, 0)

    def test_png_behind_jpeg_mime_is_accepted(self):
        blob = PhotoBlob(data=encode(compliant_portrait(), "PNG"), mime_type="image/jpeg", filename="x.jpg")
        result = self.pipeline.validate(blob, advanced=False)
        self.assertTrue(result.is_valid, result.errors)

    def test_missing_mime_type_does_not_raise(self):
        blob = PhotoBlob(data=encode(compliant_portrait(), "PNG"), mime_type=None)
        for advanced in (False, True):
            result = self.pipeline.validate(blob, advanced=advanced)
            self.assertFalse(result.is_valid)
            self.assertEqual(result.issues, ["unsupported_format"])
            self.assertEqual(result.metadata.format, "")

    def test_processing_advice_is_attached(self):
        result = self.pipeline.validate(png_blob(compliant_portrait()), advanced=False)
        self.assertFalse(result.processing.needs_resize)
        self.assertTrue(result.processing.needs_format_change)
        self.assertEqual(result.processing.recommendations, ["Convert to JPEG format for better compatibility"])

        oversized = self.pipeline.validate(jpeg_blob(uniform(1300, 128)))
        self.assertEqual(oversized.issues, ["dimensions_out_of_range"])
        self.assertTrue(oversized.processing.needs_resize)
        self.assertFalse(oversized.processing.needs_format_change)

    def test_unavailable_landmark_backend_falls_back_to_heuristic(self):
        policy = PhotoPolicy(face=FacePolicy(backend="mediapipe"))
        with patch.object(face_module, "mp", None):
            with self.assertLogs("dvphoto.pipeline", level="WARNING") as logs:
                pipeline = PhotoCompliancePipeline(policy=policy)
        self.assertIsInstance(pipeline.face_detector, HeuristicFaceDetector)
        self.assertIn("face_backend_unavailable", logs.output[0])

    def test_advisory_warnings_are_merged(self):
        result = self.pipeline.validate(png_blob(compliant_portrait(), filename="screenshot_01.png"))
        self.assertTrue(result.is_valid)
        self.assertTrue(any("Screenshots" in w for w in result.warnings))

    def test_is_valid_matches_errors(self):
        blobs = [
            png_blob(compliant_portrait()),
            png_blob(uniform(400, 128)),
            jpeg_blob(uniform(800, 128)),
            PhotoBlob(data=b"junk" * 100, mime_type="image/png"),
        ]
        for blob in blobs:
            result = self.pipeline.validate(blob)
            self.assertEqual(result.is_valid, not result.errors)
            self.assertTrue(0 <= result.compliance_score <= 100)

    def test_repeat_calls_are_identical(self):
        blob = png_blob(compliant_portrait())
        first = self.pipeline.validate(blob)
        second = self.pipeline.validate(blob)
        self.assertEqual(first.model_dump_json(), second.model_dump_json())

    def test_concurrent_validations_do_not_interfere(self):
        pipeline = PhotoCompliancePipeline(policy=PhotoPolicy(), face_detector=HeuristicFaceDetector())
        blobs = [png_blob(compliant_portrait()), jpeg_blob(uniform(800, 128)), png_blob(uniform(400, 128))] * 3
        expected = [pipeline.validate(blob).model_dump() for blob in blobs]
        with ThreadPoolExecutor(max_workers=4) as pool:
            actual = [result.model_dump() for result in pool.map(pipeline.validate, blobs)]
        self.assertEqual(actual, expected)

    def test_input_blob_is_untouched(self):
        blob = png_blob(compliant_portrait())
        before = bytes(blob.data)
        self.pipeline.validate(blob)
        self.assertEqual(blob.data, before)

    def test_decoded_buffer_is_read_only_inside_analysis(self):
        seen = []

        class Inspector(CountingFaceDetector):
            def detect_face(self, image):
                seen.append(image.rgba.flags.writeable)
                return super().detect_face(image)

        pipeline = PhotoCompliancePipeline(policy=PhotoPolicy(), face_detector=Inspector())
        pipeline.validate(png_blob(compliant_portrait()))
        self.assertEqual(seen, [False])

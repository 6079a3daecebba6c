"""
End-to-end tests for the front/back alignment pipeline.

The back scan is produced from the front scan the way a flatbed sees a
board turned over: mirrored left to right (and, for the upside-down case,
also top to bottom). Alignment is checked on raw via positions, mapped
through each side's processing transform and the final registration.
"""

import json

import cv2
import numpy as np
import pytest

from boardalign.models.board import Edge
from boardalign.services.geometry import AffineTransform, Point2D
from boardalign.services.pipeline import BoardAligner
from boardalign.services.results import BoardAlignError
from boardalign.services.via_align import align_by_contacts
from boardalign.services.vias import Side

from synthetic import BACKGROUND, make_board

DPI = 300.0


@pytest.fixture(scope="module")
def scan():
    return make_board(width=2300, height=1300, board=(150, 200, 2000, 800), dpi=DPI, vias=60, via_radius=5)


@pytest.fixture(scope="module")
def mirrored_alignment(scan):
    back = cv2.flip(scan["image"], 1)
    return BoardAligner().align(scan["image"], back, dpi=DPI)


def registration_errors(alignment, front_points, back_points):
    """Distances between front points and their back partners after alignment."""
    errors = []
    for (fx, fy), (bx, by) in zip(front_points, back_points):
        f = alignment.front.to_processed.apply(Point2D(fx, fy))
        b = alignment.transform.apply(alignment.back.to_processed.apply(Point2D(bx, by)))
        errors.append(f.distance_to(b))
    return np.array(errors)


class TestBoardAligner:
    """Full pipeline on synthetic scans."""

    def test_mirrored_back_is_complete(self, mirrored_alignment):
        assert mirrored_alignment.ok, mirrored_alignment.reason
        alignment = mirrored_alignment.value
        assert alignment.record.complete
        assert alignment.record.reason is None
        assert alignment.record.via_profile == "strict"

    def test_sides_have_full_contact_rows(self, mirrored_alignment):
        alignment = mirrored_alignment.value
        assert len(alignment.front.detection.contacts) == 50
        assert len(alignment.back.detection.contacts) == 50
        assert alignment.front.detection.edge == Edge.TOP
        assert alignment.front.metadata.flipped is False
        assert alignment.back.metadata.flipped is True
        assert alignment.back.metadata.dpi == pytest.approx(DPI)

    def test_transform_is_near_identity(self, mirrored_alignment):
        """Identical processed frames: the registration barely moves anything."""
        alignment = mirrored_alignment.value
        w, h = alignment.front.width, alignment.front.height
        corners = np.array([[0, 0], [w, 0], [0, h], [w, h]], dtype=np.float64)
        moved = alignment.transform.apply_array(corners)
        assert np.abs(moved - corners).max() < 1.5

    def test_raw_vias_register(self, scan, mirrored_alignment):
        alignment = mirrored_alignment.value
        width = scan["image"].shape[1]
        front_points = scan["via_centers"]
        back_points = [(width - 1 - x, y) for x, y in front_points]
        errors = registration_errors(alignment, front_points, back_points)
        assert errors.max() < 1.5

    def test_vias_are_matched(self, mirrored_alignment):
        record = mirrored_alignment.value.record
        assert record.total_front == 60
        assert record.total_back == 60
        assert record.matched >= 55
        assert record.avg_error_px < 1.0

    def test_record_serializes(self, mirrored_alignment):
        record = mirrored_alignment.value.record
        data = json.loads(json.dumps(record.model_dump()))
        assert len(data["matrix"]) == 2
        assert data["front"]["crop"]["width"] > 0
        assert data["back"]["flipped"] is True

    def test_warp_back_matches_front_frame(self, mirrored_alignment):
        alignment = mirrored_alignment.value
        warped = alignment.warp_back()
        assert warped.shape == alignment.front.image.shape

    def test_upside_down_back(self, scan):
        """A back scanned upside down is turned so its contacts are on top."""
        height = scan["image"].shape[0]
        back = cv2.flip(scan["image"], 0)
        outcome = BoardAligner().align(scan["image"], back, dpi=DPI)
        assert outcome.ok, outcome.reason
        alignment = outcome.value
        assert alignment.back.metadata.rotation_steps == 180
        assert alignment.back.metadata.contact_edge == Edge.TOP.value

        front_points = scan["via_centers"]
        back_points = [(x, height - 1 - y) for x, y in front_points]
        errors = registration_errors(alignment, front_points, back_points)
        assert errors.max() < 1.5

    def test_blank_back_is_partial(self, scan):
        blank = np.full_like(scan["image"], BACKGROUND)
        outcome = BoardAligner().align(scan["image"], blank, dpi=DPI)
        assert not outcome.ok
        assert "not enough contacts" in outcome.reason
        assert "not enough vias" in outcome.reason
        assert outcome.value.record.complete is False
        assert outcome.value.transform == AffineTransform.identity()


class TestProcessSide:
    """Per-side processing."""

    def test_none_image_raises(self):
        with pytest.raises(BoardAlignError) as exc:
            BoardAligner().process_side(None, Side.FRONT)
        assert exc.value.code == "INVALID_IMAGE"

    def test_back_transform_includes_mirror(self, scan):
        outcome = BoardAligner().process_side(scan["image"], Side.BACK, dpi=DPI)
        processed = outcome.value
        width = scan["image"].shape[1]
        left = processed.to_processed.apply(Point2D(0, 500))
        right = processed.to_processed.apply(Point2D(width - 1, 500))
        # Mirroring puts the raw left edge on the right of the processed frame
        assert left.x > right.x

    def test_contact_alignment_between_sides(self, scan):
        aligner = BoardAligner()
        front = aligner.process_side(scan["image"], Side.FRONT, dpi=DPI).value
        back = aligner.process_side(cv2.flip(scan["image"], 1), Side.BACK, dpi=DPI).value
        outcome = align_by_contacts(front.detection, back.detection)
        assert outcome.ok, outcome.reason
        result = outcome.value
        assert result.pairs == 50
        assert result.avg_error < 0.5
        assert result.transform.almost_equal(AffineTransform.identity(), tol=0.05)

    @pytest.mark.parametrize("n_front, n_back, expected", [
        (60, 60, 30),
        (400, 500, 80),
        (8, 100, 10),
    ])
    def test_quick_match_threshold(self, n_front, n_back, expected):
        assert BoardAligner().quick_match_threshold(n_front, n_back, 40) == expected


class TestServiceLifetime:
    """Services are built per call; no module keeps a shared instance."""

    def test_no_module_level_instances(self):
        from boardalign.services import board_bounds, coarse_align, pipeline

        shared = [
            (module.__name__, name)
            for module, cls in [
                (board_bounds, board_bounds.BoardBoundsDetector),
                (coarse_align, coarse_align.CoarseAligner),
                (pipeline, BoardAligner),
            ]
            for name, value in vars(module).items()
            if isinstance(value, cls)
        ]
        assert shared == [], f"Module-level service instances: {shared}"

    def test_aligners_do_not_share_detectors(self):
        first, second = BoardAligner(), BoardAligner()
        assert first.bounds_detector is not second.bounds_detector

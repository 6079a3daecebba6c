"""
Tests for via detection, filtering and profile configuration.
"""

import cv2
import numpy as np
import pytest

from boardalign.services.geometry import Point2D
from boardalign.services.vias import (
    BrightCoreDetector,
    Side,
    Via,
    ViaDetector,
    ViaMethod,
    ViaParams,
    ViaProfile,
    detect_both_sides,
    merge_by_proximity,
    neighbor_counts,
    profile_sequence,
    reject_dense_vias,
)

from synthetic import BOARD_GREEN, scatter_vias


def via_board(color=(235, 235, 235), count: int = 12, radius: int = 8, seed: int = 7):
    image = np.full((700, 900, 3), BOARD_GREEN, dtype=np.uint8)
    centers = scatter_vias(image, (0, 0, 900, 700), count, radius, min_spacing=60, seed=seed, color=color)
    return image, centers


def nearest_distance(point: Point2D, centers) -> float:
    return min(np.hypot(point.x - x, point.y - y) for x, y in centers)


def via(x: float, y: float, confidence: float = 0.5, idx: int = 0) -> Via:
    return Via(id=f"v{idx}", center=Point2D(x, y), radius=8.0, side=Side.FRONT, confidence=confidence)


class TestViaParams:
    """Tests for profile parameters."""

    def test_radius_range_at_600_dpi(self):
        params = ViaParams(dpi=600)
        assert params.min_radius_px == 3
        assert params.max_radius_px == 15

    def test_profiles_loosen_in_order(self):
        sequence = profile_sequence()
        assert [p for p, _ in sequence] == [ViaProfile.STRICT, ViaProfile.RELAXED, ViaProfile.LOOSE]
        val = [params.val_min for _, params in sequence]
        circ = [params.circularity_min for _, params in sequence]
        assert val == sorted(val, reverse=True)
        assert circ == sorted(circ, reverse=True)

    def test_custom_sequence(self):
        assert [p for p, _ in profile_sequence(["loose"])] == [ViaProfile.LOOSE]

    def test_unknown_profile_raises(self):
        with pytest.raises(ValueError):
            profile_sequence(["extreme"])


class TestViaDetector:
    """Tests for the distance-transform detector."""

    def test_finds_grey_vias(self):
        image, centers = via_board()
        result = ViaDetector(ViaParams(dpi=600)).detect(image, Side.FRONT)

        assert len(result.vias) == len(centers)
        for v in result.vias:
            assert nearest_distance(v.center, centers) < 1.0
            assert v.radius == pytest.approx(8.0, abs=1.5)
            assert v.method == ViaMethod.CONTOUR
        assert result.vias[0].id == "via-f-001"

    def test_back_side_ids(self):
        image, _ = via_board(count=3)
        result = ViaDetector(ViaParams(dpi=600)).detect(image, Side.BACK)
        assert [v.id for v in result.vias] == ["via-b-001", "via-b-002", "via-b-003"]

    def test_coloured_blob_is_not_metallic(self):
        """Bright but saturated blobs fail the saturation check."""
        image, _ = via_board(color=(40, 230, 250))
        result = ViaDetector(ViaParams(dpi=600)).detect(image)
        assert result.vias == []

    def test_thin_trace_is_not_a_via(self):
        """Traces narrower than the minimum via diameter produce no peaks."""
        image = np.full((400, 400, 3), BOARD_GREEN, dtype=np.uint8)
        cv2.line(image, (60, 200), (340, 200), (235, 235, 235), 4)
        result = ViaDetector(ViaParams(dpi=600)).detect(image)
        assert result.vias == []


class TestBrightCoreDetector:
    """Tests for the bright-core detector."""

    def test_finds_white_cores(self):
        image, centers = via_board(color=(255, 255, 255), count=8)
        result = BrightCoreDetector(ViaParams(dpi=600)).detect(image, Side.BACK)
        assert len(result.vias) == 8
        for v in result.vias:
            assert nearest_distance(v.center, centers) < 1.0
            assert v.method == ViaMethod.BRIGHT_CORE
            assert v.confidence == pytest.approx(0.95)
        assert result.vias[0].id.startswith("bc-b-")

    def test_ignores_grey_vias(self):
        image, _ = via_board(count=8)
        assert BrightCoreDetector(ViaParams(dpi=600)).detect(image).vias == []


class TestFilters:
    """Tests for density rejection and merging."""

    def test_neighbor_counts(self):
        points = np.array([[0, 0], [3, 0], [0, 4], [100, 100]], dtype=np.float64)
        assert list(neighbor_counts(points, 5.0)) == [2, 2, 2, 0]

    def test_dense_cluster_is_removed(self):
        cluster = [via(500 + dx, 500 + dy, idx=i) for i, (dx, dy) in enumerate([(0, 0), (8, 0), (0, 8), (8, 8)])]
        isolated = via(100, 100, idx=9)
        kept = reject_dense_vias(cluster + [isolated], radius=15.0, max_neighbors=2)
        assert kept == [isolated]

    def test_pairs_survive_density_filter(self):
        pair = [via(100, 100, idx=1), via(110, 100, idx=2)]
        assert reject_dense_vias(pair, radius=15.0) == pair

    def test_merge_prefers_higher_confidence(self):
        standard = [via(100, 100, confidence=0.6, idx=1), via(300, 300, confidence=0.6, idx=2)]
        bright = [via(102, 101, confidence=0.95, idx=3)]
        merged = merge_by_proximity(standard, bright, distance=5.0)
        assert [v.id for v in merged] == ["v3", "v2"]

    def test_merge_keeps_distinct_vias(self):
        merged = merge_by_proximity([via(100, 100, idx=1)], [via(120, 100, idx=2)], distance=5.0)
        assert len(merged) == 2


class TestDetectBothSides:
    """Tests for the concurrent four-way detection."""

    def test_results_per_side(self):
        front, front_centers = via_board(count=10, seed=1)
        back, back_centers = via_board(color=(255, 255, 255), count=6, seed=2)
        f, b = detect_both_sides(front, back, ViaParams(dpi=600), profile=ViaProfile.STRICT)

        assert f.side == Side.FRONT and b.side == Side.BACK
        assert f.profile == ViaProfile.STRICT
        assert len(f.vias) == 10
        # Standard and bright-core detections of the same vias merge into one each
        assert len(b.vias) == 6
        assert all(v.side == Side.BACK for v in b.vias)

"""
Tests for board bounds detection and straightening.
"""

import math

import cv2
import numpy as np
import pytest

from boardalign.services.board_bounds import BoardBoundsDetector, normalize_angle
from boardalign.services.results import BoardAlignError

BACKGROUND = (25, 25, 25)
BOARD = (30, 100, 30)


def tilted_board(angle_deg: float, width: int = 1800, height: int = 1200, size=(1200, 700), background=BACKGROUND) -> np.ndarray:
    """Board rectangle rotated by angle_deg (x' = x cos - y sin, y' = x sin + y cos)."""
    image = np.full((height, width, 3), background, dtype=np.uint8)
    cx, cy = width / 2.0, height / 2.0
    hw, hh = size[0] / 2.0, size[1] / 2.0
    t = math.radians(angle_deg)
    corners = []
    for x, y in [(-hw, -hh), (hw, -hh), (hw, hh), (-hw, hh)]:
        corners.append([cx + x * math.cos(t) - y * math.sin(t), cy + x * math.sin(t) + y * math.cos(t)])
    cv2.fillPoly(image, [np.round(corners).astype(np.int32)], BOARD)
    return image


class TestNormalizeAngle:
    """Tests for angle folding."""

    @pytest.mark.parametrize("raw, expected", [
        (0.0, 0.0),
        (80.0, -10.0),
        (-60.0, 30.0),
        (180.0, 0.0),
        (45.0, 45.0),
        (-135.0, -45.0),
    ])
    def test_folds_into_range(self, raw, expected):
        assert normalize_angle(raw) == pytest.approx(expected)


class TestBoardBoundsDetector:
    """Tests for BoardBoundsDetector."""

    @pytest.fixture
    def detector(self):
        return BoardBoundsDetector()

    def test_background_is_median_patch(self, detector):
        image = tilted_board(0.0)
        background = detector.sample_background(image)
        assert np.allclose(background, BACKGROUND, atol=1.0), f"Got {background}"

    def test_axis_aligned_board(self, detector):
        image = tilted_board(0.0)
        board = detector.detect(image)
        assert not board.fallback
        assert abs(board.angle_deg) < 0.5
        assert board.long_edge == pytest.approx(1200, abs=10)
        assert board.short_edge == pytest.approx(700, abs=10)
        # 5% margin on each side of the 1200x700 board
        assert board.bounds.width == pytest.approx(1320, abs=15)
        assert board.bounds.height == pytest.approx(770, abs=15)

    @pytest.mark.parametrize("tilt", [-7.0, -2.5, 3.0, 12.0])
    def test_tilt_is_measured(self, detector, tilt):
        board = detector.detect(tilted_board(tilt))
        assert -45.0 <= board.angle_deg <= 45.0
        assert board.angle_deg == pytest.approx(tilt, abs=0.5), f"Expected {tilt}°, got {board.angle_deg:.2f}°"

    def test_portrait_board_angle_in_range(self, detector):
        """A board standing on its short edge still reports an angle in [-45, 45]."""
        board = detector.detect(tilted_board(94.0, width=1400, height=1600))
        assert -45.0 <= board.angle_deg <= 45.0
        assert board.angle_deg == pytest.approx(4.0, abs=0.5)

    @pytest.mark.parametrize("tilt", [-4.0, 6.0])
    def test_straightening_is_idempotent(self, detector, tilt):
        """Detecting again on the straightened crop finds (almost) no tilt."""
        image = tilted_board(tilt)
        board = detector.detect(image)
        straightened, rect, _ = detector.rotate_and_crop(image, board)

        again = detector.detect(straightened)
        assert abs(again.angle_deg) < 0.5, f"Residual tilt {again.angle_deg:.2f}°"
        assert straightened.shape[1] == rect.width
        assert straightened.shape[0] == rect.height

    def test_crop_transform_maps_board_center(self, detector):
        image = tilted_board(5.0)
        board = detector.detect(image)
        straightened, _, to_crop = detector.rotate_and_crop(image, board)
        center = to_crop.apply(board.center)
        h, w = straightened.shape[:2]
        assert center.x == pytest.approx(w / 2.0, abs=5)
        assert center.y == pytest.approx(h / 2.0, abs=5)

    def test_black_canvas_fill_is_trimmed(self, detector):
        """On a black scanner lid the crop margin is pure fill and gets cut back to the board."""
        image = tilted_board(8.0, background=(0, 0, 0))
        board = detector.detect(image)
        straightened, rect, to_crop = detector.rotate_and_crop(image, board)

        h, w = straightened.shape[:2]
        assert (h, w) == (rect.height, rect.width)
        assert w == pytest.approx(1200, abs=15)
        assert h == pytest.approx(700, abs=15)
        gray = cv2.cvtColor(straightened, cv2.COLOR_BGR2GRAY)
        for border in (gray[0], gray[-1], gray[:, 0], gray[:, -1]):
            assert border.max() > 15

        center = to_crop.apply(board.center)
        assert center.x == pytest.approx(w / 2.0, abs=5)
        assert center.y == pytest.approx(h / 2.0, abs=5)

    def test_blank_image_falls_back(self, detector):
        image = np.full((800, 1000, 3), BACKGROUND, dtype=np.uint8)
        board = detector.detect(image)
        assert board.fallback
        assert board.angle_deg == 0.0
        assert board.bounds.to_dict() == {"x": 0, "y": 0, "width": 1000, "height": 800}

    def test_small_region_falls_back(self, detector):
        """Regions under 25% of the image in either dimension are not boards."""
        image = np.full((1000, 1000, 3), BACKGROUND, dtype=np.uint8)
        cv2.rectangle(image, (400, 400), (480, 900), BOARD, -1)
        board = detector.detect(image)
        assert board.fallback

    def test_none_image_is_hard_error(self, detector):
        with pytest.raises(BoardAlignError) as exc:
            detector.detect(None)
        assert exc.value.code == "INVALID_IMAGE"

    def test_empty_image_is_hard_error(self, detector):
        with pytest.raises(BoardAlignError):
            detector.detect(np.zeros((0, 0, 3), dtype=np.uint8))

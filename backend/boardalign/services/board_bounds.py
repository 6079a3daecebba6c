"""
Board bounds detection.

Separates the board silhouette from the scanner background and measures
how far the board is tilted.

Algorithm:
1. Downscale so the longest side is at most ~1500 px
2. Sample background colour from small patches along all four edges
   (corners skipped) and keep the median-brightness patch
3. Build a per-channel difference mask and clean it with close + open
4. Take the largest external contour below 90% of the image area
5. Fit a minimum-area rectangle: its long edge gives the tilt, its
   corners give the crop box (plus a safety margin)
"""

import logging
import math
from dataclasses import dataclass, field
from typing import List, Tuple

import cv2
import numpy as np

from boardalign.config import settings
from boardalign.services.geometry import AffineTransform, Point2D, RectInt
from boardalign.services.raster import crop, crop_black_borders, rotate_expanded
from boardalign.services.results import require_image

logger = logging.getLogger(__name__)

DEFAULT_BACKGROUND = (50.0, 50.0, 50.0)


@dataclass
class BoardBounds:
    """Detected board region in original image coordinates."""
    bounds: RectInt               # Axis-aligned crop box with margin
    angle_deg: float              # Long-edge tilt, in [-45, 45]
    center: Point2D               # Centre of the minimum-area rectangle
    long_edge: float              # Rectangle edge lengths (px)
    short_edge: float
    corners: List[Point2D] = field(default_factory=list)
    background_bgr: Tuple[float, float, float] = DEFAULT_BACKGROUND
    fallback: bool = False        # True when the whole image was used

    def to_dict(self) -> dict:
        return {
            "bounds": self.bounds.to_dict(),
            "angle_deg": round(self.angle_deg, 4),
            "center": {"x": round(self.center.x, 2), "y": round(self.center.y, 2)},
            "long_edge": round(self.long_edge, 2),
            "short_edge": round(self.short_edge, 2),
            "fallback": self.fallback,
        }


def normalize_angle(angle_deg: float) -> float:
    """Fold an angle into [-45, 45] by repeated ±90° steps."""
    while angle_deg > 45.0:
        angle_deg -= 90.0
    while angle_deg < -45.0:
        angle_deg += 90.0
    return angle_deg


class BoardBoundsDetector:
    """Detects the board silhouette against the scanner background."""

    def __init__(
        self,
        max_dimension: int = None,
        diff_threshold: int = None,
        crop_margin: float = None,
        log: logging.Logger = None,
    ):
        self.config = settings
        self.max_dimension = max_dimension or settings.bounds_max_dimension
        self.diff_threshold = diff_threshold or settings.bounds_diff_threshold
        self.crop_margin = settings.bounds_crop_margin if crop_margin is None else crop_margin
        self.log = log or logger

    # ============================================================
    # BACKGROUND MODEL
    # ============================================================

    def sample_background(self, image: np.ndarray) -> Tuple[float, float, float]:
        """
        Estimate the scanner background colour.

        Patches are laid out at regular intervals along each edge, away
        from the corners. The patch with median brightness wins, so a
        minority of patches landing on black borders or on the board
        itself cannot drag the estimate.

        Returns:
            Mean BGR colour of the median-brightness patch
        """
        h, w = image.shape[:2]
        size = self.config.bounds_patch_size
        margin = self.config.bounds_patch_margin
        count = self.config.bounds_patches_per_edge

        origins = []
        for i in range(count):
            # Fractions 1/(n+1) .. n/(n+1) keep patches off the corners
            fx = (i + 1) / (count + 1)
            x = int(fx * w) - size // 2
            y = int(fx * h) - size // 2
            origins.append((x, margin))                   # top
            origins.append((x, h - margin - size))        # bottom
            origins.append((margin, y))                   # left
            origins.append((w - margin - size, y))        # right

        patches = []
        for x, y in origins:
            x1, y1 = max(0, x), max(0, y)
            x2, y2 = min(w, x + size), min(h, y + size)
            if x2 - x1 < 2 or y2 - y1 < 2:
                continue
            mean = image[y1:y2, x1:x2].reshape(-1, 3).mean(axis=0)
            patches.append(tuple(float(v) for v in mean))

        if not patches:
            self.log.debug("No background patches fit the image, using default")
            return DEFAULT_BACKGROUND

        patches.sort(key=lambda c: c[0] + c[1] + c[2])
        return patches[len(patches) // 2]

    def build_difference_mask(self, image: np.ndarray, background: Tuple[float, float, float]) -> np.ndarray:
        """Binary mask of pixels that differ from the background in any channel."""
        threshold = self.diff_threshold
        if all(c < self.config.bounds_dark_background for c in background):
            threshold = self.config.bounds_dark_diff_threshold

        bg = np.array(background, dtype=np.float32).reshape(1, 1, 3)
        diff = np.abs(image.astype(np.float32) - bg)
        mask = (diff > threshold).any(axis=2).astype(np.uint8) * 255

        k = self.config.bounds_morph_kernel
        kernel = cv2.getStructuringElement(cv2.MORPH_RECT, (k, k))
        mask = cv2.morphologyEx(mask, cv2.MORPH_CLOSE, kernel)
        mask = cv2.morphologyEx(mask, cv2.MORPH_OPEN, kernel)
        return mask

    # ============================================================
    # DETECTION
    # ============================================================

    def _full_image(self, w: int, h: int, background) -> BoardBounds:
        return BoardBounds(
            bounds=RectInt(0, 0, w, h),
            angle_deg=0.0,
            center=Point2D(w / 2.0, h / 2.0),
            long_edge=float(max(w, h)),
            short_edge=float(min(w, h)),
            corners=[Point2D(0, 0), Point2D(w, 0), Point2D(w, h), Point2D(0, h)],
            background_bgr=background,
            fallback=True,
        )

    def detect(self, image: np.ndarray) -> BoardBounds:
        """
        Detect board bounds and tilt.

        Args:
            image: Full-resolution BGR image

        Returns:
            BoardBounds in original coordinates. Falls back to the whole
            image with zero rotation when no plausible board is found.

        Raises:
            BoardAlignError: If the image is None or empty
        """
        require_image(image)
        h, w = image.shape[:2]

        scale = min(1.0, self.max_dimension / float(max(w, h)))
        if scale < 1.0:
            small = cv2.resize(
                image, (max(1, int(w * scale)), max(1, int(h * scale))),
                interpolation=cv2.INTER_AREA,
            )
        else:
            small = image
        sh, sw = small.shape[:2]

        background = self.sample_background(small)
        mask = self.build_difference_mask(small, background)

        contours, _ = cv2.findContours(mask, cv2.RETR_EXTERNAL, cv2.CHAIN_APPROX_SIMPLE)
        max_area = self.config.bounds_max_region_fraction * sw * sh
        best = None
        best_area = 0.0
        for contour in contours:
            area = cv2.contourArea(contour)
            if area < max_area and area > best_area:
                best, best_area = contour, area

        if best is None:
            self.log.info("Board bounds: no board region found, using full image")
            return self._full_image(w, h, background)

        rect = cv2.minAreaRect(best)
        box = cv2.boxPoints(rect) / scale
        angle, long_edge, short_edge = self._long_edge_angle(box)

        x1, y1 = box.min(axis=0)
        x2, y2 = box.max(axis=0)
        mx = (x2 - x1) * self.crop_margin
        my = (y2 - y1) * self.crop_margin
        bounds = RectInt.from_xyxy(
            int(math.floor(x1 - mx)), int(math.floor(y1 - my)),
            int(math.ceil(x2 + mx)), int(math.ceil(y2 + my)),
        ).clamp(w, h)

        min_frac = self.config.bounds_min_fraction
        if bounds.width < w * min_frac or bounds.height < h * min_frac:
            self.log.info(
                f"Board bounds: {bounds.width}x{bounds.height} too small for "
                f"{w}x{h} image, using full image"
            )
            return self._full_image(w, h, background)

        center = Point2D(float(rect[0][0]) / scale, float(rect[0][1]) / scale)
        self.log.debug(
            f"Board bounds: {bounds.to_dict()}, angle={angle:.2f}°, "
            f"background={tuple(round(c) for c in background)}"
        )
        return BoardBounds(
            bounds=bounds,
            angle_deg=angle,
            center=center,
            long_edge=long_edge,
            short_edge=short_edge,
            corners=[Point2D(float(x), float(y)) for x, y in box],
            background_bgr=background,
        )

    @staticmethod
    def _long_edge_angle(box: np.ndarray) -> Tuple[float, float, float]:
        """
        Orientation of the rectangle's long edge, folded into [-45, 45].

        Returns:
            Tuple of (angle_deg, long_edge, short_edge)
        """
        e1 = box[1] - box[0]
        e2 = box[2] - box[1]
        len1 = float(np.hypot(*e1))
        len2 = float(np.hypot(*e2))
        long_vec = e1 if len1 >= len2 else e2
        angle = math.degrees(math.atan2(float(long_vec[1]), float(long_vec[0])))
        return normalize_angle(angle), max(len1, len2), min(len1, len2)

    # ============================================================
    # STRAIGHTEN + CROP
    # ============================================================

    def rotate_and_crop(
        self,
        image: np.ndarray,
        board: BoardBounds,
    ) -> Tuple[np.ndarray, RectInt, AffineTransform]:
        """
        Straighten the board, then crop to it.

        The image is rotated about its centre onto an expanded canvas, the
        detected rectangle's corners are mapped into the rotated frame, and
        their axis-aligned box plus margin becomes the crop.

        Returns:
            Tuple of (cropped image, crop rect in the rotated frame,
            transform mapping original -> cropped coordinates)
        """
        require_image(image)
        if abs(board.angle_deg) < 1e-6:
            rotated, rot = image, AffineTransform.identity()
        else:
            rotated, rot = rotate_expanded(image, board.angle_deg)
        rh, rw = rotated.shape[:2]

        corners = rot.apply_array([[p.x, p.y] for p in board.corners])
        x1, y1 = corners.min(axis=0)
        x2, y2 = corners.max(axis=0)
        mx = (x2 - x1) * self.crop_margin
        my = (y2 - y1) * self.crop_margin
        rect = RectInt.from_xyxy(
            int(round(x1 - mx)), int(round(y1 - my)),
            int(round(x2 + mx)), int(round(y2 + my)),
        ).clamp(rw, rh)

        cropped = crop(rotated, rect)
        if abs(board.angle_deg) >= 1e-6:
            # The margin can reach into the black fill of the expanded canvas
            cropped, inner = crop_black_borders(cropped)
            rect = RectInt(rect.x + inner.x, rect.y + inner.y, inner.width, inner.height)

        self.log.debug(
            f"Rotate+crop: correction={board.angle_deg:.2f}°, crop={rect.to_dict()} on {rw}x{rh}"
        )
        to_crop = AffineTransform.translation(-rect.x, -rect.y).compose(rot)
        return cropped, rect, to_crop

"""
Raster helpers: colour conversion and whole-image geometric operations.

Colour conversions are split into horizontal row stripes, one task per
worker, and joined before the result is returned. OpenCV releases the
GIL inside cvtColor, so stripes run truly in parallel.
"""

import logging
import math
from concurrent.futures import ThreadPoolExecutor
from typing import Tuple

import cv2
import numpy as np

from boardalign.config import settings
from boardalign.services.geometry import AffineTransform, RectInt
from boardalign.services.results import require_image

logger = logging.getLogger(__name__)

# Below this many rows the thread pool costs more than it saves
MIN_ROWS_PER_STRIPE = 64


def _stripe_bounds(rows: int, workers: int) -> list:
    stripe = max(MIN_ROWS_PER_STRIPE, (rows + workers - 1) // workers)
    return [(y, min(rows, y + stripe)) for y in range(0, rows, stripe)]


def convert_color(image: np.ndarray, code: int, max_workers: int = None) -> np.ndarray:
    """
    Apply cv2.cvtColor in parallel row stripes.

    Args:
        image: Source image
        code: OpenCV colour conversion code
        max_workers: Pool size (defaults to settings.max_workers)

    Returns:
        Converted image, identical to a single cv2.cvtColor call
    """
    workers = max_workers or settings.max_workers
    stripes = _stripe_bounds(image.shape[0], workers)
    if len(stripes) <= 1:
        return cv2.cvtColor(image, code)

    def convert(bounds):
        y1, y2 = bounds
        return cv2.cvtColor(np.ascontiguousarray(image[y1:y2]), code)

    with ThreadPoolExecutor(max_workers=workers) as pool:
        parts = list(pool.map(convert, stripes))
    return np.vstack(parts)


def to_bgr(image: np.ndarray, name: str = "image") -> np.ndarray:
    """Normalize a grey, BGR or BGRA buffer to 3-channel BGR uint8."""
    if image is None or image.size == 0:
        return require_image(image, name=name)
    if image.dtype != np.uint8:
        image = np.clip(image, 0, 255).astype(np.uint8)
    if image.ndim == 2:
        return convert_color(image, cv2.COLOR_GRAY2BGR)
    if image.shape[2] == 4:
        return convert_color(image, cv2.COLOR_BGRA2BGR)
    return require_image(image, name=name)


def to_hsv(image: np.ndarray) -> np.ndarray:
    return convert_color(image, cv2.COLOR_BGR2HSV)


def to_gray(image: np.ndarray) -> np.ndarray:
    return convert_color(image, cv2.COLOR_BGR2GRAY)


# ============================================================
# GEOMETRIC OPERATIONS
# ============================================================

def rotate_quarter(image: np.ndarray, degrees: int) -> np.ndarray:
    """Rotate clockwise by 0, 90, 180 or 270 degrees."""
    degrees = degrees % 360
    if degrees == 90:
        return cv2.rotate(image, cv2.ROTATE_90_CLOCKWISE)
    if degrees == 180:
        return cv2.rotate(image, cv2.ROTATE_180)
    if degrees == 270:
        return cv2.rotate(image, cv2.ROTATE_90_COUNTERCLOCKWISE)
    if degrees != 0:
        raise ValueError(f"Quarter rotation must be a multiple of 90, got {degrees}")
    return image.copy()


def quarter_rotation_transform(degrees: int, width: int, height: int) -> AffineTransform:
    """Point mapping matching rotate_quarter for an image of the given size."""
    degrees = degrees % 360
    if degrees == 90:
        return AffineTransform(a=0.0, b=-1.0, tx=height - 1, c=1.0, d=0.0, ty=0.0)
    if degrees == 180:
        return AffineTransform(a=-1.0, b=0.0, tx=width - 1, c=0.0, d=-1.0, ty=height - 1)
    if degrees == 270:
        return AffineTransform(a=0.0, b=1.0, tx=0.0, c=-1.0, d=0.0, ty=width - 1)
    return AffineTransform.identity()


def flip_horizontal(image: np.ndarray) -> np.ndarray:
    return cv2.flip(image, 1)


def rotation_matrix_expanded(angle_deg: float, width: int, height: int) -> Tuple[np.ndarray, int, int]:
    """
    Rotation about the image centre with the canvas expanded to fit.

    Positive angles rotate counter-clockwise on screen (cv2 convention).

    Returns:
        Tuple of (2x3 matrix, new width, new height)
    """
    M = cv2.getRotationMatrix2D((width / 2.0, height / 2.0), angle_deg, 1.0)
    cos_a = abs(M[0, 0])
    sin_a = abs(M[0, 1])
    new_w = int(math.ceil(height * sin_a + width * cos_a))
    new_h = int(math.ceil(height * cos_a + width * sin_a))
    M[0, 2] += new_w / 2.0 - width / 2.0
    M[1, 2] += new_h / 2.0 - height / 2.0
    return M, new_w, new_h


def rotate_expanded(image: np.ndarray, angle_deg: float) -> Tuple[np.ndarray, AffineTransform]:
    """Rotate by an arbitrary angle onto an expanded black canvas."""
    h, w = image.shape[:2]
    M, new_w, new_h = rotation_matrix_expanded(angle_deg, w, h)
    rotated = cv2.warpAffine(
        image, M, (new_w, new_h),
        flags=cv2.INTER_LINEAR,
        borderMode=cv2.BORDER_CONSTANT,
        borderValue=(0, 0, 0),
    )
    return rotated, AffineTransform.from_matrix(M)


def warp_affine(image: np.ndarray, transform: AffineTransform, width: int, height: int) -> np.ndarray:
    """Warp image into a width x height canvas; transform maps source -> destination."""
    return cv2.warpAffine(
        image, transform.matrix_2x3, (int(width), int(height)),
        flags=cv2.INTER_LINEAR,
        borderMode=cv2.BORDER_CONSTANT,
        borderValue=(0, 0, 0),
    )


def crop(image: np.ndarray, rect: RectInt) -> np.ndarray:
    h, w = image.shape[:2]
    r = rect.clamp(w, h)
    return image[r.y:r.y2, r.x:r.x2].copy()


def crop_black_borders(image: np.ndarray, threshold: int = None) -> Tuple[np.ndarray, RectInt]:
    """
    Trim near-black borders left behind by rotation.

    Returns the original image and its full rect when nothing exceeds the
    threshold.
    """
    threshold = settings.black_border_threshold if threshold is None else threshold
    gray = to_gray(image) if image.ndim == 3 else image
    ys, xs = np.nonzero(gray > threshold)
    h, w = gray.shape[:2]
    if len(xs) == 0:
        return image, RectInt(0, 0, w, h)
    rect = RectInt.from_xyxy(xs.min(), ys.min(), xs.max() + 1, ys.max() + 1)
    logger.debug(f"Black border crop: {rect.to_dict()} of {w}x{h}")
    return crop(image, rect), rect

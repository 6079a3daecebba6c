"""
Through-hole via detection.

Two detectors run on each side:
- Standard: grey threshold -> close/open -> distance-transform peaks ->
  radial symmetry + contrast -> metallic (low saturation) check -> dedupe
  -> sub-pixel circle refinement
- Bright core: pixels whose whole 5x5 neighbourhood is near white, split
  into components and confirmed with an 8-ray roundness test

Results from both are merged by proximity. Detection parameters come in
three named profiles, from strict to loose, so callers can escalate only
as far as they need to.
"""

import logging
import math
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Dict, List, Optional, Sequence, Tuple

import cv2
import numpy as np

from boardalign.config import settings
from boardalign.services.geometry import Point2D
from boardalign.services.raster import to_gray, to_hsv
from boardalign.services.results import require_image

logger = logging.getLogger(__name__)

RADIAL_RAYS = 32
BRIGHT_CORE_RAYS = 8
BRIGHT_CORE_CONFIDENCE = 0.95


class Side(str, Enum):
    """Board face a via was seen on."""
    FRONT = "front"
    BACK = "back"


class ViaMethod(str, Enum):
    """How a via was found."""
    CONTOUR = "contour"          # Distance-transform peak + radial check
    BRIGHT_CORE = "bright_core"  # Saturated-white core


@dataclass
class Via:
    """A detected through-hole via."""
    id: str
    center: Point2D
    radius: float
    side: Side
    circularity: float = 0.0
    confidence: float = 0.0
    method: ViaMethod = ViaMethod.CONTOUR
    matched_via_id: Optional[str] = None
    both_sides_confirmed: bool = False

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "center": {"x": round(self.center.x, 3), "y": round(self.center.y, 3)},
            "radius": round(self.radius, 3),
            "side": self.side.value,
            "circularity": round(self.circularity, 4),
            "confidence": round(self.confidence, 4),
            "method": self.method.value,
            "matched_via_id": self.matched_via_id,
            "both_sides_confirmed": self.both_sides_confirmed,
        }


# ============================================================
# PROFILES
# ============================================================

class ViaProfile(str, Enum):
    """Named detection profiles, ordered from strict to loose."""
    STRICT = "strict"
    RELAXED = "relaxed"
    LOOSE = "loose"


@dataclass(frozen=True)
class ViaParams:
    """Via detection thresholds."""
    sat_max: float = 100.0        # Metallic pads have low saturation
    val_min: float = 180.0        # Grey threshold for the bright mask
    circularity_min: float = 0.65
    contrast_min: float = 1.2     # Inner mean / annulus mean
    min_diam_in: float = field(default_factory=lambda: settings.via_min_diameter_in)
    max_diam_in: float = field(default_factory=lambda: settings.via_max_diameter_in)
    bright_core: bool = True      # Also run the bright-core detector
    dpi: float = 0.0

    @property
    def min_radius_px(self) -> int:
        dpi = self.dpi or settings.default_dpi
        return max(3, int(self.min_diam_in * dpi / 2))

    @property
    def max_radius_px(self) -> int:
        dpi = self.dpi or settings.default_dpi
        max_r = int(self.max_diam_in * dpi / 2)
        return max_r if max_r >= self.min_radius_px else self.min_radius_px * 2

    def with_dpi(self, dpi: float) -> "ViaParams":
        return replace(self, dpi=float(dpi))


PROFILE_PARAMS: Dict[ViaProfile, ViaParams] = {
    ViaProfile.STRICT: ViaParams(),
    ViaProfile.RELAXED: ViaParams(sat_max=115.0, val_min=150.0, circularity_min=0.5, contrast_min=1.15),
    ViaProfile.LOOSE: ViaParams(sat_max=130.0, val_min=120.0, circularity_min=0.40, contrast_min=1.1),
}


def profile_sequence(names: Sequence[str] = None) -> List[Tuple[ViaProfile, ViaParams]]:
    """Configured profiles in escalation order."""
    names = names or settings.via_profiles
    return [(ViaProfile(name), PROFILE_PARAMS[ViaProfile(name)]) for name in names]


@dataclass
class ViaDetectionResult:
    """Vias found on one side."""
    side: Side
    vias: List[Via] = field(default_factory=list)
    dpi: float = 0.0
    profile: Optional[ViaProfile] = None

    def centers(self) -> List[Point2D]:
        return [v.center for v in self.vias]


# ============================================================
# STANDARD DETECTOR
# ============================================================

def _ray_offsets(n: int) -> Tuple[np.ndarray, np.ndarray]:
    angles = np.arange(n) * 2.0 * math.pi / n
    return np.cos(angles), np.sin(angles)


def ray_lengths(mask: np.ndarray, cx: float, cy: float, max_walk: float, n: int = RADIAL_RAYS) -> np.ndarray:
    """
    Distance from (cx, cy) to the first off-mask pixel along n evenly spaced rays.

    Rays that never leave the mask report max_walk.
    """
    rows, cols = mask.shape[:2]
    cos_a, sin_a = _ray_offsets(n)
    steps = np.arange(1.0, max(1.0, max_walk) + 1.0)
    px = np.floor(cx + np.outer(cos_a, steps) + 0.5).astype(np.int64)
    py = np.floor(cy + np.outer(sin_a, steps) + 0.5).astype(np.int64)
    inside = (px >= 0) & (px < cols) & (py >= 0) & (py < rows)
    on = np.zeros_like(inside)
    on[inside] = mask[py[inside], px[inside]] > 0
    off = ~on
    first = np.where(off.any(axis=1), off.argmax(axis=1), -1)
    return np.where(first >= 0, steps[np.maximum(first, 0)], max_walk)


def radial_symmetry(mask: np.ndarray, center: Point2D, radius: float) -> float:
    """
    Roundness score in [0, 1].

    Rays longer than 1.5x the median (trace connections) are ignored;
    the score is the inlier fraction times one minus the coefficient of
    variation of the inlier lengths.
    """
    dists = ray_lengths(mask, center.x, center.y, radius * 3.0)
    median = float(np.sort(dists)[RADIAL_RAYS // 2])
    if median < 2.0:
        return 0.0
    inliers = dists[dists <= median * 1.5]
    if len(inliers) < 4:
        return 0.0
    mean = float(inliers.mean())
    uniformity = max(0.0, 1.0 - float(inliers.std()) / mean)
    return (len(inliers) / RADIAL_RAYS) * uniformity


def contrast_ratio(gray: np.ndarray, center: Point2D, radius: float) -> float:
    """Mean grey inside the via over the mean of the 1.5r-2.5r annulus."""
    rows, cols = gray.shape[:2]
    outer = int(math.ceil(radius * 2.5))
    x1, x2 = max(0, int(center.x) - outer), min(cols, int(center.x) + outer + 1)
    y1, y2 = max(0, int(center.y) - outer), min(rows, int(center.y) + outer + 1)
    patch = gray[y1:y2, x1:x2].astype(np.float64)
    yy, xx = np.mgrid[y1:y2, x1:x2]
    d = np.hypot(xx - center.x, yy - center.y)
    inner = patch[d <= radius]
    ring = patch[(d >= radius * 1.5) & (d <= radius * 2.5)]
    if inner.size == 0 or ring.size == 0:
        return 0.0
    return float(inner.mean()) / max(float(ring.mean()), 1.0)


def mean_saturation(hsv: np.ndarray, center: Point2D, radius: float) -> float:
    rows, cols = hsv.shape[:2]
    r = max(1, int(radius + 0.5))
    cx, cy = int(center.x + 0.5), int(center.y + 0.5)
    x1, x2 = max(0, cx - r), min(cols, cx + r + 1)
    y1, y2 = max(0, cy - r), min(rows, cy + r + 1)
    if x2 <= x1 or y2 <= y1:
        return 255.0
    yy, xx = np.mgrid[y1:y2, x1:x2]
    inside = (xx - cx) ** 2 + (yy - cy) ** 2 <= r * r
    return float(hsv[y1:y2, x1:x2, 1][inside].mean())


def deduplicate_vias(vias: List[Via], min_distance: float) -> List[Via]:
    """Keep the largest-radius via among those closer than min_distance."""
    kept: List[Via] = []
    for v in sorted(vias, key=lambda v: v.radius, reverse=True):
        if all(v.center.distance_to(k.center) >= min_distance for k in kept):
            kept.append(v)
    return kept


def refine_circle(mask: np.ndarray, via: Via) -> Via:
    """
    Sub-pixel centre and outer radius from the mask boundary.

    Boundary points along the inlier rays are fitted with an algebraic
    least-squares circle. The via is returned unchanged when too few rays
    agree or the fit is implausible.
    """
    dists = ray_lengths(mask, via.center.x, via.center.y, via.radius * 3.0)
    median = float(np.median(dists))
    keep = dists <= median * 1.5
    if keep.sum() < 8:
        return via
    cos_a, sin_a = _ray_offsets(RADIAL_RAYS)
    edge = dists[keep] - 0.5
    xs = via.center.x + cos_a[keep] * edge
    ys = via.center.y + sin_a[keep] * edge
    A = np.column_stack([xs, ys, np.ones_like(xs)])
    b = xs ** 2 + ys ** 2
    sol, _, _, _ = np.linalg.lstsq(A, b, rcond=None)
    cx, cy = sol[0] / 2.0, sol[1] / 2.0
    r2 = sol[2] + cx ** 2 + cy ** 2
    if r2 <= 0 or math.hypot(cx - via.center.x, cy - via.center.y) > via.radius:
        return via
    return replace(via, center=Point2D(float(cx), float(cy)), radius=float(math.sqrt(r2)))


class ViaDetector:
    """Distance-transform via detector."""

    def __init__(self, params: ViaParams = None, log: logging.Logger = None):
        self.params = params or PROFILE_PARAMS[ViaProfile.STRICT]
        self.log = log or logger

    def bright_mask(self, gray: np.ndarray) -> np.ndarray:
        blurred = cv2.GaussianBlur(gray, (5, 5), 0)
        _, mask = cv2.threshold(blurred, self.params.val_min, 255, cv2.THRESH_BINARY)
        close_k = cv2.getStructuringElement(cv2.MORPH_ELLIPSE, (5, 5))
        open_k = cv2.getStructuringElement(cv2.MORPH_ELLIPSE, (3, 3))
        mask = cv2.morphologyEx(mask, cv2.MORPH_CLOSE, close_k)
        return cv2.morphologyEx(mask, cv2.MORPH_OPEN, open_k)

    def find_peaks(self, mask: np.ndarray, side: Side) -> List[Via]:
        """Local maxima of the distance transform within the radius range."""
        min_r = self.params.min_radius_px
        max_r = self.params.max_radius_px
        dist = cv2.distanceTransform(mask, cv2.DIST_L2, cv2.DIST_MASK_5)
        k = 2 * min_r + 1
        kernel = cv2.getStructuringElement(cv2.MORPH_ELLIPSE, (k, k))
        dilated = cv2.dilate(dist, kernel)

        peaks = (dist >= min_r) & (dist <= max_r) & (dist >= dilated)
        peaks[:max_r, :] = False
        peaks[-max_r:, :] = False
        peaks[:, :max_r] = False
        peaks[:, -max_r:] = False
        ys, xs = np.nonzero(peaks)
        return [
            Via(id="", center=Point2D(float(x), float(y)), radius=float(dist[y, x]), side=side)
            for y, x in zip(ys, xs)
        ]

    def detect(self, image: np.ndarray, side: Side = Side.FRONT) -> ViaDetectionResult:
        """
        Detect vias in a BGR image.

        Raises:
            BoardAlignError: If the image is None or empty
        """
        require_image(image)
        p = self.params
        gray = to_gray(image)
        hsv = to_hsv(image)
        mask = self.bright_mask(gray)

        candidates = self.find_peaks(mask, side)
        verified = []
        for v in candidates:
            symmetry = radial_symmetry(mask, v.center, v.radius)
            if symmetry < p.circularity_min:
                continue
            contrast = contrast_ratio(gray, v.center, v.radius)
            if contrast < p.contrast_min:
                continue
            if mean_saturation(hsv, v.center, v.radius) > p.sat_max:
                continue
            verified.append(replace(
                v,
                circularity=symmetry,
                confidence=symmetry * min(contrast / 2.0, 1.0),
            ))

        vias = [refine_circle(mask, v) for v in deduplicate_vias(verified, p.min_radius_px)]
        vias = [replace(v, id=f"via-{side.value[0]}-{i:03d}") for i, v in enumerate(vias, 1)]
        self.log.debug(
            f"Via detector ({side.value}): {len(candidates)} peaks -> "
            f"{len(verified)} verified -> {len(vias)} vias"
        )
        return ViaDetectionResult(side=side, vias=vias, dpi=p.dpi)


# ============================================================
# BRIGHT-CORE DETECTOR
# ============================================================

class BrightCoreDetector:
    """Finds vias with a saturated white core (tinned pads under strong light)."""

    def __init__(self, params: ViaParams = None, log: logging.Logger = None):
        self.params = params or PROFILE_PARAMS[ViaProfile.STRICT]
        self.log = log or logger

    def detect(self, image: np.ndarray, side: Side = Side.FRONT) -> ViaDetectionResult:
        """
        Detect bright-core vias in a BGR image.

        Raises:
            BoardAlignError: If the image is None or empty
        """
        require_image(image)
        min_r = self.params.min_radius_px
        max_r = self.params.max_radius_px
        gray = to_gray(image)

        _, core = cv2.threshold(gray, settings.bright_core_threshold - 1, 255, cv2.THRESH_BINARY)
        core = cv2.erode(core, cv2.getStructuringElement(cv2.MORPH_RECT, (5, 5)))
        n, _, stats, centroids = cv2.connectedComponentsWithStats(core, connectivity=4)

        edge_mask = (gray >= settings.bright_core_edge_threshold).astype(np.uint8)
        vias = []
        rejected = 0
        for label in range(1, n):
            area = stats[label, cv2.CC_STAT_AREA]
            # Core radius from area, plus the 2 px eaten by erosion
            radius = math.sqrt(area / math.pi) + 2
            if not (min_r <= int(radius) <= max_r):
                continue
            cx, cy = float(centroids[label][0]), float(centroids[label][1])

            rays = ray_lengths(edge_mask, cx, cy, max_r * 2.0, n=BRIGHT_CORE_RAYS)
            valid = rays[rays < max_r * 2.0]
            if len(valid) < 6:
                rejected += 1
                continue
            median = float(np.sort(valid)[len(valid) // 2])
            circular = int(np.sum(np.abs(valid - median) / median <= 0.30))
            if circular < 6:
                rejected += 1
                continue
            if not (min_r <= int(median) <= max_r):
                continue
            vias.append(Via(
                id=f"bc-{side.value[0]}-{len(vias) + 1:03d}",
                center=Point2D(cx, cy),
                radius=median,
                side=side,
                circularity=circular / BRIGHT_CORE_RAYS,
                confidence=BRIGHT_CORE_CONFIDENCE,
                method=ViaMethod.BRIGHT_CORE,
            ))

        self.log.debug(f"Bright core ({side.value}): {len(vias)} vias, {rejected} rejected")
        return ViaDetectionResult(side=side, vias=vias, dpi=self.params.dpi)


# ============================================================
# FILTERS
# ============================================================

def neighbor_counts(points: np.ndarray, radius: float, chunk: int = 512) -> np.ndarray:
    """Number of other points within radius of each point."""
    points = np.asarray(points, dtype=np.float64).reshape(-1, 2)
    counts = np.zeros(len(points), dtype=np.int64)
    r2 = radius * radius
    for start in range(0, len(points), chunk):
        block = points[start:start + chunk]
        d2 = ((block[:, None, :] - points[None, :, :]) ** 2).sum(axis=2)
        counts[start:start + chunk] = (d2 <= r2).sum(axis=1) - 1
    return counts


def reject_dense_vias(vias: List[Via], radius: float, max_neighbors: int = None) -> List[Via]:
    """
    Drop vias with more than max_neighbors other vias within radius.

    Header-pin rows and other regular clusters create symmetric, ambiguous
    matches; isolated vias do not.
    """
    max_neighbors = settings.dense_max_neighbors if max_neighbors is None else max_neighbors
    if not vias:
        return []
    counts = neighbor_counts([[v.center.x, v.center.y] for v in vias], radius)
    return [v for v, c in zip(vias, counts) if c <= max_neighbors]


def merge_by_proximity(*groups: Sequence[Via], distance: float) -> List[Via]:
    """
    Merge via lists from several detectors, dropping near-duplicates.

    Higher-confidence vias win; ties keep the earlier group's via.
    """
    ordered = sorted(
        (v for group in groups for v in group),
        key=lambda v: v.confidence,
        reverse=True,
    )
    cell = max(distance, 1e-6)
    grid: Dict[Tuple[int, int], List[Via]] = {}
    kept: List[Via] = []
    for v in ordered:
        gx, gy = int(v.center.x // cell), int(v.center.y // cell)
        near = (
            k
            for dx in (-1, 0, 1)
            for dy in (-1, 0, 1)
            for k in grid.get((gx + dx, gy + dy), ())
        )
        if any(v.center.distance_to(k.center) < distance for k in near):
            continue
        grid.setdefault((gx, gy), []).append(v)
        kept.append(v)
    kept.sort(key=lambda v: (v.center.y, v.center.x))
    return kept


def merge_distance(dpi: float) -> float:
    dpi = dpi or settings.default_dpi
    return max(settings.merge_distance_in * dpi, settings.merge_distance_min_px)


def dense_radius(dpi: float) -> float:
    dpi = dpi or settings.default_dpi
    return max(settings.dense_radius_in * dpi, settings.dense_radius_min_px)


# ============================================================
# CONCURRENT DETECTION
# ============================================================

def detect_both_sides(
    front: np.ndarray,
    back: np.ndarray,
    params: ViaParams,
    profile: ViaProfile = None,
    log: logging.Logger = None,
) -> Tuple[ViaDetectionResult, ViaDetectionResult]:
    """
    Run standard and bright-core detection on both sides concurrently.

    The four detections are independent tasks, joined before each side's
    results are merged by proximity.
    """
    log = log or logger
    standard = ViaDetector(params, log=log)
    bright = BrightCoreDetector(params, log=log)

    with ThreadPoolExecutor(max_workers=4) as pool:
        jobs = {
            (Side.FRONT, "standard"): pool.submit(standard.detect, front, Side.FRONT),
            (Side.BACK, "standard"): pool.submit(standard.detect, back, Side.BACK),
        }
        if params.bright_core:
            jobs[(Side.FRONT, "bright")] = pool.submit(bright.detect, front, Side.FRONT)
            jobs[(Side.BACK, "bright")] = pool.submit(bright.detect, back, Side.BACK)
        found = {key: job.result() for key, job in jobs.items()}

    distance = merge_distance(params.dpi)
    results = []
    for side in (Side.FRONT, Side.BACK):
        groups = [found[(side, "standard")].vias]
        if (side, "bright") in found:
            groups.append(found[(side, "bright")].vias)
        merged = merge_by_proximity(*groups, distance=distance)
        results.append(ViaDetectionResult(side=side, vias=merged, dpi=params.dpi, profile=profile))
        log.debug(f"Vias ({side.value}): {' + '.join(str(len(g)) for g in groups)} -> {len(merged)} merged")
    return results[0], results[1]

"""
Front/back registration from vias and contacts.

Via alignment:
1. Map the back vias through the starting (coarse) transform
2. Corner-voting correspondence search, optionally with contact pairs
   as an extra virtual corner
3. RANSAC affine fit from back to front coordinates
4. Guided rematch of every via under the fitted transform, then a final
   least-squares refit over all rematched pairs

Contact alignment pairs the two contact rows index by index and runs a
tighter RANSAC directly on them. Each contact contributes its centre and
the midpoint of its inner end, so the point set spans two parallel lines
instead of one.
"""

import logging
from dataclasses import dataclass, field, replace
from typing import List, Sequence, Tuple

import numpy as np

from boardalign.config import settings
from boardalign.services.contact_types import DetectionResult
from boardalign.services.geometry import AffineTransform, Point2D, points_to_array
from boardalign.services.ransac import (
    AffineEstimator,
    RansacResult,
    alignment_error,
    fit_affine_least_squares,
)
from boardalign.services.results import Complete, Outcome, Partial
from boardalign.services.via_matcher import CornerVote, ViaCorrespondenceMatcher, greedy_assign
from boardalign.services.vias import Via

logger = logging.getLogger(__name__)

MIN_VIAS_PER_SIDE = 3


# ============================================================
# CROSS-SIDE MATCHING
# ============================================================

@dataclass
class ViaMatchResult:
    """One-to-one front/back via pairs under a known transform."""
    front_vias: List[Via] = field(default_factory=list)
    back_vias: List[Via] = field(default_factory=list)
    pairs: List[Tuple[int, int]] = field(default_factory=list)   # (front index, back index)
    avg_error: float = 0.0
    max_error: float = 0.0

    @property
    def matched(self) -> int:
        return len(self.pairs)

    @property
    def unmatched_front(self) -> int:
        return len(self.front_vias) - len(self.pairs)

    @property
    def unmatched_back(self) -> int:
        return len(self.back_vias) - len(self.pairs)


def match_vias_across_sides(
    front: Sequence[Via],
    back: Sequence[Via],
    tolerance: float,
    transform: AffineTransform = None,
) -> ViaMatchResult:
    """
    Pair front and back vias that coincide under a transform.

    Back vias are mapped into the front frame, every pair closer than
    tolerance becomes a candidate, and candidates are assigned greedily
    nearest first. Returned vias are copies; matched ones carry the id of
    their partner and are flagged as confirmed on both sides.
    """
    transform = transform or AffineTransform.identity()
    front_out = list(front)
    back_out = list(back)
    result = ViaMatchResult(front_vias=front_out, back_vias=back_out)
    if not front_out or not back_out:
        return result

    front_arr = points_to_array(v.center for v in front_out)
    back_arr = transform.apply_array(points_to_array(v.center for v in back_out))
    dist = np.linalg.norm(front_arr[:, None, :] - back_arr[None, :, :], axis=2)
    fi, bi = np.nonzero(dist <= tolerance)
    candidates = [(float(dist[f, b]), int(f), int(b)) for f, b in zip(fi, bi)]
    result.pairs = greedy_assign(candidates)

    errors = []
    for f, b in result.pairs:
        errors.append(float(dist[f, b]))
        front_out[f] = replace(front_out[f], matched_via_id=back_out[b].id, both_sides_confirmed=True)
        back_out[b] = replace(back_out[b], matched_via_id=front[f].id, both_sides_confirmed=True)
    if errors:
        result.avg_error = float(np.mean(errors))
        result.max_error = float(np.max(errors))
    return result


# ============================================================
# VIA ALIGNMENT
# ============================================================

@dataclass
class ViaAlignmentResult:
    """Back -> front registration from via correspondences."""
    transform: AffineTransform
    matched_vias: int = 0
    total_front: int = 0
    total_back: int = 0
    inliers: int = 0
    avg_error: float = 0.0
    rms_error: float = 0.0
    front_vias: List[Via] = field(default_factory=list)
    back_vias: List[Via] = field(default_factory=list)
    used_front_pts: List[Point2D] = field(default_factory=list)
    used_back_pts: List[Point2D] = field(default_factory=list)
    corners: List[CornerVote] = field(default_factory=list)
    ransac: RansacResult = None

    def to_dict(self) -> dict:
        return {
            "transform": self.transform.matrix_2x3_list,
            "params": self.transform.to_params_dict(),
            "matched_vias": self.matched_vias,
            "total_front": self.total_front,
            "total_back": self.total_back,
            "inliers": self.inliers,
            "avg_error": round(self.avg_error, 4),
            "rms_error": round(self.rms_error, 4),
            "corners": [c.to_dict() for c in self.corners],
        }


def _residuals(transform: AffineTransform, src: np.ndarray, dst: np.ndarray) -> np.ndarray:
    if len(src) == 0:
        return np.zeros(0)
    return np.linalg.norm(transform.apply_array(src) - dst, axis=1)


def align_with_vias(
    front_vias: Sequence[Via],
    back_vias: Sequence[Via],
    dpi: float = None,
    initial: AffineTransform = None,
    contact_pairs: Sequence[Tuple[Point2D, Point2D]] = (),
    estimator: AffineEstimator = None,
    matcher: ViaCorrespondenceMatcher = None,
    log: logging.Logger = None,
) -> Outcome[ViaAlignmentResult]:
    """
    Register the back side onto the front side using vias.

    Args:
        front_vias: Vias detected on the front image
        back_vias: Vias detected on the back image, in back coordinates
        dpi: Scan resolution (scales the matcher's offset limit)
        initial: Starting back -> front estimate, usually the coarse
            contact alignment
        contact_pairs: (front, back) contact points in their own image
            coordinates, used as a virtual fifth corner
        estimator: RANSAC estimator (a default one when omitted)
        matcher: Correspondence matcher (a default one when omitted)

    Returns:
        Complete(result) when RANSAC succeeds; Partial(result, reason)
        carrying the starting transform otherwise
    """
    log = log or logger
    initial = initial or AffineTransform.identity()
    estimator = estimator or AffineEstimator(log=log)
    matcher = matcher or ViaCorrespondenceMatcher(dpi=dpi, log=log)

    result = ViaAlignmentResult(
        transform=initial,
        total_front=len(front_vias),
        total_back=len(back_vias),
        front_vias=list(front_vias),
        back_vias=list(back_vias),
    )
    if len(front_vias) < MIN_VIAS_PER_SIDE or len(back_vias) < MIN_VIAS_PER_SIDE:
        return Partial(
            result,
            f"not enough vias: front={len(front_vias)}, back={len(back_vias)} "
            f"(need >= {MIN_VIAS_PER_SIDE} each)",
        )

    front_arr = points_to_array(v.center for v in front_vias)
    back_arr = points_to_array(v.center for v in back_vias)
    mapped_back = initial.apply_points([v.center for v in back_vias])

    correspondences = matcher.match([v.center for v in front_vias], mapped_back, contact_pairs)
    result.corners = correspondences.corners
    src, dst = correspondences.point_arrays(front_arr, back_arr)
    if len(src) < 3:
        return Partial(result, f"only {len(src)} correspondences found (need >= 3)")

    outcome = estimator.estimate(src, dst)
    result.ransac = outcome.value
    if not outcome.ok:
        return Partial(result, outcome.reason)
    transform = outcome.value.transform

    # Guided rematch: every via, not just the corner neighbourhoods
    rematch = match_vias_across_sides(front_vias, back_vias, estimator.threshold, transform)
    if rematch.matched >= 3:
        f_idx = [f for f, _ in rematch.pairs]
        b_idx = [b for _, b in rematch.pairs]
        # Contact pairs follow the via pairs in src/dst
        pair_src = np.vstack([back_arr[b_idx], src[correspondences.via_pairs:]])
        pair_dst = np.vstack([front_arr[f_idx], dst[correspondences.via_pairs:]])
        transform = fit_affine_least_squares(pair_src, pair_dst)
        rematch = match_vias_across_sides(front_vias, back_vias, estimator.threshold, transform)

    used_src = back_arr[[b for _, b in rematch.pairs]] if rematch.pairs else np.zeros((0, 2))
    used_dst = front_arr[[f for f, _ in rematch.pairs]] if rematch.pairs else np.zeros((0, 2))
    residuals = _residuals(transform, used_src, used_dst)

    result.transform = transform
    result.matched_vias = rematch.matched
    result.inliers = rematch.matched
    result.front_vias = rematch.front_vias
    result.back_vias = rematch.back_vias
    result.used_front_pts = [Point2D(float(x), float(y)) for x, y in used_dst]
    result.used_back_pts = [Point2D(float(x), float(y)) for x, y in used_src]
    if len(residuals):
        result.avg_error = float(residuals.mean())
        result.rms_error = float(np.sqrt(np.mean(residuals ** 2)))

    log.info(
        f"Via alignment: {correspondences.via_pairs} corner pairs -> "
        f"{len(outcome.value.inliers)} RANSAC inliers -> {result.matched_vias} rematched, "
        f"avg={result.avg_error:.2f} px, rms={result.rms_error:.2f} px"
    )
    return Complete(result)


# ============================================================
# CONTACT ALIGNMENT
# ============================================================

@dataclass
class ContactAlignmentResult:
    """Back -> front registration from index-paired contacts."""
    transform: AffineTransform
    pairs: int = 0
    inliers: int = 0
    avg_error: float = 0.0

    def to_dict(self) -> dict:
        return {
            "transform": self.transform.matrix_2x3_list,
            "params": self.transform.to_params_dict(),
            "pairs": self.pairs,
            "inliers": self.inliers,
            "avg_error": round(self.avg_error, 4),
        }


def _row_points(contacts: Sequence, horizontal: bool) -> np.ndarray:
    """Contact centres followed by the midpoints of their inner (board-side) ends."""
    centers = points_to_array(c.center for c in contacts)
    if horizontal:
        ends = [[c.center.x, float(c.bounds.y2)] for c in contacts]
    else:
        ends = [[float(c.bounds.x2), c.center.y] for c in contacts]
    return np.vstack([centers, np.array(ends, dtype=np.float64).reshape(-1, 2)])


def align_by_contacts(
    front_result: DetectionResult,
    back_result: DetectionResult,
    min_contacts: int = None,
    estimator: AffineEstimator = None,
    log: logging.Logger = None,
) -> Outcome[ContactAlignmentResult]:
    """
    Register two contact rows directly.

    Both rows are ordered along the connector and paired by index, so the
    two detections must describe the same physical contacts.

    Returns:
        Complete(result), or Partial(result, reason) with an identity
        transform when either side has too few contacts or RANSAC fails
    """
    log = log or logger
    min_contacts = min_contacts or settings.contact_min_for_alignment
    estimator = estimator or AffineEstimator(
        iterations=settings.contact_ransac_iterations,
        threshold=settings.contact_ransac_threshold_px,
        log=log,
    )
    front = front_result.contacts
    back = back_result.contacts
    result = ContactAlignmentResult(transform=AffineTransform.identity())
    if len(front) < min_contacts or len(back) < min_contacts:
        return Partial(
            result,
            f"not enough contacts: front={len(front)}, back={len(back)} (need >= {min_contacts} each)",
        )

    front_hz = front_result.horizontal
    back_hz = back_result.horizontal
    front_sorted = sorted(front, key=lambda c: c.along(front_hz))
    back_sorted = sorted(back, key=lambda c: c.along(back_hz))
    n = min(len(front_sorted), len(back_sorted))
    src = _row_points(back_sorted[:n], back_hz)
    dst = _row_points(front_sorted[:n], front_hz)
    result.pairs = n

    outcome = estimator.estimate(src, dst)
    if not outcome.ok:
        return Partial(result, outcome.reason)

    result.transform = outcome.value.transform
    result.inliers = len(outcome.value.inliers)
    result.avg_error = alignment_error(src, dst, result.transform)
    log.info(
        f"Contact alignment: {result.inliers}/{n} inliers, avg error {result.avg_error:.2f} px"
    )
    return Complete(result)

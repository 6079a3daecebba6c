"""
Affine estimation from noisy point correspondences (RANSAC).

Each iteration samples three non-degenerate pairs, solves the exact
affine mapping through them and counts the pairs that land within the
inlier threshold. The best candidate's inliers are re-fit by least
squares.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Sequence

import cv2
import numpy as np

from boardalign.config import settings
from boardalign.services.geometry import AffineTransform, Point2D, points_to_array
from boardalign.services.results import BoardAlignError, Complete, Outcome, Partial

logger = logging.getLogger(__name__)

# Twice the triangle area below which a sample is treated as collinear
MIN_SAMPLE_AREA = 1.0


def _area2(p: np.ndarray) -> float:
    """Twice the signed area of the triangle p[0], p[1], p[2]."""
    u = p[1] - p[0]
    v = p[2] - p[0]
    return float(u[0] * v[1] - u[1] * v[0])


@dataclass
class RansacResult:
    """Fitted transform plus the inlier set that supports it."""
    transform: AffineTransform
    inliers: List[int] = field(default_factory=list)
    total: int = 0
    mean_error: float = 0.0       # Over inliers (px)
    rms_error: float = 0.0
    iterations: int = 0

    @property
    def inlier_ratio(self) -> float:
        return len(self.inliers) / self.total if self.total else 0.0

    def to_dict(self) -> dict:
        return {
            "transform": self.transform.to_params_dict(),
            "inliers": len(self.inliers),
            "total": self.total,
            "inlier_ratio": round(self.inlier_ratio, 4),
            "mean_error": round(self.mean_error, 4),
            "rms_error": round(self.rms_error, 4),
            "iterations": self.iterations,
        }


def _as_array(points) -> np.ndarray:
    if len(points) and isinstance(points[0], Point2D):
        return points_to_array(points)
    return np.asarray(points, dtype=np.float64).reshape(-1, 2)


def solve_affine_exact(src, dst) -> AffineTransform:
    """
    Exact affine mapping through three point pairs.

    Raises:
        BoardAlignError: If fewer than three pairs are given
    """
    src = _as_array(src)
    dst = _as_array(dst)
    if len(src) < 3 or len(dst) < 3:
        raise BoardAlignError("INVALID_POINTS", "Exact affine solve needs three point pairs")
    M = cv2.getAffineTransform(src[:3].astype(np.float32), dst[:3].astype(np.float32))
    return AffineTransform.from_matrix(M)


def fit_affine_least_squares(src, dst) -> AffineTransform:
    """
    Least-squares affine fit over all pairs.

    Raises:
        BoardAlignError: If fewer than three pairs are given
    """
    src = _as_array(src)
    dst = _as_array(dst)
    if len(src) < 3 or len(src) != len(dst):
        raise BoardAlignError(
            "INVALID_POINTS",
            "Least-squares affine fit needs at least three matching pairs",
            {"src": len(src), "dst": len(dst)},
        )
    A = np.hstack([src, np.ones((len(src), 1))])
    sol, _, _, _ = np.linalg.lstsq(A, dst, rcond=None)
    return AffineTransform.from_matrix(sol.T)


def alignment_error(src, dst, transform: AffineTransform) -> float:
    """Mean distance between transformed source points and their destinations."""
    src = _as_array(src)
    dst = _as_array(dst)
    if len(src) == 0:
        return 0.0
    return float(np.linalg.norm(transform.apply_array(src) - dst, axis=1).mean())


class AffineEstimator:
    """RANSAC affine estimator."""

    def __init__(
        self,
        iterations: int = None,
        threshold: float = None,
        min_inliers: int = None,
        seed: int = None,
        log: logging.Logger = None,
    ):
        self.iterations = iterations or settings.ransac_iterations
        self.threshold = threshold or settings.ransac_threshold_px
        self.min_inliers = min_inliers or settings.ransac_min_inliers
        self.seed = settings.ransac_seed if seed is None else seed
        self.log = log or logger

    def _count(self, transform: AffineTransform, src: np.ndarray, dst: np.ndarray) -> np.ndarray:
        dist = np.linalg.norm(transform.apply_array(src) - dst, axis=1)
        return dist < self.threshold

    def estimate(self, src: Sequence, dst: Sequence) -> Outcome[RansacResult]:
        """
        Fit an affine transform mapping src -> dst.

        Args:
            src: Source points (Point2D list or (N, 2) array)
            dst: Destination points, same length as src

        Returns:
            Complete(result) on success, Partial(result, reason) with an
            identity transform when no candidate reaches min_inliers

        Raises:
            BoardAlignError: If src and dst differ in length
        """
        src = _as_array(src)
        dst = _as_array(dst)
        n = len(src)
        if n != len(dst):
            raise BoardAlignError(
                "INVALID_POINTS",
                "Source and destination point counts differ",
                {"src": n, "dst": len(dst)},
            )
        if n < 3:
            return Partial(
                RansacResult(transform=AffineTransform.identity(), total=n),
                f"need at least 3 point pairs, got {n}",
            )

        rng = np.random.default_rng(self.seed)
        best_mask = None
        best_count = 0
        iterations = 0
        for iterations in range(1, self.iterations + 1):
            sample = rng.choice(n, size=3, replace=False)
            s = src[sample]
            d = dst[sample]
            if abs(_area2(s)) < MIN_SAMPLE_AREA or abs(_area2(d)) < MIN_SAMPLE_AREA:
                continue
            candidate = solve_affine_exact(s, d)
            mask = self._count(candidate, src, dst)
            count = int(mask.sum())
            if count > best_count:
                best_mask, best_count = mask, count
                if count == n:
                    break

        if best_mask is None or best_count < self.min_inliers:
            self.log.debug(f"RANSAC: best candidate has {best_count} inliers of {n}")
            return Partial(
                RansacResult(transform=AffineTransform.identity(), total=n, iterations=iterations),
                f"RANSAC found only {best_count} inliers (need {self.min_inliers})",
            )

        transform = fit_affine_least_squares(src[best_mask], dst[best_mask])
        refit_mask = self._count(transform, src, dst)
        if refit_mask.sum() >= best_count:
            best_mask = refit_mask
            transform = fit_affine_least_squares(src[best_mask], dst[best_mask])

        residuals = np.linalg.norm(transform.apply_array(src[best_mask]) - dst[best_mask], axis=1)
        result = RansacResult(
            transform=transform,
            inliers=[int(i) for i in np.flatnonzero(best_mask)],
            total=n,
            mean_error=float(residuals.mean()),
            rms_error=float(np.sqrt(np.mean(residuals ** 2))),
            iterations=iterations,
        )
        self.log.debug(
            f"RANSAC: {len(result.inliers)}/{n} inliers after {iterations} iterations, "
            f"rms={result.rms_error:.3f} px"
        )
        return Complete(result)

"""
Iterative (ICP-style) refinement of a back -> front registration.

Pass 1 fits y' = alpha * y + beta from mutual nearest-neighbour pairs
among the vias closest to the connector, where the scans agree best.
Each later pass maps every back via through the running transform,
re-matches against all front vias, drops outliers and regresses the
residuals:

    X residual vs Y  -> shear + X offset
    X residual vs X  -> rotation / X scale
    Y residual vs Y  -> Y scale + Y offset

The resulting correction is composed onto the running transform until
the mean error drops below the convergence threshold or the pass limit
is reached.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Sequence, Tuple

import numpy as np

from boardalign.config import settings
from boardalign.services.geometry import AffineTransform, Point2D, fit_line, points_to_array
from boardalign.services.results import Complete, Outcome, Partial
from boardalign.services.vias import Via

logger = logging.getLogger(__name__)


@dataclass
class RefineResult:
    """Refined transform plus the pairs that supported the last pass."""
    transform: AffineTransform
    passes: int = 0
    matched: int = 0
    avg_error: float = 0.0
    converged: bool = False
    used_front_pts: List[Point2D] = field(default_factory=list)
    used_back_pts: List[Point2D] = field(default_factory=list)
    pass_errors: List[float] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "transform": self.transform.matrix_2x3_list,
            "passes": self.passes,
            "matched": self.matched,
            "avg_error": round(self.avg_error, 4),
            "converged": self.converged,
            "pass_errors": [round(e, 4) for e in self.pass_errors],
        }


def mutual_nearest(front: np.ndarray, back: np.ndarray, tolerance: float) -> List[Tuple[int, int]]:
    """
    Index pairs that are each other's nearest neighbour within tolerance.

    Both directions must agree, which suppresses most false pairs in
    dense via fields.
    """
    if len(front) == 0 or len(back) == 0:
        return []
    dist = np.linalg.norm(front[:, None, :] - back[None, :, :], axis=2)
    f_to_b = dist.argmin(axis=1)
    b_to_f = dist.argmin(axis=0)
    pairs = []
    for fi, bi in enumerate(f_to_b):
        if b_to_f[bi] == fi and dist[fi, bi] <= tolerance:
            pairs.append((fi, int(bi)))
    return pairs


def outlier_cutoff(errors: np.ndarray, absolute: float) -> float:
    """Smaller of 2.5x the median error and an absolute cap, but at least 5 px."""
    cut = min(float(np.median(errors)) * 2.5, absolute)
    return max(cut, 5.0)


class IterativeRefiner:
    """Alternates matching and residual regression."""

    def __init__(
        self,
        dpi: float = None,
        max_passes: int = None,
        converge_px: float = None,
        connector_fraction: float = None,
        log: logging.Logger = None,
    ):
        cfg = settings
        self.dpi = dpi or cfg.default_dpi
        self.max_passes = max_passes or cfg.refine_max_passes
        self.converge_px = converge_px or cfg.refine_converge_px
        self.connector_fraction = connector_fraction or cfg.refine_connector_fraction
        self.tolerance = max(cfg.refine_tolerance_in * self.dpi, cfg.refine_tolerance_min_px)
        self.first_cap = 0.02 * self.dpi
        self.pass_cap = cfg.refine_outlier_cap_in * self.dpi
        self.log = log or logger

    # ============================================================
    # PASS 1: CONNECTOR Y REGRESSION
    # ============================================================

    def _connector_band(self, points: np.ndarray) -> np.ndarray:
        y_min, y_max = points[:, 1].min(), points[:, 1].max()
        cutoff = y_min + (y_max - y_min) * self.connector_fraction
        return np.flatnonzero(points[:, 1] <= cutoff)

    def initial_pass(self, front: np.ndarray, back: np.ndarray) -> Tuple[AffineTransform, int]:
        """
        Y-only correction from near-connector vias.

        Returns:
            Tuple of (correction, pairs used). The correction is identity
            when no pairs survive.
        """
        f_idx = self._connector_band(front)
        b_idx = self._connector_band(back)
        pairs = mutual_nearest(front[f_idx], back[b_idx], self.tolerance)
        if not pairs:
            return AffineTransform.identity(), 0

        f_pts = front[f_idx][[f for f, _ in pairs]]
        b_pts = back[b_idx][[b for _, b in pairs]]
        errors = np.linalg.norm(f_pts - b_pts, axis=1)
        keep = errors <= outlier_cutoff(errors, self.first_cap)
        f_pts, b_pts = f_pts[keep], b_pts[keep]
        if len(f_pts) == 0:
            return AffineTransform.identity(), 0

        alpha, beta = fit_line(b_pts[:, 1], f_pts[:, 1])
        if alpha == 0.0:
            # Degenerate (all pairs on one row): translate only
            alpha, beta = 1.0, float(np.mean(f_pts[:, 1] - b_pts[:, 1]))
        self.log.debug(
            f"Refine pass 1: y' = {alpha:.6f} * y + {beta:.2f} ({len(f_pts)} connector pairs)"
        )
        return AffineTransform(d=alpha, ty=beta), len(f_pts)

    # ============================================================
    # PASSES 2+: RESIDUAL REGRESSION
    # ============================================================

    @staticmethod
    def correction_from_residuals(front: np.ndarray, residuals: np.ndarray) -> AffineTransform:
        """Incremental correction regressed from residuals against front coordinates."""
        fx, fy = front[:, 0], front[:, 1]
        rx, ry = residuals[:, 0], residuals[:, 1]
        shear, shear_int = fit_line(fy, rx)
        rot, _ = fit_line(fx, rx)
        y_scale, y_scale_int = fit_line(fy, ry)
        return AffineTransform(a=1.0 + rot, b=shear, tx=shear_int, c=0.0, d=1.0 + y_scale, ty=y_scale_int)

    def refine(
        self,
        front_vias: Sequence[Via],
        back_vias: Sequence[Via],
        initial: AffineTransform = None,
    ) -> Outcome[RefineResult]:
        """
        Refine a back -> front transform.

        Args:
            front_vias: Front vias
            back_vias: Back vias, in back coordinates
            initial: Starting transform (identity for already coarse-aligned
                coordinates)

        Returns:
            Complete(result) when the error converged, otherwise
            Partial(result, reason) with the best transform reached
        """
        current = initial or AffineTransform.identity()
        result = RefineResult(transform=current)
        if len(front_vias) < 3 or len(back_vias) < 3:
            return Partial(result, f"not enough vias: front={len(front_vias)}, back={len(back_vias)}")

        front = points_to_array(v.center for v in front_vias)
        back = points_to_array(v.center for v in back_vias)

        correction, used = self.initial_pass(front, current.apply_array(back))
        if used == 0:
            return Partial(result, "no connector vias matched")
        current = correction.compose(current)
        result.passes = 1

        pairs_front = pairs_back = np.zeros((0, 2))
        for pass_no in range(2, self.max_passes + 1):
            mapped = current.apply_array(back)
            pairs = mutual_nearest(front, mapped, self.tolerance)
            f_pts = front[[f for f, _ in pairs]] if pairs else np.zeros((0, 2))
            b_pts = back[[b for _, b in pairs]] if pairs else np.zeros((0, 2))

            if len(pairs) > 3:
                errors = np.linalg.norm(f_pts - current.apply_array(b_pts), axis=1)
                keep = errors <= outlier_cutoff(errors, self.pass_cap)
                f_pts, b_pts = f_pts[keep], b_pts[keep]
            pairs_front, pairs_back = f_pts, b_pts
            result.passes = pass_no

            if len(f_pts) < 3:
                self.log.debug(f"Refine pass {pass_no}: only {len(f_pts)} pairs, stopping")
                break

            residuals = f_pts - current.apply_array(b_pts)
            current = self.correction_from_residuals(f_pts, residuals).compose(current)
            error = float(np.linalg.norm(f_pts - current.apply_array(b_pts), axis=1).mean())
            result.pass_errors.append(error)
            self.log.debug(f"Refine pass {pass_no}: {len(f_pts)} pairs, avg error {error:.2f} px")
            if error < self.converge_px:
                result.converged = True
                break

        result.transform = current
        result.matched = len(pairs_front)
        result.used_front_pts = [Point2D(float(x), float(y)) for x, y in pairs_front]
        result.used_back_pts = [Point2D(float(x), float(y)) for x, y in pairs_back]
        if len(pairs_front):
            result.avg_error = float(
                np.linalg.norm(pairs_front - current.apply_array(pairs_back), axis=1).mean()
            )

        self.log.info(
            f"Refinement: {result.passes} passes, {result.matched} pairs, "
            f"avg error {result.avg_error:.2f} px"
        )
        if not result.converged:
            return Partial(result, f"did not converge (avg error {result.avg_error:.2f} px)")
        return Complete(result)

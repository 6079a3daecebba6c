"""
Coarse back -> front alignment from the two contact rows.

Contacts are paired by X after removing the centroid offset. With enough
pairs the rotation comes from regressing the per-pair Y difference
against X; otherwise each side's fitted row angle is used, with
implausible angles zeroed. The result is

    T(front centroid) . R(angle) . T(-back centroid)
"""

import logging
import math
from dataclasses import dataclass
from typing import List, Tuple

import numpy as np

from boardalign.config import settings
from boardalign.services.contact_types import Contact, DetectionResult
from boardalign.services.geometry import AffineTransform, Point2D, fit_line
from boardalign.services.results import Complete, Outcome, Partial

logger = logging.getLogger(__name__)


@dataclass
class CoarseAlignment:
    """Contact-based starting transform."""
    transform: AffineTransform
    angle_deg: float = 0.0
    pairs: int = 0
    method: str = "none"           # "regression", "per_side" or "none"
    front_centroid: Point2D = None
    back_centroid: Point2D = None

    def to_dict(self) -> dict:
        return {
            "transform": self.transform.matrix_2x3_list,
            "angle_deg": round(self.angle_deg, 4),
            "pairs": self.pairs,
            "method": self.method,
        }


def centroid(contacts: List[Contact]) -> Point2D:
    xs = [c.center.x for c in contacts]
    ys = [c.center.y for c in contacts]
    return Point2D(float(np.mean(xs)), float(np.mean(ys)))


class CoarseAligner:
    """Derives a rotation + translation from matched contacts."""

    def __init__(
        self,
        min_contacts: int = None,
        min_pairs: int = None,
        max_angle_deg: float = None,
        side_max_angle_deg: float = None,
        log: logging.Logger = None,
    ):
        cfg = settings
        self.min_contacts = min_contacts or cfg.coarse_min_contacts
        self.min_pairs = min_pairs or cfg.coarse_min_pairs
        self.max_angle_deg = max_angle_deg or cfg.coarse_max_angle_deg
        self.side_max_angle_deg = side_max_angle_deg or cfg.coarse_side_max_angle_deg
        self.log = log or logger

    def match_by_x(
        self,
        front: List[Contact],
        back: List[Contact],
        x_offset: float,
        tolerance: float,
    ) -> List[Tuple[Contact, Contact]]:
        """Greedy front -> back pairing on X after the centroid offset."""
        front = sorted(front, key=lambda c: c.center.x)
        back = sorted(back, key=lambda c: c.center.x)
        back_x = np.array([c.center.x for c in back]) + x_offset
        used = np.zeros(len(back), dtype=bool)
        pairs = []
        for fc in front:
            dx = np.abs(back_x - fc.center.x)
            dx[used] = np.inf
            j = int(np.argmin(dx))
            if dx[j] <= tolerance:
                used[j] = True
                pairs.append((fc, back[j]))
        return pairs

    def _clamp(self, angle_deg: float, limit: float) -> float:
        return max(-limit, min(limit, angle_deg))

    def regression_angle(self, pairs: List[Tuple[Contact, Contact]], x_offset: float) -> float:
        """Rotation (degrees) from the slope of Y difference vs X."""
        xs = np.array([(f.center.x + b.center.x + x_offset) / 2.0 for f, b in pairs])
        dys = np.array([f.center.y - b.center.y for f, b in pairs])
        slope, _ = fit_line(xs, dys)
        angle = math.degrees(math.atan(slope))
        if abs(angle) > self.max_angle_deg:
            self.log.warning(f"Coarse align: angle {angle:.2f}° too large, clamping to ±{self.max_angle_deg}°")
            angle = self._clamp(angle, self.max_angle_deg)
        return angle

    def per_side_angle(self, front: DetectionResult, back: DetectionResult) -> float:
        """Rotation (degrees) from each side's fitted row angle."""
        front_angle = front.contact_angle
        back_angle = back.contact_angle
        if abs(front_angle) > self.side_max_angle_deg:
            self.log.warning(f"Coarse align: front angle {front_angle:.2f}° too large, using 0")
            front_angle = 0.0
        if abs(back_angle) > self.side_max_angle_deg:
            self.log.warning(f"Coarse align: back angle {back_angle:.2f}° too large, using 0")
            back_angle = 0.0
        return front_angle - back_angle

    def align(self, front: DetectionResult, back: DetectionResult) -> Outcome[CoarseAlignment]:
        """
        Coarse transform mapping back contacts onto front contacts.

        Returns:
            Complete(alignment), or Partial(alignment, reason) with an
            identity transform when either side has too few contacts
        """
        n_front, n_back = len(front.contacts), len(back.contacts)
        if n_front < self.min_contacts or n_back < self.min_contacts:
            return Partial(
                CoarseAlignment(transform=AffineTransform.identity()),
                f"not enough contacts: front={n_front}, back={n_back} (need >= {self.min_contacts} each)",
            )

        front_c = centroid(front.contacts)
        back_c = centroid(back.contacts)
        x_offset = front_c.x - back_c.x
        dpi = front.dpi or back.dpi or settings.default_dpi
        tolerance = max(settings.coarse_tolerance_in * dpi, settings.coarse_tolerance_min_px)
        pairs = self.match_by_x(front.contacts, back.contacts, x_offset, tolerance)

        if len(pairs) >= self.min_pairs:
            angle = self.regression_angle(pairs, x_offset)
            method = "regression"
        else:
            angle = self.per_side_angle(front, back)
            method = "per_side"

        transform = (
            AffineTransform.translation(front_c.x, front_c.y)
            .compose(AffineTransform.rotation(math.radians(angle)))
            .compose(AffineTransform.translation(-back_c.x, -back_c.y))
        )
        self.log.info(
            f"Coarse align: {len(pairs)} contact pairs (tolerance {tolerance:.1f} px), "
            f"rotation {angle:.3f}° via {method}"
        )
        return Complete(CoarseAlignment(
            transform=transform,
            angle_deg=angle,
            pairs=len(pairs),
            method=method,
            front_centroid=front_c,
            back_centroid=back_c,
        ))

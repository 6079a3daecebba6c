"""
Via correspondence search between front and back scans.

The two via sets are related by an unknown affine transform (rotation,
anisotropic scale, translation), so a single global offset does not fit
everywhere. Instead, each image corner votes locally:

1. Take the N vias nearest the corner on each side
2. Bin every front-minus-back delta into a 2D histogram
3. The peak is the bin with the largest 3x3 neighbourhood sum; ties go
   to the smaller offset, since periodic structures (header pins) make
   large spurious peaks while real residual offsets are small
4. Reject the peak if it has too few votes or an implausible magnitude
5. Greedily assign pairs whose delta lies near the peak, nearest first

Matches from all corners (plus optional contact pairs as a fifth,
"virtual" corner) feed the affine estimator.
"""

import logging
import math
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np

from boardalign.config import settings
from boardalign.services.geometry import Point2D, points_to_array

logger = logging.getLogger(__name__)

CORNERS = ("top_left", "top_right", "bottom_left", "bottom_right")


@dataclass
class CornerVote:
    """Outcome of one corner's offset vote."""
    corner: str
    offset: Optional[Tuple[float, float]] = None   # Accepted (dx, dy), front - back
    votes: int = 0
    pairs: int = 0
    rejected: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "corner": self.corner,
            "offset": [round(v, 2) for v in self.offset] if self.offset else None,
            "votes": self.votes,
            "pairs": self.pairs,
            "rejected": self.rejected,
        }


@dataclass
class CorrespondenceSet:
    """Matched index pairs plus per-corner diagnostics."""
    front_indices: List[int] = field(default_factory=list)
    back_indices: List[int] = field(default_factory=list)
    corners: List[CornerVote] = field(default_factory=list)
    extra_front: List[Point2D] = field(default_factory=list)   # Virtual-corner pairs
    extra_back: List[Point2D] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.front_indices) + len(self.extra_front)

    @property
    def via_pairs(self) -> int:
        return len(self.front_indices)

    def point_arrays(self, front: np.ndarray, back: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        """(back_points, front_points) arrays, ready for src -> dst fitting."""
        src = [back[self.back_indices]] if self.back_indices else []
        dst = [front[self.front_indices]] if self.front_indices else []
        if self.extra_back:
            src.append(points_to_array(self.extra_back))
            dst.append(points_to_array(self.extra_front))
        if not src:
            return np.zeros((0, 2)), np.zeros((0, 2))
        return np.vstack(src), np.vstack(dst)


def greedy_assign(
    candidates: List[Tuple[float, int, int]],
    used_front: set = None,
    used_back: set = None,
) -> List[Tuple[int, int]]:
    """One-to-one assignment of (cost, front, back) candidates, cheapest first."""
    used_front = set() if used_front is None else used_front
    used_back = set() if used_back is None else used_back
    pairs = []
    for _, fi, bi in sorted(candidates):
        if fi in used_front or bi in used_back:
            continue
        used_front.add(fi)
        used_back.add(bi)
        pairs.append((fi, bi))
    return pairs


class ViaCorrespondenceMatcher:
    """Corner-local Hough-style offset voting."""

    def __init__(
        self,
        dpi: float = None,
        neighbors: int = None,
        bin_size: float = None,
        min_votes: int = None,
        max_offset: float = None,
        assign_radius: float = None,
        log: logging.Logger = None,
    ):
        cfg = settings
        dpi = dpi or cfg.default_dpi
        self.neighbors = neighbors or cfg.match_neighbors_per_corner
        self.bin_size = bin_size or cfg.match_bin_size_px
        self.min_votes = min_votes or cfg.match_min_votes
        self.max_offset = max_offset or max(cfg.match_max_offset_in * dpi, cfg.match_max_offset_min_px)
        self.assign_radius = assign_radius or cfg.match_assign_radius_px
        self.log = log or logger

    # ============================================================
    # VOTING
    # ============================================================

    @staticmethod
    def corner_points(front: np.ndarray, back: np.ndarray) -> Dict[str, np.ndarray]:
        """Image corners of the joint extent of both point sets."""
        both = np.vstack([front, back])
        x1, y1 = both.min(axis=0)
        x2, y2 = both.max(axis=0)
        anchors = (
            np.array([x1, y1]),
            np.array([x2, y1]),
            np.array([x1, y2]),
            np.array([x2, y2]),
        )
        return dict(zip(CORNERS, anchors))

    def _nearest(self, points: np.ndarray, corner: np.ndarray) -> np.ndarray:
        d = np.linalg.norm(points - corner, axis=1)
        return np.argsort(d, kind="stable")[:self.neighbors]

    def vote(self, deltas: np.ndarray) -> Tuple[Optional[np.ndarray], int]:
        """
        Peak of the delta histogram.

        Returns:
            Tuple of (mean delta inside the winning 3x3 neighbourhood, vote
            count). The offset is None when there are no deltas.
        """
        if len(deltas) == 0:
            return None, 0
        bins = np.floor(deltas / self.bin_size).astype(np.int64)
        lo = bins.min(axis=0) - 1
        shape = tuple(bins.max(axis=0) - lo + 2)
        hist = np.zeros(shape, dtype=np.int64)
        idx = bins - lo
        np.add.at(hist, (idx[:, 0], idx[:, 1]), 1)

        # 3x3 neighbourhood sums
        padded = np.pad(hist, 1)
        sums = sum(
            padded[1 + dx:1 + dx + shape[0], 1 + dy:1 + dy + shape[1]]
            for dx in (-1, 0, 1)
            for dy in (-1, 0, 1)
        )

        best = sums.max()
        cells = np.argwhere(sums == best)
        centers = (cells + lo + 0.5) * self.bin_size
        magnitudes = np.hypot(centers[:, 0], centers[:, 1])
        peak = cells[int(np.argmin(magnitudes))]

        near = np.all(np.abs(idx - peak) <= 1, axis=1)
        return deltas[near].mean(axis=0), int(best)

    def match_corner(
        self,
        corner: str,
        anchor: np.ndarray,
        front: np.ndarray,
        back: np.ndarray,
    ) -> Tuple[CornerVote, List[Tuple[float, int, int]]]:
        """Vote at one corner and collect the candidate pairs near its peak."""
        fi = self._nearest(front, anchor)
        bi = self._nearest(back, anchor)
        deltas = (front[fi][:, None, :] - back[bi][None, :, :]).reshape(-1, 2)
        offset, votes = self.vote(deltas)
        result = CornerVote(corner=corner, votes=votes)

        if offset is None:
            result.rejected = "no vias"
            return result, []
        if votes < self.min_votes:
            result.rejected = f"{votes} votes (need {self.min_votes})"
            return result, []
        if math.hypot(*offset) > self.max_offset:
            result.rejected = f"offset {math.hypot(*offset):.1f} px exceeds {self.max_offset:.1f} px"
            return result, []

        result.offset = (float(offset[0]), float(offset[1]))
        err = np.linalg.norm(deltas - offset, axis=1)
        close = np.flatnonzero(err <= self.assign_radius)
        nb = len(bi)
        candidates = [(float(err[k]), int(fi[k // nb]), int(bi[k % nb])) for k in close]
        return result, candidates

    # ============================================================
    # MATCHING
    # ============================================================

    def match(
        self,
        front: Sequence[Point2D],
        back: Sequence[Point2D],
        contact_pairs: Sequence[Tuple[Point2D, Point2D]] = (),
    ) -> CorrespondenceSet:
        """
        Find front/back via correspondences.

        Args:
            front: Front via centres
            back: Back via centres (already in roughly the front frame)
            contact_pairs: Optional (front, back) contact points added as a
                fifth, virtual corner

        Returns:
            CorrespondenceSet with one-to-one index pairs
        """
        result = CorrespondenceSet()
        for f, b in contact_pairs:
            result.extra_front.append(f)
            result.extra_back.append(b)
        if len(front) == 0 or len(back) == 0:
            return result

        front_arr = points_to_array(front)
        back_arr = points_to_array(back)

        used_front, used_back = set(), set()
        for name, anchor in self.corner_points(front_arr, back_arr).items():
            vote, candidates = self.match_corner(name, anchor, front_arr, back_arr)
            pairs = greedy_assign(candidates, used_front, used_back)
            vote.pairs = len(pairs)
            result.corners.append(vote)
            for fi, bi in pairs:
                result.front_indices.append(fi)
                result.back_indices.append(bi)
            if vote.rejected:
                self.log.debug(f"Corner {name}: rejected ({vote.rejected})")
            else:
                self.log.debug(
                    f"Corner {name}: offset=({vote.offset[0]:.1f}, {vote.offset[1]:.1f}), "
                    f"votes={vote.votes}, pairs={len(pairs)}"
                )

        self.log.info(
            f"Via correspondences: {result.via_pairs} via pairs "
            f"+ {len(result.extra_front)} contact pairs from {len(front)}/{len(back)} vias"
        )
        return result

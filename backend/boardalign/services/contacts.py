"""
Gold edge-connector contact detection.

Pipeline overview:
1. SEARCH BAND: A generous band around the nominated board edge
   (>= 10% of the board dimension or 300 px outward, 20% inward)
2. COLOUR MASK: HSV range mask, blobs filtered loosely by aspect and area
3. CENTROIDS: Sub-pixel centres from image moments of each blob's mask
4. LINE CLUSTER: Keep the densest band of line coordinates
5. GRID FIT: Pitch from spacing, longest evenly pitched run
6. RESCUE: Impose the full grid on the row, scored by colour
7. FILTER: Outlier removal + width normalization

When no edge is nominated every candidate edge is tried and the one with
the most convincing seed row wins.
"""

import logging
from typing import List, Optional, Sequence, Tuple

import cv2
import numpy as np

from boardalign.config import settings
from boardalign.models.board import ContactSpec, Edge
from boardalign.services.board_bounds import BoardBoundsDetector
from boardalign.services.contact_grid import (
    contact_line_angle,
    estimate_dpi,
    fit_grid,
    grid_rescue,
)
from boardalign.services.contact_types import (
    Contact,
    ContactLineParams,
    ContactPass,
    DetectionParams,
    DetectionResult,
)
from boardalign.services.geometry import Point2D, RectInt
from boardalign.services.raster import to_hsv
from boardalign.services.results import Complete, Outcome, Partial, require_image
from boardalign.services.robust_filter import RobustFilter

logger = logging.getLogger(__name__)

DEFAULT_EDGES = (Edge.TOP, Edge.BOTTOM)

# Loose first-pass aspect bounds (long side / short side)
LOOSE_ASPECT = (2.0, 15.0)


def gold_mask(image: np.ndarray, params: DetectionParams, hsv: np.ndarray = None) -> np.ndarray:
    """Binary mask of pixels inside the contact HSV range."""
    hsv = to_hsv(image) if hsv is None else hsv
    c = params.color
    lower = np.array([c.hue_min, c.sat_min, c.val_min], dtype=np.float64)
    upper = np.array([c.hue_max, c.sat_max, c.val_max], dtype=np.float64)
    return cv2.inRange(hsv, lower, upper)


def blob_center(mask: np.ndarray, rect: RectInt) -> Point2D:
    """Sub-pixel centre from binary image moments, falling back to the box centre."""
    roi = mask[rect.y:rect.y2, rect.x:rect.x2]
    m = cv2.moments(roi, binaryImage=True)
    if m["m00"] <= 0:
        return rect.center
    return Point2D(rect.x + m["m10"] / m["m00"], rect.y + m["m01"] / m["m00"])


class ContactDetector:
    """Detects gold edge contacts and reconstructs the full contact row."""

    def __init__(
        self,
        spec: ContactSpec = None,
        params: DetectionParams = None,
        bounds_detector: BoardBoundsDetector = None,
        log: logging.Logger = None,
    ):
        self.config = settings
        self.spec = spec or ContactSpec()
        self.params = params
        self.log = log or logger
        self.bounds_detector = bounds_detector or BoardBoundsDetector(log=self.log)

    def _params(self, dpi: float) -> DetectionParams:
        if self.params is not None:
            return self.params
        return DetectionParams.from_spec(self.spec, dpi)

    # ============================================================
    # SEARCH BAND + CANDIDATES
    # ============================================================

    def search_band(self, board: RectInt, edge: Edge, img_w: int, img_h: int) -> RectInt:
        """Region searched for contacts on one edge, clamped to the image."""
        cfg = self.config
        bx, by, bw, bh = board.x, board.y, board.width, board.height
        margin_y = max(int(bh * cfg.search_margin_fraction), cfg.search_margin_min_px)
        margin_x = max(int(bw * cfg.search_margin_fraction), cfg.search_margin_min_px)
        inward_y = int(bh * cfg.search_inward_fraction)
        inward_x = int(bw * cfg.search_inward_fraction)

        if edge == Edge.TOP:
            rect = RectInt.from_xyxy(bx, by - margin_y, bx + bw, by + inward_y)
        elif edge == Edge.BOTTOM:
            rect = RectInt.from_xyxy(bx, by + bh - inward_y, bx + bw, by + bh + margin_y)
        elif edge == Edge.LEFT:
            rect = RectInt.from_xyxy(bx - margin_x, by, bx + inward_x, by + bh)
        else:
            rect = RectInt.from_xyxy(bx + bw - inward_x, by, bx + bw + margin_x, by + bh)
        return rect.clamp(img_w, img_h)

    def find_candidates(
        self,
        mask: np.ndarray,
        band: RectInt,
        horizontal: bool,
        params: DetectionParams,
    ) -> List[Contact]:
        """
        Loosely filtered contact blobs inside the band.

        Returns:
            Seed contacts in image coordinates, sorted along the row
        """
        if band.width <= 0 or band.height <= 0:
            return []
        region = np.ascontiguousarray(mask[band.y:band.y2, band.x:band.x2])
        contours, _ = cv2.findContours(region, cv2.RETR_EXTERNAL, cv2.CHAIN_APPROX_SIMPLE)

        expect_w = expect_h = 0.0
        if params.dpi > 0:
            expect_w = self.spec.width_in * params.dpi
            expect_h = self.spec.height_in * params.dpi

        candidates = []
        rejected_aspect = rejected_size = 0
        for contour in contours:
            x, y, w, h = cv2.boundingRect(contour)
            if w <= 0 or h <= 0 or w * h < params.min_area / 10:
                continue
            # Contacts are long across the row
            along, across = (w, h) if horizontal else (h, w)
            aspect = across / float(along)
            if aspect < LOOSE_ASPECT[0] or aspect > LOOSE_ASPECT[1]:
                rejected_aspect += 1
                continue
            if expect_w > 0 and not (
                expect_w / 3 <= along <= expect_w * 3 and expect_h / 3 <= across <= expect_h * 3
            ):
                rejected_size += 1
                continue
            rect = RectInt(band.x + x, band.y + y, w, h)
            candidates.append(Contact(bounds=rect, center=blob_center(mask, rect)))

        self.log.debug(
            f"Candidates: {len(candidates)} of {len(contours)} blobs "
            f"(aspect rejected {rejected_aspect}, size rejected {rejected_size})"
        )
        candidates = self.cluster_line(candidates, horizontal, params)
        candidates.sort(key=lambda c: c.along(horizontal))
        return candidates

    def cluster_line(
        self,
        candidates: List[Contact],
        horizontal: bool,
        params: DetectionParams,
    ) -> List[Contact]:
        """
        Keep candidates near the densest line coordinate.

        A window the size of the expected contact height slides over the
        line coordinates; everything within one window of the densest
        window's centre survives.
        """
        if len(candidates) < 5:
            return candidates
        window = float(self.config.cluster_window_px)
        if params.dpi > 0 and self.spec.height_in > 0:
            window = self.spec.height_in * params.dpi

        coords = np.array([c.across(horizontal) for c in candidates], dtype=np.float64)
        ordered = np.sort(coords)
        counts = np.searchsorted(ordered, ordered + window, side="right") - np.arange(len(ordered))
        best = int(np.argmax(counts))
        center = (ordered[best] + ordered[best + counts[best] - 1]) / 2.0

        kept = [c for c, v in zip(candidates, coords) if abs(v - center) <= window]
        if len(kept) < len(candidates):
            self.log.debug(f"Line cluster: kept {len(kept)} of {len(candidates)} around {center:.1f}")
        return kept

    # ============================================================
    # EDGE DETECTION
    # ============================================================

    def detect_edge(
        self,
        image: np.ndarray,
        mask: np.ndarray,
        board: RectInt,
        edge: Edge,
        params: DetectionParams,
    ) -> Tuple[List[Contact], RectInt, Optional[ContactLineParams]]:
        """Seeds, search band and line params for a single edge."""
        h, w = image.shape[:2]
        horizontal = not edge.is_vertical
        band = self.search_band(board, edge, w, h)
        seeds = self.find_candidates(mask, band, horizontal, params)
        run, line = fit_grid(seeds, self.spec, horizontal, params.dpi, log=self.log)
        self.log.debug(f"Edge {edge.value}: {len(seeds)} seeds, run of {len(run)}")
        return run, band, line

    def _edge_score(self, seeds: List[Contact], line: Optional[ContactLineParams]) -> float:
        if line is None:
            return 0.0
        expected = self.spec.count
        if len(seeds) > expected * 1.5:
            # Far too many blobs: probably not the connector
            return expected / 2.0
        return float(len(seeds))

    def detect(
        self,
        image: np.ndarray,
        board: RectInt = None,
        edge: Edge = None,
        dpi: float = None,
        edges: Sequence[Edge] = DEFAULT_EDGES,
    ) -> Outcome[DetectionResult]:
        """
        Detect contacts on a board edge.

        Args:
            image: BGR image
            board: Board bounds (detected when omitted)
            edge: Edge to search (every edge in `edges` is tried when omitted)
            dpi: Known scan resolution, or None to estimate from spacing

        Returns:
            Complete(result) when at least spec.count contacts were found,
            otherwise Partial(result, "found N contacts (need M)")

        Raises:
            BoardAlignError: If the image is None or empty
        """
        require_image(image)
        h, w = image.shape[:2]
        if board is None:
            board = self.bounds_detector.detect(image).bounds

        params = self._params(dpi or 0.0)
        hsv = to_hsv(image)
        mask = gold_mask(image, params, hsv=hsv)

        candidates = [edge] if edge is not None else list(edges)
        best = None
        best_score = -1.0
        for candidate in candidates:
            run, band, line = self.detect_edge(image, mask, board, candidate, params)
            score = self._edge_score(run, line)
            if score > best_score:
                best, best_score = (candidate, run, band, line), score

        chosen, seeds, band, line = best
        horizontal = not chosen.is_vertical

        # Rescue snaps every contact onto one line, so the tilt comes from the seeds
        seed_angle = contact_line_angle(seeds, chosen)

        expected_positions: List[RectInt] = []
        contacts = seeds
        if line is not None and seeds:
            expected_positions, contacts = grid_rescue(image, seeds, line, self.spec.count, log=self.log)

        if len(contacts) > 5:
            contacts = RobustFilter(horizontal=horizontal, log=self.log).apply(contacts)

        measured_dpi = dpi or estimate_dpi(contacts, self.spec.pitch_in, horizontal)
        result = DetectionResult(
            contacts=contacts,
            expected_positions=expected_positions,
            edge=chosen,
            rotation=chosen.rotation_to_top,
            board_bounds=board,
            search_bounds=band,
            dpi=measured_dpi,
            contact_angle=seed_angle,
            line=line,
        )

        rescued = sum(1 for c in contacts if c.detection_pass == ContactPass.RESCUE)
        self.log.info(
            f"Contacts: {len(contacts)} on {chosen.value} edge "
            f"({len(seeds)} seeds, {rescued} rescued), angle={result.contact_angle:.2f}°, "
            f"dpi={measured_dpi:.1f}"
        )

        if len(contacts) < self.spec.count:
            return Partial(result, f"found {len(contacts)} contacts (need {self.spec.count})")
        return Complete(result)

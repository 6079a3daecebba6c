"""
Whole-image contact search driven by a template.

Used when edge detection fails on one side but succeeded on the other:
the good side's contacts define the expected size, and the failing image
is searched everywhere for blobs of that size.

The image is split into overlapping horizontal strips processed by a
bounded thread pool. Each worker collects its own candidates and merges
them into the shared list under a single lock; duplicates from the
overlaps are removed afterwards.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import List, Optional

import cv2
import numpy as np

from boardalign.config import settings
from boardalign.models.board import ContactSpec, Edge
from boardalign.services.contact_grid import contact_line_angle, estimate_dpi, fit_grid, grid_rescue
from boardalign.services.contact_types import (
    Contact,
    ContactPass,
    DetectionParams,
    DetectionResult,
)
from boardalign.services.contacts import blob_center, gold_mask
from boardalign.services.geometry import RectInt
from boardalign.services.results import BoardAlignError, Complete, Outcome, Partial, require_image
from boardalign.services.robust_filter import RobustFilter

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ContactTemplate:
    """Size envelope of a known-good contact row."""
    avg_width: float
    avg_height: float
    min_width: int
    max_width: int
    min_height: int
    max_height: int
    min_aspect: float
    max_aspect: float

    @classmethod
    def from_result(cls, result: DetectionResult) -> Optional["ContactTemplate"]:
        """
        Build a template from a detection result with at least 5 contacts.

        Widths and heights may vary by 30%, the aspect by 25%.
        """
        if result is None or len(result.contacts) < 5:
            return None
        hz = result.horizontal
        widths = np.array([c.size_along(hz) for c in result.contacts], dtype=np.float64)
        heights = np.array([c.size_across(hz) for c in result.contacts], dtype=np.float64)
        avg_w = float(widths.mean())
        avg_h = float(heights.mean())
        aspect = avg_h / avg_w
        return cls(
            avg_width=avg_w,
            avg_height=avg_h,
            min_width=int(avg_w * 0.7),
            max_width=int(avg_w * 1.3),
            min_height=int(avg_h * 0.7),
            max_height=int(avg_h * 1.3),
            min_aspect=aspect * 0.75,
            max_aspect=aspect * 1.25,
        )

    def matches(self, w: int, h: int) -> bool:
        if not (self.min_width <= w <= self.max_width):
            return False
        if not (self.min_height <= h <= self.max_height):
            return False
        aspect = h / float(w)
        return self.min_aspect <= aspect <= self.max_aspect


def deduplicate(candidates: List[Contact], template: ContactTemplate) -> List[Contact]:
    """Collapse candidates closer than 0.8x the template width, keeping the larger."""
    threshold = template.avg_width * 0.8
    kept: List[Contact] = []
    for c in sorted(candidates, key=lambda c: c.bounds.area, reverse=True):
        if all(c.center.distance_to(k.center) >= threshold for k in kept):
            kept.append(c)
    return kept


class BruteForceSearch:
    """Template-driven contact search over the whole image."""

    def __init__(
        self,
        template: ContactTemplate,
        spec: ContactSpec = None,
        max_workers: int = None,
        log: logging.Logger = None,
    ):
        if template is None:
            raise BoardAlignError("INVALID_TEMPLATE", "Brute force search needs a contact template")
        self.template = template
        self.spec = spec or ContactSpec()
        self.max_workers = max_workers or settings.max_workers
        self.log = log or logger

    def _strips(self, img_h: int) -> List[tuple]:
        overlap = int(self.template.avg_height * 2)
        height = (img_h + self.max_workers - 1) // self.max_workers
        height = max(height, overlap * 3, 1)
        step = max(1, height - overlap)
        strips = []
        for y in range(0, img_h, step):
            strips.append((y, min(img_h, y + height)))
            if y + height >= img_h:
                break
        return strips

    def collect(self, mask: np.ndarray) -> List[Contact]:
        """Template-matching blobs from every strip, before deduplication."""
        img_h, img_w = mask.shape[:2]
        lock = threading.Lock()
        found: List[Contact] = []

        def scan(bounds):
            y1, y2 = bounds
            region = np.ascontiguousarray(mask[y1:y2])
            contours, _ = cv2.findContours(region, cv2.RETR_EXTERNAL, cv2.CHAIN_APPROX_SIMPLE)
            local = []
            for contour in contours:
                x, y, w, h = cv2.boundingRect(contour)
                if not self.template.matches(w, h):
                    continue
                rect = RectInt(x, y1 + y, w, h)
                local.append(Contact(
                    bounds=rect,
                    center=blob_center(mask, rect),
                    detection_pass=ContactPass.BRUTE_FORCE,
                ))
            if local:
                with lock:
                    found.extend(local)

        strips = self._strips(img_h)
        self.log.debug(
            f"Brute force: {len(strips)} strips, {self.max_workers} workers, "
            f"contacts {self.template.min_width}-{self.template.max_width} x "
            f"{self.template.min_height}-{self.template.max_height} px"
        )
        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            list(pool.map(scan, strips))
        return found

    def search(self, image: np.ndarray, params: DetectionParams = None) -> Outcome[DetectionResult]:
        """
        Search the whole image for a horizontal contact row.

        Returns:
            Complete(result) with spec.count contacts, otherwise Partial

        Raises:
            BoardAlignError: If the image is None or empty
        """
        require_image(image)
        h, w = image.shape[:2]
        params = params or DetectionParams.from_spec(self.spec)
        mask = gold_mask(image, params)

        candidates = deduplicate(self.collect(mask), self.template)
        candidates.sort(key=lambda c: c.center.x)
        self.log.debug(f"Brute force: {len(candidates)} candidates after dedup")

        full = RectInt(0, 0, w, h)
        if len(candidates) < 2:
            return Partial(
                DetectionResult(contacts=candidates, board_bounds=full, dpi=params.dpi),
                f"only found {len(candidates)} candidates",
            )

        run, line = fit_grid(candidates, self.spec, True, params.dpi, log=self.log)
        # Measured before rescue, which puts every contact on one line
        seed_angle = contact_line_angle(run)
        expected_positions: List[RectInt] = []
        contacts = run
        if line is not None and len(run) >= 2:
            expected_positions, contacts = grid_rescue(image, run, line, self.spec.count, log=self.log)
        if len(contacts) > 5:
            contacts = RobustFilter(log=self.log).remove_outliers(contacts)

        avg_y = float(np.mean([c.center.y for c in contacts])) if contacts else 0.0
        edge = Edge.BOTTOM if avg_y > h / 2.0 else Edge.TOP
        result = DetectionResult(
            contacts=contacts,
            expected_positions=expected_positions,
            edge=edge,
            rotation=edge.rotation_to_top,
            board_bounds=full,
            search_bounds=full,
            dpi=params.dpi or estimate_dpi(contacts, self.spec.pitch_in),
            contact_angle=seed_angle,
            line=line,
        )
        self.log.info(f"Brute force: {len(contacts)} contacts on {edge.value} edge")

        if len(contacts) < self.spec.count:
            return Partial(result, f"found {len(contacts)} contacts (need {self.spec.count})")
        return Complete(result)

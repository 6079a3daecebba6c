"""
Robust contact filtering.

Two independent passes:
- Outlier removal ranks contacts by line residual and size deviation and
  drops at most a fixed fraction of them
- Width normalization trims contacts whose box bled into neighbouring
  copper, on the side where the bleed is
"""

import logging
import math
from dataclasses import replace
from typing import List

import numpy as np

from boardalign.config import settings
from boardalign.services.contact_types import Contact
from boardalign.services.geometry import Point2D, RectInt, fit_line

logger = logging.getLogger(__name__)

MIN_KEEP = 2

# Size deviation dominates: insulator bleed is the usual failure
WIDTH_WEIGHT = 3.0
HEIGHT_WEIGHT = 1.5


class RobustFilter:
    """Outlier removal and width normalization for a contact row."""

    def __init__(
        self,
        max_fraction: float = None,
        horizontal: bool = True,
        log: logging.Logger = None,
    ):
        self.max_fraction = settings.outlier_fraction if max_fraction is None else max_fraction
        self.horizontal = horizontal
        self.log = log or logger

    def score(self, contacts: List[Contact]) -> np.ndarray:
        """
        Combined outlier score per contact (higher is worse).

        Position residuals are normalized by max(3 * IQR, 5 px), so scores
        below 1 mean "unremarkable".
        """
        hz = self.horizontal
        along = np.array([c.along(hz) for c in contacts], dtype=np.float64)
        across = np.array([c.across(hz) for c in contacts], dtype=np.float64)
        slope, intercept = fit_line(along, across)
        residuals = np.abs(across - (slope * along + intercept))

        q75, q25 = np.percentile(residuals, [75, 25])
        threshold = max(3.0 * (q75 - q25), 5.0)

        widths = np.array([c.size_along(hz) for c in contacts], dtype=np.float64)
        heights = np.array([c.size_across(hz) for c in contacts], dtype=np.float64)
        med_w = float(np.median(widths)) or 1.0
        med_h = float(np.median(heights)) or 1.0

        width_score = np.abs(widths / med_w - 1.0) * WIDTH_WEIGHT
        height_score = np.abs(heights / med_h - 1.0) * HEIGHT_WEIGHT
        return width_score + height_score + residuals / threshold

    def remove_outliers(self, contacts: List[Contact]) -> List[Contact]:
        """
        Drop the worst-scoring contacts.

        At most floor(n * max_fraction) contacts are removed, the result
        never shrinks below 2, and contacts scoring below 1 are always
        kept. Order along the row is preserved.
        """
        n = len(contacts)
        if n <= MIN_KEEP:
            return list(contacts)

        scores = self.score(contacts)
        min_keep = n - self.removal_budget(n)

        order = np.argsort(scores, kind="stable")
        keep = set(int(i) for i in order[:min_keep])
        keep.update(int(i) for i in order[min_keep:] if scores[i] < 1.0)

        kept = [c for i, c in enumerate(contacts) if i in keep]
        if len(kept) < n:
            self.log.debug(f"Robust filter: removed {n - len(kept)} of {n} contacts")
        return kept

    def removal_budget(self, n: int) -> int:
        """How many of n contacts a pass may drop: floor(n * max_fraction), keeping at least 2."""
        return max(0, min(int(math.floor(n * self.max_fraction)), n - MIN_KEEP))

    def normalize_widths(self, contacts: List[Contact], max_reject: int = None) -> List[Contact]:
        """
        Trim contacts wider than 115% of the median width.

        The side to trim is the one whose edge sits further outside the
        box implied by the contact's centre and the median width. Contacts
        beyond 130% or below 75% of the median are rejected, worst first,
        up to max_reject (defaults to the removal budget). Over-wide
        contacts that survive the cap are trimmed like the rest.
        """
        if len(contacts) < 3:
            return list(contacts)
        hz = self.horizontal
        median = float(np.median([c.size_along(hz) for c in contacts]))
        if median <= 0:
            return list(contacts)
        if max_reject is None:
            max_reject = self.removal_budget(len(contacts))

        ratios = [c.size_along(hz) / median for c in contacts]
        out_of_range = [
            i for i, r in enumerate(ratios)
            if r > settings.width_reject_ratio or r < settings.width_min_ratio
        ]
        out_of_range.sort(key=lambda i: abs(ratios[i] - 1.0), reverse=True)
        reject = set(out_of_range[:max_reject])
        if len(out_of_range) > len(reject):
            self.log.debug(
                f"Width normalization: {len(out_of_range)} out of range, rejection capped at {len(reject)}"
            )

        result = []
        trimmed = 0
        for i, c in enumerate(contacts):
            if i in reject:
                continue
            if ratios[i] <= settings.width_trim_ratio:
                result.append(c)
                continue

            width = c.size_along(hz)
            start = c.bounds.x if hz else c.bounds.y
            end = start + width
            center = c.along(hz)
            left_error = start - (center - median / 2)
            right_error = end - (center + median / 2)
            excess = width - median

            if left_error < 0 and abs(left_error) > abs(right_error):
                cut = int(round(min(-left_error, excess)))
                start += cut
            elif right_error > 0:
                cut = int(round(min(right_error, excess)))
                end -= cut
            else:
                result.append(c)
                continue

            result.append(self._resize(c, start, end))
            trimmed += 1

        if trimmed or reject:
            self.log.debug(f"Width normalization: trimmed {trimmed}, rejected {len(reject)}")
        return result

    def _resize(self, c: Contact, start: int, end: int) -> Contact:
        mid = (start + end) / 2.0
        if self.horizontal:
            bounds = RectInt(start, c.bounds.y, end - start, c.bounds.height)
            center = Point2D(mid, c.center.y)
        else:
            bounds = RectInt(c.bounds.x, start, c.bounds.width, end - start)
            center = Point2D(c.center.x, mid)
        return replace(c, bounds=bounds, center=center)

    def apply(self, contacts: List[Contact]) -> List[Contact]:
        """
        Outlier removal followed by width normalization.

        Both passes share one removal budget over the input row, so
        together they still drop at most floor(n * max_fraction) contacts
        and never fewer than 2 remain.
        """
        budget = self.removal_budget(len(contacts))
        kept = self.remove_outliers(contacts)
        remaining = max(0, budget - (len(contacts) - len(kept)))
        return self.normalize_widths(kept, max_reject=remaining)

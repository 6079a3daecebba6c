"""
Contact grid fitting and grid-based rescue.

Edge contacts are physically collinear and evenly pitched. Fitting finds
that pitch from the detections; rescue then imposes the grid on the whole
row, so the final contact set is straight and regular even when the
colour mask missed or merged contacts.
"""

import logging
import math
from dataclasses import dataclass
from typing import List, Optional, Tuple

import numpy as np

from boardalign.config import settings
from boardalign.models.board import ContactSpec, Edge
from boardalign.services.contact_types import Contact, ContactLineParams, ContactPass
from boardalign.services.geometry import Point2D, RectInt, fit_line

logger = logging.getLogger(__name__)

# Plausible scan resolutions when DPI is inferred from a handful of contacts
SPARSE_DPI_RANGE = (200.0, 1500.0)


def _line_params(
    run: List[Contact],
    pitch: float,
    start_pos: float,
    count: int,
    horizontal: bool,
) -> ContactLineParams:
    return ContactLineParams(
        line_pos=float(np.mean([c.across(horizontal) for c in run])),
        pitch=float(pitch),
        start_pos=float(start_pos),
        avg_width=float(np.mean([c.size_along(horizontal) for c in run])),
        avg_height=float(np.mean([c.size_across(horizontal) for c in run])),
        count=count,
        horizontal=horizontal,
    )


def _sparse_pitch(candidates: List[Contact], spec: ContactSpec, dpi: float, horizontal: bool) -> float:
    """Pitch in pixels from a known DPI, or from the contact width when unknown."""
    if dpi and dpi > 0:
        return spec.pitch_in * dpi
    if spec.width_in <= 0:
        return 0.0
    avg_width = float(np.mean([c.size_along(horizontal) for c in candidates]))
    estimated_dpi = avg_width / spec.width_in
    if SPARSE_DPI_RANGE[0] < estimated_dpi < SPARSE_DPI_RANGE[1]:
        return spec.pitch_in * estimated_dpi
    return 0.0


def fit_grid(
    candidates: List[Contact],
    spec: ContactSpec,
    horizontal: bool = True,
    dpi: float = 0.0,
    log: logging.Logger = None,
) -> Tuple[List[Contact], Optional[ContactLineParams]]:
    """
    Fit an evenly pitched run to candidates sorted along the row.

    Algorithm:
    1. Take the median adjacent spacing and average the spacings within
       0.7-1.3x of it to get the pitch
    2. From every starting candidate, walk forward one pitch at a time and
       take the nearest candidate within tolerance whose size matches the
       DPI implied by the pitch
    3. Keep the longest run

    With 2-4 candidates (or too few regular spacings) the pitch comes from
    DPI instead, and the candidates are returned unchanged with line params
    so that rescue can still run.

    Returns:
        Tuple of (run contacts, line params or None)
    """
    log = log or logger
    count = spec.count
    if len(candidates) < 2:
        return list(candidates), None

    positions = np.array([c.along(horizontal) for c in candidates], dtype=np.float64)

    pitch = 0.0
    if len(candidates) >= 5:
        spacings = np.sort(np.diff(positions))
        median = spacings[len(spacings) // 2]
        regular = spacings[
            (spacings > median * settings.spacing_min_ratio)
            & (spacings < median * settings.spacing_max_ratio)
        ]
        if len(regular) >= 5:
            pitch = float(regular.mean())

    if pitch <= 0:
        pitch = _sparse_pitch(candidates, spec, dpi, horizontal)
        if pitch <= 0:
            log.debug(f"Grid fit: cannot estimate pitch from {len(candidates)} candidates")
            return list(candidates), None
        log.debug(f"Sparse grid: {len(candidates)} candidates, pitch={pitch:.1f} px")
        return list(candidates), _line_params(candidates, pitch, positions[0], count, horizontal)

    estimated_dpi = pitch / spec.pitch_in if spec.pitch_in > 0 else 0.0
    expect_w = spec.width_in * estimated_dpi
    expect_h = spec.height_in * estimated_dpi
    if expect_w > 0 and expect_h > 0:
        widths = np.array([c.size_along(horizontal) for c in candidates], dtype=np.float64)
        heights = np.array([c.size_across(horizontal) for c in candidates], dtype=np.float64)
        size_ok = (
            (widths >= expect_w * 0.5) & (widths <= expect_w * 2.0)
            & (heights >= expect_h * 0.5) & (heights <= expect_h * 2.0)
        )
    else:
        size_ok = np.ones(len(candidates), dtype=bool)

    log.debug(
        f"Grid analysis: pitch={pitch:.1f} px, estimated DPI={estimated_dpi:.1f}, "
        f"expected contact={expect_w:.1f}x{expect_h:.1f} px"
    )

    tolerance = pitch * settings.pitch_tolerance
    n = len(positions)
    steps = np.arange(1, max(count, 2))
    best_run: List[int] = []
    for start in range(n):
        expected = positions[start] + steps * pitch
        idx = np.clip(np.searchsorted(positions, expected), 1, n - 1)
        left = idx - 1
        nearest = np.where(
            np.abs(positions[left] - expected) <= np.abs(positions[idx] - expected),
            left, idx,
        )
        dist = np.abs(positions[nearest] - expected)
        run = [start]
        for i in nearest[(dist < tolerance) & size_ok[nearest]]:
            if i not in run:
                run.append(int(i))
        if len(run) > len(best_run):
            best_run = run

    run_contacts = [candidates[i] for i in best_run]
    log.debug(f"Grid filtering: {n} candidates -> {len(run_contacts)} matched (expected {count})")

    if len(run_contacts) < 2:
        return run_contacts, None
    return run_contacts, _line_params(
        run_contacts, pitch, positions[best_run[0]], count, horizontal
    )


# ============================================================
# GRID RESCUE
# ============================================================

@dataclass
class GridCandidate:
    """A generated grid position with its colour score."""
    index: int
    position: RectInt
    center: Point2D
    mean_bgr: Tuple[float, float, float]
    seed: Optional[Contact] = None
    score: float = 0.0


def _mean_color(image: np.ndarray, rect: RectInt) -> Tuple[float, float, float]:
    h, w = image.shape[:2]
    r = rect.clamp(w, h)
    if r.width <= 0 or r.height <= 0:
        return 0.0, 0.0, 0.0
    mean = image[r.y:r.y2, r.x:r.x2].reshape(-1, 3).mean(axis=0)
    return float(mean[0]), float(mean[1]), float(mean[2])


def grid_rescue(
    image: np.ndarray,
    seeds: List[Contact],
    line: ContactLineParams,
    expected_count: int = None,
    log: logging.Logger = None,
) -> Tuple[List[RectInt], List[Contact]]:
    """
    Rebuild the full contact row from the fitted grid.

    One position is generated per pitch multiple across the image, anchored
    on the first seed (not the board edge), all on the median seed line
    coordinate. Positions are scored by brightness and colour similarity
    to the mean colour at seed positions; seeds get a bonus. The top
    expected_count positions become the contact set.

    Args:
        image: BGR image the seeds were detected in
        seeds: Seed contacts (at least one)
        line: Fitted line params
        expected_count: Contacts to return (defaults to line.count)

    Returns:
        Tuple of (all generated positions, chosen contacts sorted along
        the row). Exactly expected_count contacts are returned.
    """
    log = log or logger
    expected_count = expected_count or line.count
    horizontal = line.horizontal
    pitch = line.pitch
    if not seeds or pitch <= 0:
        return [], list(seeds)

    ordered = sorted(seeds, key=lambda c: c.along(horizontal))
    line_pos = float(np.median([c.across(horizontal) for c in ordered]))
    ref_pos = ordered[0].along(horizontal)

    h, w = image.shape[:2]
    extent = float(w if horizontal else h)
    start = ref_pos - math.floor(ref_pos / pitch) * pitch
    indices = list(range(int((extent - start) / pitch) + 1))
    indices = [i for i in indices if start + i * pitch <= extent]

    # Pad beyond the image when it is too short for the whole row
    lo, hi = -1, len(indices)
    while len(indices) < expected_count:
        if len(indices) % 2:
            indices.insert(0, lo)
            lo -= 1
        else:
            indices.append(hi)
            hi += 1

    seed_at = {}
    for c in ordered:
        idx = int(round((c.along(horizontal) - start) / pitch))
        seed_at.setdefault(idx, c)

    avg_w, avg_h = line.avg_width, line.avg_height
    candidates: List[GridCandidate] = []
    for idx in indices:
        pos = start + idx * pitch
        if horizontal:
            center = Point2D(pos, line_pos)
            rect = RectInt(int(round(pos - avg_w / 2)), int(round(line_pos - avg_h / 2)),
                           int(round(avg_w)), int(round(avg_h)))
        else:
            center = Point2D(line_pos, pos)
            rect = RectInt(int(round(line_pos - avg_h / 2)), int(round(pos - avg_w / 2)),
                           int(round(avg_h)), int(round(avg_w)))
        candidates.append(GridCandidate(
            index=idx,
            position=rect,
            center=center,
            mean_bgr=_mean_color(image, rect),
            seed=seed_at.get(idx),
        ))

    seeded = [c.mean_bgr for c in candidates if c.seed is not None]
    reference = np.mean(seeded, axis=0) if seeded else np.zeros(3)

    scale = settings.rescue_color_scale
    for c in candidates:
        color = np.array(c.mean_bgr)
        dist = float(np.linalg.norm(color - reference))
        brightness = float(color.mean())
        c.score = brightness / (1.0 + dist / scale)
        if c.seed is not None:
            c.score *= settings.rescue_seed_bonus

    chosen = sorted(candidates, key=lambda c: c.score, reverse=True)[:expected_count]
    contacts = [
        Contact(
            bounds=c.position,
            center=c.center,
            detection_pass=c.seed.detection_pass if c.seed is not None else ContactPass.RESCUE,
        )
        for c in chosen
    ]
    contacts.sort(key=lambda c: c.along(horizontal))

    rescued = sum(1 for c in contacts if c.detection_pass == ContactPass.RESCUE)
    log.debug(
        f"Grid rescue: {len(seeds)} seeds, {len(candidates)} positions, "
        f"{rescued} rescued, line={line_pos:.1f}, pitch={pitch:.2f}"
    )
    return [c.position for c in candidates], contacts


# ============================================================
# LINE ANGLE / DPI
# ============================================================

def contact_line_angle(contacts: List[Contact], edge: Edge = Edge.TOP) -> float:
    """
    Angle of the contact row in degrees.

    Horizontal rows regress Y on X; vertical rows report the angle minus 90.
    Returns 0 for fewer than two contacts or a degenerate fit.
    """
    if len(contacts) < 2:
        return 0.0
    xs = np.array([c.center.x for c in contacts])
    ys = np.array([c.center.y for c in contacts])
    if edge.is_vertical:
        # Regress X on Y so a near-vertical row stays well conditioned
        slope, _ = fit_line(ys, xs)
        return -math.degrees(math.atan(slope))
    slope, _ = fit_line(xs, ys)
    return math.degrees(math.atan(slope))


def estimate_dpi(contacts: List[Contact], pitch_in: float, horizontal: bool = True) -> float:
    """
    DPI from measured contact spacing.

    Needs at least 10 contacts. Averages the spacings within 0.7-1.3x of the
    median and divides by the physical pitch. Returns 0 when unknown.
    """
    if len(contacts) < 10 or pitch_in <= 0:
        return 0.0
    positions = np.sort([c.along(horizontal) for c in contacts])
    spacings = np.diff(positions)
    median = float(np.median(spacings))
    if median <= 0:
        return 0.0
    regular = spacings[
        (spacings > median * settings.spacing_min_ratio)
        & (spacings < median * settings.spacing_max_ratio)
    ]
    if len(regular) == 0:
        return 0.0
    return float(regular.mean()) / pitch_in

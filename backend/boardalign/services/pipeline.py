"""
Front/back scan alignment pipeline.

Pipeline overview:
1. ORIENT: The back scan is mirrored horizontally (it is scanned face down)
2. BOUNDS: Board silhouette and long-edge tilt against the background
3. STRAIGHTEN: Rotate about the image centre, then crop to the board
4. CONTACTS: Detect the connector row; rotate by 90° steps so it is on top
5. FALLBACK: If one side failed, search it with the other side's template
6. COARSE: Rotation + translation from matched contacts
7. VIAS: Detect with escalating profiles until a quick match is convincing
8. FINE: Corner-voting correspondences + RANSAC, then iterative refinement

COORDINATE FRAME NOTES:
- Each side gets its own processed frame (flip, rotate, crop, quarter turn)
- ProcessedImage.to_processed maps raw scan points into that frame
- The final transform maps back-processed points into the front-processed
  frame: p_front = M @ [p_back; 1]
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

import numpy as np

from boardalign.config import settings
from boardalign.models.board import ContactSpec, Edge
from boardalign.models.project import AlignmentRecord, CropBox, ProcessedImageMetadata
from boardalign.services.board_bounds import BoardBounds, BoardBoundsDetector
from boardalign.services.coarse_align import CoarseAligner, CoarseAlignment
from boardalign.services.contact_bruteforce import BruteForceSearch, ContactTemplate
from boardalign.services.contact_types import DetectionParams, DetectionResult
from boardalign.services.contacts import DEFAULT_EDGES, ContactDetector
from boardalign.services.geometry import AffineTransform, Point2D, RectInt
from boardalign.services.raster import (
    flip_horizontal,
    quarter_rotation_transform,
    rotate_quarter,
    to_bgr,
    warp_affine,
)
from boardalign.services.refine import IterativeRefiner, RefineResult
from boardalign.services.results import Complete, Outcome, Partial
from boardalign.services.via_align import (
    ContactAlignmentResult,
    ViaAlignmentResult,
    align_by_contacts,
    align_with_vias,
)
from boardalign.services.via_matcher import ViaCorrespondenceMatcher
from boardalign.services.vias import (
    Side,
    Via,
    ViaProfile,
    dense_radius,
    detect_both_sides,
    profile_sequence,
    reject_dense_vias,
)

logger = logging.getLogger(__name__)


@dataclass
class ProcessedImage:
    """A straightened, cropped scan plus how it was produced."""
    image: np.ndarray
    metadata: ProcessedImageMetadata
    to_processed: AffineTransform           # Raw scan -> processed coordinates
    board: Optional[BoardBounds] = None
    detection: Optional[DetectionResult] = None
    detection_reason: Optional[str] = None  # Set when contact detection fell short

    @property
    def contacts_ok(self) -> bool:
        return self.detection is not None and self.detection_reason is None

    @property
    def width(self) -> int:
        return self.image.shape[1]

    @property
    def height(self) -> int:
        return self.image.shape[0]


@dataclass
class ViaAttempt:
    """Via detection under one profile."""
    profile: ViaProfile
    front: List[Via] = field(default_factory=list)
    back: List[Via] = field(default_factory=list)
    quick_matches: int = 0
    required: int = 0

    @property
    def convincing(self) -> bool:
        return self.quick_matches >= self.required


@dataclass
class BoardAlignment:
    """Everything computed by one front/back alignment."""
    front: ProcessedImage
    back: ProcessedImage
    transform: AffineTransform              # Back processed -> front processed
    record: AlignmentRecord
    coarse: Optional[CoarseAlignment] = None
    contact_alignment: Optional[ContactAlignmentResult] = None
    vias: Optional[ViaAlignmentResult] = None
    via_attempts: List[ViaAttempt] = field(default_factory=list)
    refinement: Optional[RefineResult] = None

    def warp_back(self) -> np.ndarray:
        """Back image resampled into the front frame."""
        return warp_affine(self.back.image, self.transform, self.front.width, self.front.height)


def _bbox(points: np.ndarray, width: int, height: int) -> RectInt:
    x1, y1 = points.min(axis=0)
    x2, y2 = points.max(axis=0)
    return RectInt.from_xyxy(int(x1), int(y1), int(np.ceil(x2)), int(np.ceil(y2))).clamp(width, height)


class BoardAligner:
    """Runs the canonical alignment pipeline for one board."""

    def __init__(
        self,
        spec: ContactSpec = None,
        bounds_detector: BoardBoundsDetector = None,
        log: logging.Logger = None,
    ):
        self.spec = spec or ContactSpec()
        self.log = log or logger
        self.bounds_detector = bounds_detector or BoardBoundsDetector(log=self.log)

    def _contact_detector(self) -> ContactDetector:
        return ContactDetector(spec=self.spec, bounds_detector=self.bounds_detector, log=self.log)

    # ============================================================
    # PER-SIDE PROCESSING
    # ============================================================

    def process_side(
        self,
        image: np.ndarray,
        side: Side,
        dpi: float = None,
        edge: Edge = None,
    ) -> Outcome[ProcessedImage]:
        """
        Straighten, crop and orient one scan, detecting its contacts.

        Args:
            image: Raw scan (BGR, BGRA or greyscale)
            side: FRONT or BACK (the back is mirrored first)
            dpi: Known scan resolution, or None to estimate from contacts
            edge: Connector edge, or None to try the default edges

        Returns:
            Complete(processed) when the full contact row was found, else
            Partial(processed, reason)

        Raises:
            BoardAlignError: If the image is None or empty
        """
        image = to_bgr(image, name=f"{side.value} image")
        orig_h, orig_w = image.shape[:2]

        transform = AffineTransform.identity()
        working = image
        flipped = side == Side.BACK
        if flipped:
            working = flip_horizontal(image)
            transform = AffineTransform(a=-1.0, tx=orig_w - 1)

        board = self.bounds_detector.detect(working)
        cropped, crop_rect, to_crop = self.bounds_detector.rotate_and_crop(working, board)
        transform = to_crop.compose(transform)
        ch, cw = cropped.shape[:2]
        corners = to_crop.apply_array([[p.x, p.y] for p in board.corners])
        board_rect = _bbox(corners, cw, ch)

        detector = self._contact_detector()
        outcome = detector.detect(cropped, board=board_rect, edge=edge, dpi=dpi, edges=DEFAULT_EDGES)
        detection = outcome.value

        steps = detection.rotation
        if steps:
            quarter = quarter_rotation_transform(steps, cw, ch)
            cropped = rotate_quarter(cropped, steps)
            transform = quarter.compose(transform)
            ch, cw = cropped.shape[:2]
            board_rect = _bbox(quarter.apply_array(corners), cw, ch)
            outcome = detector.detect(cropped, board=board_rect, edge=Edge.TOP, dpi=dpi)
            detection = outcome.value
            self.log.debug(f"{side.value}: rotated {steps}° to bring contacts to the top")

        metadata = ProcessedImageMetadata(
            original_width=orig_w,
            original_height=orig_h,
            flipped=flipped,
            rotation_deg=board.angle_deg,
            rotation_steps=steps,
            crop=CropBox(**crop_rect.to_dict()),
            width=cw,
            height=ch,
            dpi=detection.dpi or dpi or 0.0,
            contact_edge=detection.edge.value if detection.edge else None,
        )
        processed = ProcessedImage(
            image=cropped,
            metadata=metadata,
            to_processed=transform,
            board=board,
            detection=detection,
            detection_reason=outcome.reason,
        )
        self.log.info(
            f"{side.value}: {orig_w}x{orig_h} -> {cw}x{ch}, tilt {board.angle_deg:.2f}°, "
            f"{len(detection.contacts)} contacts"
        )
        if not outcome.ok:
            return Partial(processed, outcome.reason)
        return Complete(processed)

    def recover_contacts(self, target: ProcessedImage, reference: ProcessedImage, dpi: float = None) -> bool:
        """
        Brute-force contact search on target using reference's contacts.

        The target is updated in place (image, transform, detection) when
        the search finds more contacts than edge detection did.

        Returns:
            True when the target's detection was replaced
        """
        template = ContactTemplate.from_result(reference.detection)
        if template is None:
            return False
        dpi = dpi or reference.detection.dpi
        params = DetectionParams.from_spec(self.spec, dpi or 0.0)
        search = BruteForceSearch(template, self.spec, log=self.log)
        outcome = search.search(target.image, params)
        found = outcome.value

        steps = found.rotation
        if steps and found.contacts:
            h, w = target.image.shape[:2]
            quarter = quarter_rotation_transform(steps, w, h)
            rotated = rotate_quarter(target.image, steps)
            outcome = search.search(rotated, params)
            found = outcome.value
        else:
            quarter, rotated = None, target.image

        current = len(target.detection.contacts) if target.detection else 0
        if len(found.contacts) <= current:
            self.log.info(f"Brute force found {len(found.contacts)} contacts, keeping {current}")
            return False

        if quarter is not None:
            target.image = rotated
            target.to_processed = quarter.compose(target.to_processed)
            target.metadata = target.metadata.model_copy(update={
                "rotation_steps": (target.metadata.rotation_steps + steps) % 360,
                "width": rotated.shape[1],
                "height": rotated.shape[0],
            })
        target.detection = found
        target.detection_reason = outcome.reason
        self.log.info(f"Brute force recovered {len(found.contacts)} contacts")
        return True

    # ============================================================
    # VIA DETECTION WITH PROFILE ESCALATION
    # ============================================================

    def quick_match_threshold(self, n_front: int, n_back: int, neighbors: int) -> int:
        """Correspondences a profile must reach before escalation stops."""
        reachable = min(n_front, n_back, 4 * neighbors)
        return max(settings.quick_match_min_count, int(reachable * settings.quick_match_min_fraction))

    def detect_vias(
        self,
        front: ProcessedImage,
        back: ProcessedImage,
        dpi: float,
        coarse: AffineTransform,
    ) -> List[ViaAttempt]:
        """
        Detect vias on both sides, relaxing the profile only as needed.

        Each profile's vias are quick-matched under the coarse transform;
        escalation stops at the first convincing profile.

        Returns:
            Attempts in the order tried
        """
        matcher = ViaCorrespondenceMatcher(dpi=dpi, log=self.log)
        radius = dense_radius(dpi)
        attempts = []
        for profile, params in profile_sequence():
            found_front, found_back = detect_both_sides(
                front.image, back.image, params.with_dpi(dpi), profile, log=self.log
            )
            attempt = ViaAttempt(
                profile=profile,
                front=reject_dense_vias(found_front.vias, radius),
                back=reject_dense_vias(found_back.vias, radius),
            )
            attempt.required = self.quick_match_threshold(
                len(attempt.front), len(attempt.back), matcher.neighbors
            )
            if attempt.front and attempt.back:
                quick = matcher.match(
                    [v.center for v in attempt.front],
                    coarse.apply_points([v.center for v in attempt.back]),
                )
                attempt.quick_matches = quick.via_pairs
            attempts.append(attempt)
            self.log.info(
                f"Vias ({profile.value}): front={len(attempt.front)}, back={len(attempt.back)}, "
                f"quick matches {attempt.quick_matches} (need {attempt.required})"
            )
            if attempt.convincing:
                break
        return attempts

    def contact_pairs(
        self,
        coarse: CoarseAligner,
        front: DetectionResult,
        back: DetectionResult,
    ) -> List[Tuple[Point2D, Point2D]]:
        """Inner-edge midpoints of matched contacts, as (front, back) pairs."""
        if len(front.contacts) < coarse.min_contacts or len(back.contacts) < coarse.min_contacts:
            return []
        x_offset = (
            np.mean([c.center.x for c in front.contacts]) - np.mean([c.center.x for c in back.contacts])
        )
        dpi = front.dpi or back.dpi or settings.default_dpi
        tolerance = max(settings.coarse_tolerance_in * dpi, settings.coarse_tolerance_min_px)
        pairs = coarse.match_by_x(front.contacts, back.contacts, float(x_offset), tolerance)
        # Contacts sit on the top edge, so the inner edge is the bottom of each box
        return [
            (Point2D(f.center.x, float(f.bounds.y2)), Point2D(b.center.x, float(b.bounds.y2)))
            for f, b in pairs
        ]

    # ============================================================
    # FULL PIPELINE
    # ============================================================

    def align(
        self,
        front_image: np.ndarray,
        back_image: np.ndarray,
        dpi: float = None,
        edge: Edge = None,
    ) -> Outcome[BoardAlignment]:
        """
        Align the back scan onto the front scan.

        Args:
            front_image: Raw BGR front scan
            back_image: Raw BGR back scan (as scanned, face down)
            dpi: Known scan resolution, or None to estimate from contacts
            edge: Connector edge on the raw scans, or None to detect it

        Returns:
            Complete(alignment) when a via-based registration succeeded;
            Partial(alignment, reason) carrying the best transform reached

        Raises:
            BoardAlignError: If either image is None or empty
        """
        front_out = self.process_side(front_image, Side.FRONT, dpi=dpi, edge=edge)
        back_out = self.process_side(back_image, Side.BACK, dpi=dpi, edge=edge)
        front, back = front_out.value, back_out.value

        if front.contacts_ok and not back.contacts_ok:
            self.recover_contacts(back, front, dpi)
        elif back.contacts_ok and not front.contacts_ok:
            self.recover_contacts(front, back, dpi)

        dpi = dpi or front.detection.dpi or back.detection.dpi or settings.default_dpi
        self.log.info(f"Working resolution: {dpi:.1f} DPI")
        reasons = []

        coarse_aligner = CoarseAligner(log=self.log)
        coarse_out = coarse_aligner.align(front.detection, back.detection)
        coarse = coarse_out.value
        transform = coarse.transform
        if not coarse_out.ok:
            reasons.append(coarse_out.reason)

        contact_out = align_by_contacts(front.detection, back.detection, log=self.log)

        attempts = self.detect_vias(front, back, dpi, transform)
        best = max(attempts, key=lambda a: a.quick_matches)
        if not best.convincing:
            reasons.append(
                f"quick match reached {best.quick_matches} of {best.required} under every profile"
            )

        pairs = self.contact_pairs(coarse_aligner, front.detection, back.detection)
        via_out = align_with_vias(
            best.front, best.back, dpi=dpi, initial=transform, contact_pairs=pairs, log=self.log
        )
        vias = via_out.value
        refinement = None
        if via_out.ok:
            transform = vias.transform
            refine_out = IterativeRefiner(dpi=dpi, log=self.log).refine(
                vias.front_vias, vias.back_vias, initial=transform
            )
            refinement = refine_out.value
            if refine_out.ok and refinement.avg_error <= vias.avg_error:
                transform = refinement.transform
            else:
                self.log.debug("Refinement did not improve on the RANSAC fit, keeping it")
        else:
            reasons.append(via_out.reason)
            if contact_out.ok:
                transform = contact_out.value.transform

        complete = via_out.ok and not reasons
        record = AlignmentRecord(
            complete=complete,
            reason="; ".join(reasons) if reasons else None,
            matrix=transform.matrix_2x3_list,
            rotation_deg=transform.rotation_deg,
            scale_x=transform.scale_x,
            scale_y=transform.scale_y,
            inliers=vias.inliers,
            matched=vias.matched_vias,
            total_front=vias.total_front,
            total_back=vias.total_back,
            avg_error_px=vias.avg_error,
            rms_error_px=vias.rms_error,
            via_profile=best.profile.value,
            refine_passes=refinement.passes if refinement else 0,
            front=front.metadata,
            back=back.metadata,
        )
        alignment = BoardAlignment(
            front=front,
            back=back,
            transform=transform,
            record=record,
            coarse=coarse,
            contact_alignment=contact_out.value,
            vias=vias,
            via_attempts=attempts,
            refinement=refinement,
        )
        self.log.info(
            f"Alignment {'complete' if complete else 'partial'}: rotation {transform.rotation_deg:.3f}°, "
            f"scale ({transform.scale_x:.5f}, {transform.scale_y:.5f}), {vias.matched_vias} vias"
        )
        if not complete:
            return Partial(alignment, record.reason)
        return Complete(alignment)

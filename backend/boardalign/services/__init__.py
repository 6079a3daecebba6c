"""
Detection and alignment services.
"""

from boardalign.services.results import BoardAlignError, Complete, Partial
from boardalign.services.geometry import AffineTransform, Point2D, RectInt
from boardalign.services.board_bounds import BoardBounds, BoardBoundsDetector
from boardalign.services.contacts import ContactDetector
from boardalign.services.contact_bruteforce import BruteForceSearch, ContactTemplate
from boardalign.services.robust_filter import RobustFilter
from boardalign.services.ransac import AffineEstimator
from boardalign.services.vias import Via, ViaProfile, detect_both_sides
from boardalign.services.via_matcher import ViaCorrespondenceMatcher
from boardalign.services.via_align import align_by_contacts, align_with_vias, match_vias_across_sides
from boardalign.services.refine import IterativeRefiner
from boardalign.services.coarse_align import CoarseAligner
from boardalign.services.pipeline import BoardAligner, ProcessedImage

__all__ = [
    "BoardAlignError",
    "Complete",
    "Partial",
    "AffineTransform",
    "Point2D",
    "RectInt",
    "BoardBounds",
    "BoardBoundsDetector",
    "ContactDetector",
    "BruteForceSearch",
    "ContactTemplate",
    "RobustFilter",
    "AffineEstimator",
    "Via",
    "ViaProfile",
    "detect_both_sides",
    "ViaCorrespondenceMatcher",
    "align_by_contacts",
    "align_with_vias",
    "match_vias_across_sides",
    "IterativeRefiner",
    "CoarseAligner",
    "BoardAligner",
    "ProcessedImage",
]

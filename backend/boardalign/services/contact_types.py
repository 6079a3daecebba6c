"""
Edge-connector contact types.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

from boardalign.models.board import ContactSpec, Edge, HSVRange
from boardalign.services.geometry import Point2D, RectInt


class ContactPass(str, Enum):
    """Which detection pass produced a contact."""
    SEED = "seed"                  # Colour-mask blob on the searched edge
    BRUTE_FORCE = "brute_force"    # Full-image template search
    RESCUE = "rescue"              # Filled in from the fitted grid


@dataclass(frozen=True)
class Contact:
    """A single gold contact."""
    bounds: RectInt
    center: Point2D                # Sub-pixel, from image moments
    detection_pass: ContactPass = ContactPass.SEED

    def along(self, horizontal: bool = True) -> float:
        """Centre coordinate along the contact row."""
        return self.center.x if horizontal else self.center.y

    def across(self, horizontal: bool = True) -> float:
        """Centre coordinate perpendicular to the row (the line coordinate)."""
        return self.center.y if horizontal else self.center.x

    def size_along(self, horizontal: bool = True) -> int:
        return self.bounds.width if horizontal else self.bounds.height

    def size_across(self, horizontal: bool = True) -> int:
        return self.bounds.height if horizontal else self.bounds.width

    def to_dict(self) -> dict:
        return {
            "bounds": self.bounds.to_dict(),
            "center": {"x": round(self.center.x, 3), "y": round(self.center.y, 3)},
            "pass": self.detection_pass.value,
        }


@dataclass(frozen=True)
class ContactLineParams:
    """
    Fitted contact row.

    Sizes are measured along the row (width) and across it (height), so the
    same record describes horizontal and vertical rows.
    """
    line_pos: float        # Y for horizontal rows, X for vertical rows
    pitch: float           # Centre-to-centre spacing (px)
    start_pos: float       # Along-row position of the run's first contact
    avg_width: float
    avg_height: float
    count: int             # Expected number of contacts
    horizontal: bool = True


@dataclass(frozen=True)
class DetectionParams:
    """Colour and blob filters for one detection run."""
    color: HSVRange
    aspect_min: float      # height / width for contacts on a horizontal row
    aspect_max: float
    min_area: int
    max_area: int
    dpi: float = 0.0

    @classmethod
    def from_spec(cls, spec: ContactSpec, dpi: float = 0.0) -> "DetectionParams":
        """
        Build filters from a contact specification.

        With a known DPI the area and aspect bounds are derived from the
        physical contact size instead of the nominal pixel ranges.
        """
        det = spec.detection_or_default()
        if dpi and dpi > 0 and spec.width_in > 0 and spec.height_in > 0:
            w = spec.width_in * dpi
            h = spec.height_in * dpi
            aspect = h / w
            return cls(
                color=det.color,
                aspect_min=aspect * 0.5,
                aspect_max=aspect * 1.5,
                min_area=int(w * h * 0.4),
                max_area=int(w * h * 1.8),
                dpi=dpi,
            )
        return cls(
            color=det.color,
            aspect_min=det.aspect_ratio_min,
            aspect_max=det.aspect_ratio_max,
            min_area=det.min_area_px,
            max_area=det.max_area_px,
            dpi=dpi or 0.0,
        )


@dataclass(frozen=True)
class DetectionResult:
    """Outcome of one contact detection call."""
    contacts: List[Contact] = field(default_factory=list)
    expected_positions: List[RectInt] = field(default_factory=list)
    edge: Optional[Edge] = None
    rotation: int = 0                  # Clockwise degrees to bring contacts to the top
    board_bounds: Optional[RectInt] = None
    search_bounds: Optional[RectInt] = None
    dpi: float = 0.0
    contact_angle: float = 0.0         # Fitted line angle (degrees)
    line: Optional[ContactLineParams] = None

    @property
    def horizontal(self) -> bool:
        return self.edge is None or not self.edge.is_vertical

    def centers(self) -> List[Point2D]:
        return [c.center for c in self.contacts]

    def to_dict(self) -> dict:
        return {
            "contacts": [c.to_dict() for c in self.contacts],
            "expected_positions": [r.to_dict() for r in self.expected_positions],
            "edge": self.edge.value if self.edge else None,
            "rotation": self.rotation,
            "board_bounds": self.board_bounds.to_dict() if self.board_bounds else None,
            "search_bounds": self.search_bounds.to_dict() if self.search_bounds else None,
            "dpi": round(self.dpi, 2),
            "contact_angle": round(self.contact_angle, 4),
        }

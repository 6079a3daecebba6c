"""
Board contact specification models.

These describe a board's edge connector in physical units. They are
supplied by the host application; nothing in the pipeline computes them.
"""

from enum import Enum
from typing import Optional
from pydantic import BaseModel, Field

from boardalign.config import settings


class Edge(str, Enum):
    """Board edge carrying the contacts."""
    TOP = "top"
    BOTTOM = "bottom"
    LEFT = "left"
    RIGHT = "right"
    
    @property
    def is_vertical(self) -> bool:
        return self in (Edge.LEFT, Edge.RIGHT)
    
    @property
    def rotation_to_top(self) -> int:
        """Clockwise rotation (degrees) that brings this edge to the top."""
        return {Edge.TOP: 0, Edge.BOTTOM: 180, Edge.LEFT: 90, Edge.RIGHT: 270}[self]


class HSVRange(BaseModel):
    """Colour range in OpenCV HSV space (hue 0-180)."""
    hue_min: float = 15
    hue_max: float = 35
    sat_min: float = 80
    sat_max: float = 255
    val_min: float = 120
    val_max: float = 255


class ContactDetectionSpec(BaseModel):
    """Blob filters for contact detection at the nominal resolution."""
    color: HSVRange = Field(default_factory=HSVRange)
    aspect_ratio_min: float = Field(4.0, description="Minimum height/width ratio")
    aspect_ratio_max: float = Field(8.0, description="Maximum height/width ratio")
    min_area_px: int = 2000
    max_area_px: int = 20000


class ContactSpec(BaseModel):
    """Edge connector geometry in inches."""
    edge: Edge = Edge.TOP
    count: int = Field(default_factory=lambda: settings.contact_count)
    pitch_in: float = Field(default_factory=lambda: settings.contact_pitch_in)
    width_in: float = Field(default_factory=lambda: settings.contact_width_in)
    height_in: float = Field(default_factory=lambda: settings.contact_height_in)
    margin_in: float = Field(0.0, description="Board edge to first contact centre")
    detection: Optional[ContactDetectionSpec] = None
    
    def detection_or_default(self) -> ContactDetectionSpec:
        return self.detection or ContactDetectionSpec()

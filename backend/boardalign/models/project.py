"""
Records persisted as part of project state.
"""

from typing import List, Optional
from pydantic import BaseModel, Field


class CropBox(BaseModel):
    """Axis-aligned crop rectangle in pixels."""
    x: int
    y: int
    width: int
    height: int


class ProcessedImageMetadata(BaseModel):
    """How a raw scan was turned into the working raster."""
    original_width: int
    original_height: int
    flipped: bool = Field(False, description="Mirrored horizontally before processing")
    rotation_deg: float = Field(0.0, description="Fine rotation applied about the board centre")
    rotation_steps: int = Field(0, description="Additional clockwise 90° rotation (0/90/180/270)")
    crop: Optional[CropBox] = None
    width: int
    height: int
    dpi: float = 0.0
    contact_edge: Optional[str] = None


class AlignmentRecord(BaseModel):
    """Serializable summary of a front/back registration."""
    complete: bool
    reason: Optional[str] = None
    matrix: List[List[float]] = Field(description="2x3 affine matrix mapping back -> front")
    rotation_deg: float
    scale_x: float
    scale_y: float
    inliers: int = 0
    matched: int = 0
    total_front: int = 0
    total_back: int = 0
    avg_error_px: float = 0.0
    rms_error_px: float = 0.0
    via_profile: Optional[str] = None
    refine_passes: int = 0
    front: Optional[ProcessedImageMetadata] = None
    back: Optional[ProcessedImageMetadata] = None

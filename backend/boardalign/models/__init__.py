"""
Pydantic models for board specifications and persisted state.
"""

from boardalign.models.board import Edge, HSVRange, ContactDetectionSpec, ContactSpec
from boardalign.models.project import CropBox, ProcessedImageMetadata, AlignmentRecord

__all__ = [
    "Edge",
    "HSVRange",
    "ContactDetectionSpec",
    "ContactSpec",
    "CropBox",
    "ProcessedImageMetadata",
    "AlignmentRecord",
]

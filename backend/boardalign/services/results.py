"""
Result and error types shared by every pipeline stage.

Detectors return either Complete(value) or Partial(value, reason). A
Partial still carries everything that was computed; only systemic input
problems raise BoardAlignError.
"""

from dataclasses import dataclass
from typing import Generic, Optional, TypeVar, Union

import numpy as np

T = TypeVar("T")


@dataclass(frozen=True)
class Complete(Generic[T]):
    """A result that met every viability threshold."""
    value: T

    @property
    def ok(self) -> bool:
        return True

    @property
    def reason(self) -> Optional[str]:
        return None


@dataclass(frozen=True)
class Partial(Generic[T]):
    """A best-effort result plus the reason it falls short."""
    value: T
    reason: str

    @property
    def ok(self) -> bool:
        return False


Outcome = Union[Complete[T], Partial[T]]


class BoardAlignError(Exception):
    """Hard error: the input makes any partial result meaningless."""
    def __init__(self, code: str, message: str, details: dict = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)


def require_image(image: np.ndarray, name: str = "image", channels: int = 3) -> np.ndarray:
    """
    Validate an image buffer.

    Raises:
        BoardAlignError: If the image is None, empty or has the wrong shape
    """
    if image is None:
        raise BoardAlignError("INVALID_IMAGE", f"{name} is None")
    if not isinstance(image, np.ndarray) or image.size == 0:
        raise BoardAlignError("INVALID_IMAGE", f"{name} is empty")
    if channels == 3 and (image.ndim != 3 or image.shape[2] != 3):
        raise BoardAlignError(
            "INVALID_IMAGE",
            f"{name} must be a 3-channel BGR image",
            {"shape": list(image.shape)},
        )
    if channels == 1 and image.ndim != 2:
        raise BoardAlignError(
            "INVALID_IMAGE",
            f"{name} must be a single-channel image",
            {"shape": list(image.shape)},
        )
    return image

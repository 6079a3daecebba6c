"""
Core geometry types and math utilities.

Provides the point, rectangle and affine transform value types used
throughout the alignment pipeline.

COORDINATE FRAME NOTES:
- Image coordinates: x grows right, y grows down, origin at top-left
- Alignment transforms map back-image points into the front-image frame:
    p_front = A @ p_back + t
"""

import math
from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence, Tuple

import numpy as np


@dataclass(frozen=True)
class Point2D:
    """A 2D point."""
    x: float
    y: float

    def to_array(self) -> np.ndarray:
        return np.array([self.x, self.y])

    def distance_to(self, other: "Point2D") -> float:
        return math.hypot(self.x - other.x, self.y - other.y)

    @classmethod
    def from_dict(cls, d: dict) -> "Point2D":
        return cls(x=float(d["x"]), y=float(d["y"]))


def points_to_array(points: Iterable[Point2D]) -> np.ndarray:
    """Stack points into an (N, 2) float64 array."""
    arr = np.array([[p.x, p.y] for p in points], dtype=np.float64)
    return arr.reshape(-1, 2)


@dataclass(frozen=True)
class RectInt:
    """Axis-aligned integer rectangle."""
    x: int
    y: int
    width: int
    height: int

    @property
    def x2(self) -> int:
        return self.x + self.width

    @property
    def y2(self) -> int:
        return self.y + self.height

    @property
    def center(self) -> Point2D:
        return Point2D(self.x + self.width / 2.0, self.y + self.height / 2.0)

    @property
    def area(self) -> int:
        return self.width * self.height

    def to_dict(self) -> dict:
        return {"x": self.x, "y": self.y, "width": self.width, "height": self.height}

    def clamp(self, img_w: int, img_h: int) -> "RectInt":
        """Clip to an image of the given size."""
        x1 = max(0, min(self.x, img_w))
        y1 = max(0, min(self.y, img_h))
        x2 = max(x1, min(self.x2, img_w))
        y2 = max(y1, min(self.y2, img_h))
        return RectInt.from_xyxy(x1, y1, x2, y2)

    @classmethod
    def from_xyxy(cls, x1: int, y1: int, x2: int, y2: int) -> "RectInt":
        """Create from top-left and bottom-right corners."""
        return cls(x=int(x1), y=int(y1), width=int(x2 - x1), height=int(y2 - y1))


@dataclass(frozen=True)
class AffineTransform:
    """
    A general 2D affine transform.

    The 2x3 matrix is:
        [[a, b, tx],
         [c, d, ty]]

    Instances are immutable; every operation returns a new transform.
    """
    a: float = 1.0
    b: float = 0.0
    tx: float = 0.0
    c: float = 0.0
    d: float = 1.0
    ty: float = 0.0

    # ============================================================
    # CONSTRUCTORS
    # ============================================================

    @classmethod
    def identity(cls) -> "AffineTransform":
        return cls()

    @classmethod
    def translation(cls, tx: float, ty: float) -> "AffineTransform":
        return cls(tx=float(tx), ty=float(ty))

    @classmethod
    def rotation(cls, radians: float) -> "AffineTransform":
        """Rotation about the origin."""
        cos_t = math.cos(radians)
        sin_t = math.sin(radians)
        return cls(a=cos_t, b=-sin_t, c=sin_t, d=cos_t)

    @classmethod
    def scale(cls, sx: float, sy: float) -> "AffineTransform":
        return cls(a=float(sx), d=float(sy))

    @classmethod
    def from_matrix(cls, m) -> "AffineTransform":
        """Create from a 2x3 (or 3x3) matrix-like object."""
        m = np.asarray(m, dtype=np.float64)
        return cls(
            a=float(m[0, 0]), b=float(m[0, 1]), tx=float(m[0, 2]),
            c=float(m[1, 0]), d=float(m[1, 1]), ty=float(m[1, 2]),
        )

    # ============================================================
    # MATRIX VIEWS
    # ============================================================

    @property
    def matrix_2x3(self) -> np.ndarray:
        """Get the 2x3 affine transformation matrix."""
        return np.array([
            [self.a, self.b, self.tx],
            [self.c, self.d, self.ty],
        ], dtype=np.float64)

    @property
    def matrix_2x3_list(self) -> List[List[float]]:
        """Get the 2x3 matrix as a nested list for JSON serialization."""
        return [[self.a, self.b, self.tx], [self.c, self.d, self.ty]]

    @property
    def determinant(self) -> float:
        return self.a * self.d - self.b * self.c

    @property
    def rotation_rad(self) -> float:
        """Rotation angle of the linear part (angle of the mapped x axis)."""
        return math.atan2(self.c, self.a)

    @property
    def rotation_deg(self) -> float:
        return math.degrees(self.rotation_rad)

    @property
    def scale_x(self) -> float:
        return math.hypot(self.a, self.c)

    @property
    def scale_y(self) -> float:
        return math.hypot(self.b, self.d)

    # ============================================================
    # OPERATIONS
    # ============================================================

    def compose(self, other: "AffineTransform") -> "AffineTransform":
        """Return self ∘ other (other is applied first)."""
        return AffineTransform(
            a=self.a * other.a + self.b * other.c,
            b=self.a * other.b + self.b * other.d,
            tx=self.a * other.tx + self.b * other.ty + self.tx,
            c=self.c * other.a + self.d * other.c,
            d=self.c * other.b + self.d * other.d,
            ty=self.c * other.tx + self.d * other.ty + self.ty,
        )

    def invert(self) -> Optional["AffineTransform"]:
        """Return the inverse transform, or None if singular."""
        det = self.determinant
        if abs(det) < 1e-10:
            return None
        inv = 1.0 / det
        return AffineTransform(
            a=self.d * inv,
            b=-self.b * inv,
            tx=(self.b * self.ty - self.d * self.tx) * inv,
            c=-self.c * inv,
            d=self.a * inv,
            ty=(self.c * self.tx - self.a * self.ty) * inv,
        )

    def apply(self, p: Point2D) -> Point2D:
        """Apply this transform to a point."""
        return Point2D(
            x=self.a * p.x + self.b * p.y + self.tx,
            y=self.c * p.x + self.d * p.y + self.ty,
        )

    def apply_array(self, pts: np.ndarray) -> np.ndarray:
        """Apply to an (N, 2) array of points."""
        pts = np.asarray(pts, dtype=np.float64).reshape(-1, 2)
        m = self.matrix_2x3
        return pts @ m[:, :2].T + m[:, 2]

    def apply_points(self, points: Sequence[Point2D]) -> List[Point2D]:
        return [self.apply(p) for p in points]

    def almost_equal(self, other: "AffineTransform", tol: float = 1e-9) -> bool:
        return bool(np.allclose(self.matrix_2x3, other.matrix_2x3, atol=tol))

    def to_params_dict(self) -> dict:
        """Get transform parameters as a dictionary."""
        return {
            "rotation_deg": round(self.rotation_deg, 4),
            "scale_x": round(self.scale_x, 6),
            "scale_y": round(self.scale_y, 6),
            "tx": round(self.tx, 4),
            "ty": round(self.ty, 4),
        }


def rotation_about(angle_deg: float, cx: float, cy: float) -> AffineTransform:
    """Rotation by angle_deg (counter-clockwise in math axes) about (cx, cy)."""
    return (
        AffineTransform.translation(cx, cy)
        .compose(AffineTransform.rotation(math.radians(angle_deg)))
        .compose(AffineTransform.translation(-cx, -cy))
    )


def fit_line(xs: np.ndarray, ys: np.ndarray) -> Tuple[float, float]:
    """
    Least-squares fit y = slope * x + intercept.

    Returns (0, mean(y)) when the x values are degenerate.
    """
    xs = np.asarray(xs, dtype=np.float64)
    ys = np.asarray(ys, dtype=np.float64)
    n = len(xs)
    if n == 0:
        return 0.0, 0.0
    sum_x = xs.sum()
    sum_y = ys.sum()
    denom = n * float(np.dot(xs, xs)) - sum_x * sum_x
    if abs(denom) < 1e-3:
        return 0.0, float(sum_y / n)
    slope = (n * float(np.dot(xs, ys)) - sum_x * sum_y) / denom
    intercept = (sum_y - slope * sum_x) / n
    return float(slope), float(intercept)

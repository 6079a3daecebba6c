"""
Shared synthetic scan builders.

Boards are drawn the way a flatbed scan looks: a dark background, a green
board, a row of gold contacts along one edge and scattered bright vias.
"""

import math

import cv2
import numpy as np

BACKGROUND = (25, 25, 25)
BOARD_GREEN = (30, 100, 30)
GOLD = (40, 180, 220)          # BGR, inside the default contact HSV range
TARNISHED = (20, 80, 110)      # Too dark for the contact mask
VIA_GREY = (235, 235, 235)


def draw_contact_row(
    image: np.ndarray,
    origin: tuple,
    count: int,
    pitch: float,
    width: int,
    height: int,
    vertical: bool = False,
    missing: tuple = (),
) -> list:
    """
    Draw a row of contacts and return their true centres.

    Missing indices are drawn tarnished so the colour mask skips them.
    """
    x0, y0 = origin
    centers = []
    for i in range(count):
        offset = int(round(i * pitch))
        color = TARNISHED if i in missing else GOLD
        if vertical:
            x1, y1 = x0, y0 + offset
            x2, y2 = x0 + height - 1, y0 + offset + width - 1
        else:
            x1, y1 = x0 + offset, y0
            x2, y2 = x0 + offset + width - 1, y0 + height - 1
        cv2.rectangle(image, (x1, y1), (x2, y2), color, -1)
        centers.append(((x1 + x2) / 2.0, (y1 + y2) / 2.0))
    return centers


def scatter_vias(
    image: np.ndarray,
    region: tuple,
    count: int,
    radius: int,
    min_spacing: float,
    seed: int = 7,
    color: tuple = VIA_GREY,
) -> list:
    """Draw vias at random, well separated positions inside region (x1, y1, x2, y2)."""
    rng = np.random.default_rng(seed)
    x1, y1, x2, y2 = region
    placed = []
    attempts = 0
    while len(placed) < count and attempts < count * 200:
        attempts += 1
        x = int(rng.integers(x1 + radius * 3, x2 - radius * 3))
        y = int(rng.integers(y1 + radius * 3, y2 - radius * 3))
        if all(math.hypot(x - px, y - py) >= min_spacing for px, py in placed):
            placed.append((x, y))
    for x, y in placed:
        cv2.circle(image, (x, y), radius, color, -1)
    return placed


def make_board(
    width: int = 1700,
    height: int = 1000,
    board: tuple = (100, 150, 1500, 700),
    dpi: float = 200.0,
    contacts: int = 50,
    missing: tuple = (),
    vias: int = 0,
    via_radius: int = 5,
) -> dict:
    """
    Synthetic front scan with contacts along the top edge of the board.

    Returns a dict with the image and the ground truth used to draw it.
    """
    image = np.full((height, width, 3), BACKGROUND, dtype=np.uint8)
    bx, by, bw, bh = board
    cv2.rectangle(image, (bx, by), (bx + bw - 1, by + bh - 1), BOARD_GREEN, -1)

    pitch = 0.125 * dpi
    c_w = int(round(0.0625 * dpi))
    c_h = int(round(0.3 * dpi))
    row_width = (contacts - 1) * pitch + c_w
    x0 = bx + int((bw - row_width) / 2)
    centers = draw_contact_row(image, (x0, by), contacts, pitch, c_w, c_h, missing=missing)

    via_centers = []
    if vias:
        region = (bx + 20, by + c_h + 40, bx + bw - 20, by + bh - 20)
        via_centers = scatter_vias(image, region, vias, via_radius, min_spacing=via_radius * 12)

    return {
        "image": image,
        "board": board,
        "pitch": pitch,
        "contact_size": (c_w, c_h),
        "contact_centers": centers,
        "via_centers": via_centers,
        "dpi": dpi,
    }


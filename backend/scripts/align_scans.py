#!/usr/bin/env python3
"""
Align a back-side PCB scan onto its front-side scan.

Usage:
    python scripts/align_scans.py <front> <back> [--dpi DPI] [--edge EDGE]
        [--contacts N] [--pitch IN] [--width IN] [--output PATH] [--json] [--debug]

Examples:
    # Align with a known scan resolution and save the warped back side
    python scripts/align_scans.py front.png back.png --dpi 600 --output back_aligned.png

    # Board with 62 contacts on a 0.156" pitch, machine-readable result
    python scripts/align_scans.py front.png back.png --contacts 62 --pitch 0.156 --json
"""

import argparse
import json
import logging
import sys
from pathlib import Path

import cv2

# Add parent directory to path to import boardalign modules
sys.path.insert(0, str(Path(__file__).parent.parent))

from boardalign import configure_logging
from boardalign.config import settings
from boardalign.models.board import ContactSpec, Edge
from boardalign.services.pipeline import BoardAligner
from boardalign.services.results import BoardAlignError


def load_image(path: Path):
    """Read a scan, exiting with an error message if it cannot be decoded."""
    if not path.is_file():
        print(f"Error: File not found: {path}", file=sys.stderr)
        sys.exit(1)
    image = cv2.imread(str(path), cv2.IMREAD_COLOR)
    if image is None:
        print(f"Error: Could not decode image: {path}", file=sys.stderr)
        sys.exit(1)
    return image


def print_summary(record) -> None:
    """Human-readable alignment summary."""
    status = "✓ Alignment complete" if record.complete else "⚠ Alignment partial"
    print(status)
    if record.reason:
        print(f"  Reason: {record.reason}")
    print(f"  Rotation: {record.rotation_deg:.4f}°")
    print(f"  Scale: {record.scale_x:.6f} x {record.scale_y:.6f}")
    print(f"  Matrix: {record.matrix}")
    print(f"  Vias: {record.matched} matched ({record.total_front} front, {record.total_back} back)")
    print(f"  Error: avg {record.avg_error_px:.2f} px, rms {record.rms_error_px:.2f} px")
    if record.via_profile:
        print(f"  Via profile: {record.via_profile}")


def main():
    parser = argparse.ArgumentParser(
        description="Align front and back PCB scans",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("front", type=Path, help="Front-side scan")
    parser.add_argument("back", type=Path, help="Back-side scan (as scanned, face down)")
    parser.add_argument("--dpi", type=float, help="Scan resolution (estimated from contacts if omitted)")
    parser.add_argument(
        "--edge",
        choices=[e.value for e in Edge],
        help="Board edge carrying the contacts (detected if omitted)",
    )
    parser.add_argument("--contacts", type=int, default=settings.contact_count, help="Number of contacts")
    parser.add_argument("--pitch", type=float, default=settings.contact_pitch_in, help="Contact pitch (inches)")
    parser.add_argument("--width", type=float, default=settings.contact_width_in, help="Contact width (inches)")
    parser.add_argument("--output", type=Path, help="Write the back scan warped into the front frame")
    parser.add_argument("--json", action="store_true", help="Print the alignment record as JSON")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")

    args = parser.parse_args()

    configure_logging("DEBUG" if args.debug else None)
    log = logging.getLogger("boardalign.cli")

    front = load_image(args.front)
    back = load_image(args.back)

    edge = Edge(args.edge) if args.edge else None
    spec = ContactSpec(count=args.contacts, pitch_in=args.pitch, width_in=args.width)
    aligner = BoardAligner(spec=spec, log=log)

    try:
        outcome = aligner.align(front, back, dpi=args.dpi, edge=edge)
    except BoardAlignError as e:
        print(f"Error [{e.code}]: {e.message}", file=sys.stderr)
        sys.exit(1)

    alignment = outcome.value
    if args.output:
        if not cv2.imwrite(str(args.output), alignment.warp_back()):
            print(f"Error: Could not write {args.output}", file=sys.stderr)
            sys.exit(1)

    if args.json:
        print(json.dumps(alignment.record.model_dump(), indent=2))
    else:
        print_summary(alignment.record)
        if args.output:
            print(f"  Output: {args.output}")

    sys.exit(0 if outcome.ok else 2)


if __name__ == "__main__":
    main()

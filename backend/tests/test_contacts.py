"""
Tests for edge contact detection, grid rescue and brute-force search.
"""

import cv2
import numpy as np
import pytest

from boardalign.models.board import ContactSpec, Edge
from boardalign.services.contact_bruteforce import BruteForceSearch, ContactTemplate
from boardalign.services.contact_grid import contact_line_angle, estimate_dpi, fit_grid
from boardalign.services.contact_types import Contact, ContactPass, DetectionParams, DetectionResult
from boardalign.services.contacts import ContactDetector
from boardalign.services.geometry import Point2D, RectInt
from boardalign.services.results import BoardAlignError

from synthetic import BACKGROUND, BOARD_GREEN, draw_contact_row


def row_of_contacts(count: int, pitch: float, y: float = 100.0, width: int = 12, height: int = 60):
    contacts = []
    for i in range(count):
        x = 50 + i * pitch
        rect = RectInt(int(round(x - width / 2)), int(round(y - height / 2)), width, height)
        contacts.append(Contact(bounds=rect, center=Point2D(x, y)))
    return contacts


def tilt(image: np.ndarray, angle_deg: float) -> np.ndarray:
    """Rotate a scan about its centre (positive is counter-clockwise on screen)."""
    h, w = image.shape[:2]
    m = cv2.getRotationMatrix2D((w / 2.0, h / 2.0), angle_deg, 1.0)
    return cv2.warpAffine(image, m, (w, h), flags=cv2.INTER_LINEAR, borderValue=BACKGROUND)


class TestFitGrid:
    """Tests for pitch estimation and run fitting."""

    def test_regular_row(self):
        run, line = fit_grid(row_of_contacts(20, 25.0), ContactSpec(count=20), dpi=200)
        assert len(run) == 20
        assert line.pitch == pytest.approx(25.0)
        assert line.line_pos == pytest.approx(100.0)

    def test_gaps_do_not_break_the_run(self):
        contacts = [c for i, c in enumerate(row_of_contacts(30, 25.0)) if i not in (4, 17)]
        run, line = fit_grid(contacts, ContactSpec(count=30))
        assert len(run) == 28
        assert line.pitch == pytest.approx(25.0)

    def test_stray_blob_is_excluded(self):
        contacts = row_of_contacts(20, 25.0)
        contacts.append(Contact(bounds=RectInt(231, 70, 12, 60), center=Point2D(237.5, 100.0)))
        contacts.sort(key=lambda c: c.center.x)
        run, _ = fit_grid(contacts, ContactSpec(count=20))
        assert len(run) == 20
        assert all(c.center.x != 237.5 for c in run)

    def test_sparse_row_uses_dpi_pitch(self):
        """Two candidates are enough for line params when the DPI is known."""
        run, line = fit_grid(row_of_contacts(3, 75.0), ContactSpec(), dpi=200)
        assert len(run) == 3
        assert line.pitch == pytest.approx(25.0)

    def test_single_candidate_has_no_line(self):
        run, line = fit_grid(row_of_contacts(1, 25.0), ContactSpec())
        assert len(run) == 1
        assert line is None


class TestLineMeasurements:
    """Tests for line angle and DPI estimation."""

    def test_estimate_dpi(self):
        assert estimate_dpi(row_of_contacts(20, 75.0), 0.125) == pytest.approx(600.0)

    def test_estimate_dpi_needs_ten_contacts(self):
        assert estimate_dpi(row_of_contacts(9, 75.0), 0.125) == 0.0

    def test_line_angle(self):
        contacts = []
        for i in range(10):
            x, y = 100.0 + i * 25.0, 100.0 + i * 25.0 * np.tan(np.radians(1.0))
            contacts.append(Contact(bounds=RectInt(int(x) - 6, int(y) - 30, 12, 60), center=Point2D(x, y)))
        assert contact_line_angle(contacts) == pytest.approx(1.0, abs=1e-6)
        assert contact_line_angle(contacts[:1]) == 0.0


class TestContactDetector:
    """Tests for ContactDetector on synthetic scans."""

    def test_detects_full_row(self, board_scan):
        scan = board_scan()
        outcome = ContactDetector().detect(scan["image"], dpi=scan["dpi"])
        assert outcome.ok, outcome.reason
        result = outcome.value
        assert len(result.contacts) == 50
        assert result.edge == Edge.TOP
        assert result.rotation == 0
        assert abs(result.contact_angle) < 0.1

        found = sorted(c.center.x for c in result.contacts)
        truth = sorted(x for x, _ in scan["contact_centers"])
        assert np.allclose(found, truth, atol=1.0)

    def test_tilted_row_reports_seed_angle(self, board_scan):
        """The row angle is measured on the seeds, before rescue straightens the row."""
        scan = board_scan()
        outcome = ContactDetector().detect(tilt(scan["image"], 1.0), dpi=scan["dpi"], edge=Edge.TOP)
        assert outcome.ok, outcome.reason
        # Counter-clockwise lifts the right-hand end, so Y falls as X grows
        assert outcome.value.contact_angle == pytest.approx(-1.0, abs=0.3)

    def test_missing_contacts_are_rescued(self, board_scan):
        """Tarnished contacts fall out of the colour mask and come back from the grid."""
        scan = board_scan(missing=(5, 20, 33))
        outcome = ContactDetector().detect(scan["image"], dpi=scan["dpi"])
        assert outcome.ok, outcome.reason
        contacts = outcome.value.contacts
        assert len(contacts) == 50
        rescued = [c for c in contacts if c.detection_pass == ContactPass.RESCUE]
        assert len(rescued) == 3

        ys = [c.center.y for c in contacts]
        assert max(ys) - min(ys) < 0.5

        truth = [scan["contact_centers"][i][0] for i in (5, 20, 33)]
        assert np.allclose(sorted(c.center.x for c in rescued), truth, atol=1.0)

    def test_estimates_dpi_when_unknown(self, board_scan):
        scan = board_scan()
        outcome = ContactDetector().detect(scan["image"])
        assert outcome.ok, outcome.reason
        assert outcome.value.dpi == pytest.approx(200.0, rel=0.02)

    def test_vertical_left_edge(self):
        image = np.full((1900, 1200, 3), BACKGROUND, dtype=np.uint8)
        cv2.rectangle(image, (200, 200), (999, 1699), BOARD_GREEN, -1)
        draw_contact_row(image, (200, 331), 50, 25.0, 12, 60, vertical=True)

        outcome = ContactDetector().detect(image, dpi=200, edges=(Edge.LEFT, Edge.RIGHT))
        assert outcome.ok, outcome.reason
        result = outcome.value
        assert result.edge == Edge.LEFT
        assert result.rotation == 90
        assert not result.horizontal
        xs = [c.center.x for c in result.contacts]
        assert max(xs) - min(xs) < 0.5

    def test_no_contacts_is_partial(self):
        image = np.full((1000, 1700, 3), BACKGROUND, dtype=np.uint8)
        cv2.rectangle(image, (100, 150), (1599, 849), BOARD_GREEN, -1)
        outcome = ContactDetector().detect(image, dpi=200)
        assert not outcome.ok
        assert "need 50" in outcome.reason

    def test_small_spec_count(self, board_scan):
        """A spec with fewer contacts than the board keeps exactly spec.count."""
        scan = board_scan(contacts=20)
        outcome = ContactDetector(spec=ContactSpec(count=20)).detect(scan["image"], dpi=scan["dpi"])
        assert outcome.ok, outcome.reason
        assert len(outcome.value.contacts) == 20

    def test_none_image_raises(self):
        with pytest.raises(BoardAlignError):
            ContactDetector().detect(None)


class TestBruteForceSearch:
    """Tests for template-driven whole-image search."""

    def test_template_needs_five_contacts(self):
        result = DetectionResult(contacts=row_of_contacts(4, 25.0), edge=Edge.TOP)
        assert ContactTemplate.from_result(result) is None
        assert ContactTemplate.from_result(None) is None

    def test_template_envelope(self):
        template = ContactTemplate.from_result(DetectionResult(contacts=row_of_contacts(10, 25.0), edge=Edge.TOP))
        assert template.matches(12, 60)
        assert not template.matches(30, 60)
        assert not template.matches(12, 20)

    def test_missing_template_raises(self):
        with pytest.raises(BoardAlignError) as exc:
            BruteForceSearch(None)
        assert exc.value.code == "INVALID_TEMPLATE"

    def test_finds_row_on_flipped_scan(self, board_scan):
        """Contacts at the bottom of the image are reported on the bottom edge."""
        scan = board_scan()
        reference = ContactDetector().detect(scan["image"], dpi=scan["dpi"])
        template = ContactTemplate.from_result(reference.value)

        flipped = cv2.flip(scan["image"], 0)
        params = DetectionParams.from_spec(ContactSpec(), scan["dpi"])
        outcome = BruteForceSearch(template).search(flipped, params)
        assert outcome.ok, outcome.reason
        result = outcome.value
        assert len(result.contacts) == 50
        assert result.edge == Edge.BOTTOM
        assert result.rotation == 180
        assert all(c.detection_pass == ContactPass.BRUTE_FORCE for c in result.contacts)

    def test_tilted_scan_keeps_row_angle(self, board_scan):
        scan = board_scan()
        reference = ContactDetector().detect(scan["image"], dpi=scan["dpi"])
        template = ContactTemplate.from_result(reference.value)

        params = DetectionParams.from_spec(ContactSpec(), scan["dpi"])
        outcome = BruteForceSearch(template).search(tilt(scan["image"], -1.0), params)
        assert len(outcome.value.contacts) >= 40
        assert outcome.value.contact_angle == pytest.approx(1.0, abs=0.3)

    def test_empty_image_is_partial(self):
        template = ContactTemplate.from_result(DetectionResult(contacts=row_of_contacts(10, 25.0), edge=Edge.TOP))
        image = np.full((400, 600, 3), BACKGROUND, dtype=np.uint8)
        outcome = BruteForceSearch(template).search(image)
        assert not outcome.ok
        assert "only found 0 candidates" in outcome.reason

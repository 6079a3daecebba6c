"""
Tests for contact outlier removal and width normalization.
"""

import pytest

from boardalign.services.contact_types import Contact
from boardalign.services.geometry import Point2D, RectInt
from boardalign.services.robust_filter import RobustFilter


def contact(x1: int, width: int = 20, y: float = 100.0, height: int = 80) -> Contact:
    rect = RectInt(x1, int(y - height / 2), width, height)
    return Contact(bounds=rect, center=Point2D(x1 + width / 2.0, y))


def regular_row(count: int, pitch: int = 40) -> list:
    return [contact(100 + i * pitch) for i in range(count)]


class TestRemoveOutliers:
    """Tests for RobustFilter.remove_outliers."""

    def test_clean_row_is_untouched(self):
        row = regular_row(20)
        assert RobustFilter().remove_outliers(row) == row

    def test_removes_off_line_contact(self):
        row = regular_row(20)
        row[8] = contact(100 + 8 * 40, y=160.0)
        kept = RobustFilter().remove_outliers(row)
        assert len(kept) == 19
        assert all(c.center.y == 100.0 for c in kept)

    def test_removal_bounded_by_fraction(self):
        """With 10% allowed, at most 2 of 20 contacts go, however bad the rest are."""
        row = regular_row(20)
        for i, dy in [(2, 50.0), (6, 70.0), (11, 90.0), (15, 110.0)]:
            row[i] = contact(100 + i * 40, y=100.0 + dy)
        kept = RobustFilter(max_fraction=0.10).remove_outliers(row)
        assert len(kept) == 18

    def test_never_drops_below_two(self):
        row = [contact(100), contact(140, y=300.0), contact(180, width=60)]
        kept = RobustFilter(max_fraction=1.0).remove_outliers(row)
        assert len(kept) >= 2

    def test_preserves_row_order(self):
        row = regular_row(20)
        row[3] = contact(100 + 3 * 40, y=170.0)
        kept = RobustFilter().remove_outliers(row)
        xs = [c.center.x for c in kept]
        assert xs == sorted(xs)

    def test_two_contacts_returned_as_is(self):
        row = regular_row(2)
        assert RobustFilter().remove_outliers(row) == row


class TestNormalizeWidths:
    """Tests for RobustFilter.normalize_widths."""

    def test_bleed_is_trimmed_on_the_bleeding_side(self):
        """A 24 px box whose centre sits at 110 loses its right-hand 4 px."""
        row = regular_row(6)
        bled = Contact(bounds=RectInt(100, 60, 24, 80), center=Point2D(110.0, 100.0))
        row[0] = bled

        result = RobustFilter().normalize_widths(row)
        trimmed = result[0]
        assert trimmed.bounds.x == 100
        assert trimmed.bounds.width == 20
        assert trimmed.center.x == pytest.approx(110.0)

    def test_left_bleed_is_trimmed_on_the_left(self):
        row = regular_row(6)
        row[2] = Contact(bounds=RectInt(176, 60, 24, 80), center=Point2D(190.0, 100.0))
        trimmed = RobustFilter().normalize_widths(row)[2]
        assert trimmed.bounds.x == 180
        assert trimmed.bounds.width == 20

    @pytest.mark.parametrize("width", [30, 14])
    def test_out_of_range_widths_are_rejected(self, width):
        row = regular_row(6)
        row[4] = contact(100 + 4 * 40, width=width)
        result = RobustFilter(max_fraction=0.2).normalize_widths(row)
        assert len(result) == 5
        assert all(c.bounds.width == 20 for c in result)

    def test_rejection_is_capped_worst_first(self):
        """Only floor(n * max_fraction) contacts go; the widest deviations are the ones dropped."""
        row = regular_row(20)
        for i, width in [(3, 40), (7, 34), (11, 28), (15, 12)]:
            row[i] = contact(100 + i * 40, width=width)

        result = RobustFilter(max_fraction=0.10).normalize_widths(row)
        widths = [c.bounds.width for c in result]
        assert len(result) == 18
        assert 40 not in widths and 34 not in widths
        assert 12 in widths
        # Kept over-wide contact is trimmed rather than passed through
        assert max(widths) < 28

    def test_small_row_is_never_emptied(self):
        row = [contact(100, width=10), contact(140, width=20), contact(180, width=5)]
        result = RobustFilter().apply(row)
        assert len(result) == 3

    def test_apply_shares_one_budget(self):
        """Outlier removal and width rejection together stay within max_fraction."""
        row = regular_row(20)
        row[2] = contact(100 + 2 * 40, y=180.0)
        for i in (6, 10, 14):
            row[i] = contact(100 + i * 40, width=34)
        result = RobustFilter(max_fraction=0.10).apply(row)
        assert len(result) == 18

    def test_vertical_row(self):
        """Vertical rows measure width along Y."""
        row = []
        for i in range(6):
            rect = RectInt(60, 100 + i * 40, 80, 20)
            row.append(Contact(bounds=rect, center=Point2D(100.0, 110.0 + i * 40)))
        row[1] = Contact(bounds=RectInt(60, 140, 80, 24), center=Point2D(100.0, 150.0))
        trimmed = RobustFilter(horizontal=False).normalize_widths(row)[1]
        assert trimmed.bounds.height == 20
        assert trimmed.bounds.width == 80

    def test_apply_runs_both_passes(self):
        row = regular_row(20)
        row[5] = contact(100 + 5 * 40, y=180.0)
        row[12] = contact(100 + 12 * 40, width=30)
        result = RobustFilter().apply(row)
        assert len(result) == 18

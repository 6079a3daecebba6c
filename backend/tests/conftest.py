"""
Shared pytest fixtures.
"""

import pytest

from synthetic import make_board


@pytest.fixture
def board_scan():
    """Factory fixture for synthetic board scans."""
    return make_board

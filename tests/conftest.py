import matplotlib

matplotlib.use("Agg")

import pytest

from structure import Comparison, create_engine


@pytest.fixture
def engine():
    """3 users x 4 items, seeded."""
    return create_engine(3, 4, seed=7)


@pytest.fixture
def trained_engine(engine):
    """The 3x4 engine after a few answered comparisons (non-zero matrices)."""
    for comparison in [Comparison(0, [0, 1]), Comparison(1, [2, 3]), Comparison(2, [1, 3]), Comparison(0, [0, 2])]:
        engine.respond(comparison)
    return engine

import math

import pytest
import torch

from structure import (
    EPSILON,
    Comparison,
    ComparisonValidationError,
    create_engine,
)


def snapshot(engine):
    return engine.current, engine.previous, engine.momentum, engine.history, engine.alpha


def assert_unchanged(engine, before):
    current, previous, momentum, history, alpha = before
    assert torch.equal(engine.current, current)
    assert torch.equal(engine.previous, previous)
    assert torch.equal(engine.momentum, momentum)
    assert engine.history == history
    assert engine.alpha == alpha


@pytest.mark.parametrize("comparison", [
    Comparison(-1, [0, 1]),
    Comparison(3, [0, 1]),
    Comparison(0, [-1, 1]),
    Comparison(0, [0, 4]),
    Comparison(0, [4, 0]),
    Comparison(0, [0, 1, 2]),
    Comparison(0, [1]),
    Comparison(0, []),
    Comparison(0, [2, 2]),
    Comparison(True, [0, 1]),
    Comparison(0, [0.0, 1]),
])
def test_invalid_comparisons_leave_the_engine_untouched(trained_engine, comparison):
    before = snapshot(trained_engine)
    with pytest.raises(ComparisonValidationError):
        trained_engine.respond(comparison)
    assert_unchanged(trained_engine, before)


def test_validation_error_is_a_value_error(engine):
    with pytest.raises(ValueError, match="binary rankings"):
        engine.respond(Comparison(0, [0, 1, 2]))


def test_history_grows_by_one_per_response(engine):
    for expected, comparison in enumerate([Comparison(0, [0, 1]), Comparison(2, [3, 1]), Comparison(1, [0, 2])], 1):
        engine.respond(comparison)
        assert len(engine.history) == expected
    assert engine.history[-1] == Comparison(1, [0, 2])


def test_history_keeps_its_own_copy(engine):
    comparison = Comparison(0, [0, 1])
    engine.respond(comparison)
    comparison.swap()
    comparison.user = 2
    assert engine.history[0] == Comparison(0, [0, 1])


def test_shape_is_preserved(trained_engine):
    for matrix in (trained_engine.current, trained_engine.previous, trained_engine.momentum):
        assert matrix.shape == (3, 4)


def test_first_update_from_zero():
    engine = create_engine(2, 2)
    engine.respond(Comparison(0, [0, 1]))

    # Gradient of the hinge loss is -1 on the winner and +1 on the loser, so
    # M = [[1, -1], [0, 0]] with a single singular value sqrt(2).
    shrink = 1 - 0.04 / math.sqrt(2)
    expected = torch.tensor([[shrink, -shrink], [0.0, 0.0]], dtype=torch.float64)
    assert torch.allclose(engine.current, expected, atol=1e-6)
    assert torch.count_nonzero(engine.previous) == 0
    # (alpha - 1) == 0 on the first step: no extrapolation
    assert torch.allclose(engine.momentum, engine.current)
    assert engine.alpha == pytest.approx((1 + math.sqrt(5)) / 2)
    assert engine.last_loss == pytest.approx(1.0)
    assert engine.last_rank == 1


def test_momentum_follows_the_nesterov_extrapolation(engine):
    engine.respond(Comparison(0, [0, 1]))
    alpha = engine.alpha
    engine.respond(Comparison(1, [3, 2]))
    alpha_next = (1 + math.sqrt(1 + 4 * alpha * alpha)) / 2

    assert engine.alpha == pytest.approx(alpha_next)
    expected = engine.current + ((alpha - 1) / alpha_next) * (engine.current - engine.previous)
    assert torch.allclose(engine.momentum, expected)


def test_estimate_is_low_rank_after_updates(trained_engine):
    singular_values = torch.linalg.svdvals(trained_engine.current)
    assert int((singular_values > 1e-9).sum()) == trained_engine.last_rank


def test_hinge_loss():
    engine = create_engine(1, 3)
    engine.store.set_cell(0, 0, 2.0)
    engine.store.set_cell(0, 1, 0.5)
    comparisons = [Comparison(0, [0, 1]), Comparison(0, [1, 0]), Comparison(0, [2, 1])]
    # margins 1.5, -1.5, -0.5 -> losses 0, 2.5, 1.5
    assert engine.hinge_loss(comparisons) == pytest.approx(4.0 / 3)


def test_hinge_loss_of_empty_batch(engine):
    with pytest.raises(ValueError):
        engine.hinge_loss([])


def test_numerical_gradient_matches_the_analytic_one():
    engine = create_engine(2, 3)
    values = [[0.3, -0.2, 0.9], [1.4, 0.1, -0.6]]
    for u, row in enumerate(values):
        for i, value in enumerate(row):
            engine.store.set_cell(u, i, value)
    comparisons = [Comparison(0, [0, 1]), Comparison(0, [2, 0]), Comparison(1, [0, 1]), Comparison(1, [2, 1])]

    expected = torch.zeros(2, 3, dtype=torch.float64)
    for c in comparisons:
        a, b = c.items
        if values[c.user][a] - values[c.user][b] < 1:
            expected[c.user, a] -= 1 / len(comparisons)
            expected[c.user, b] += 1 / len(comparisons)

    gradient = engine.gradient_loss(comparisons)
    assert gradient.shape == (2, 3)
    assert torch.allclose(gradient, expected, atol=1e-6)
    # the perturbation is always undone
    assert engine.estimate(1, 0) == 1.4


def test_gradient_uses_a_forward_difference_at_the_kink():
    engine = create_engine(1, 2)
    engine.store.set_cell(0, 0, 1.0)
    gradient = engine.gradient_loss([Comparison(0, [0, 1])])
    # margin is exactly 1: moving the winner up keeps the loss at 0,
    # moving the loser up makes it positive
    assert gradient[0, 0].item() == pytest.approx(0.0)
    assert gradient[0, 1].item() == pytest.approx(1.0, abs=EPSILON)


def test_large_regularization_collapses_to_zero_without_error(capsys):
    engine = create_engine(2, 2, regularization=10.0, verbose=True)
    engine.respond(Comparison(0, [0, 1]))
    assert torch.count_nonzero(engine.current) == 0
    assert engine.last_rank == 0
    assert "thresholded to zero" in capsys.readouterr().out

    engine.respond(Comparison(1, [1, 0]))
    assert len(engine.history) == 2


class RecordingWriter:
    def __init__(self):
        self.scalars = []

    def add_scalar(self, tag, value, step):
        self.scalars.append((tag, value, step))


def test_updates_are_logged_to_the_writer():
    writer = RecordingWriter()
    engine = create_engine(2, 2, writer=writer)
    engine.respond(Comparison(0, [0, 1]))
    engine.respond(Comparison(1, [0, 1]))

    tags = {tag for tag, _, _ in writer.scalars}
    assert tags == {"engine/hinge_loss", "engine/rank", "engine/alpha"}
    assert {step for _, _, step in writer.scalars} == {1, 2}

import pytest
import torch

from generation_data import (
    answer_query,
    choose_query_random,
    generate_X,
    generate_low_rank_matrix,
    generate_ordered_matrix,
)
from structure import Comparison


@pytest.mark.parametrize("generation", ["base", "low_rank", "clustered", "ordered"])
def test_generate_X_shapes(generation):
    X = generate_X(6, 8, 2, generation=generation, random_state=0)
    assert X.shape == (6, 8)
    assert X.dtype == torch.float64


def test_base_generation_has_the_requested_rank():
    X = generate_X(6, 8, 3, generation="base", random_state=1)
    assert torch.linalg.matrix_rank(X).item() == 3


def test_low_rank_factors():
    U, V, S = generate_low_rank_matrix(5, 7, 3, rank=2, random_state=2)
    assert U.shape == (5, 3)
    assert V.shape == (7, 3)
    assert S.tolist() == [1.0, 1.0, 0.0]
    assert torch.allclose(U.T @ U, torch.eye(3, dtype=torch.float64), atol=1e-8)


def test_generation_is_reproducible():
    assert torch.equal(generate_X(4, 5, 2, random_state=3), generate_X(4, 5, 2, random_state=3))


def test_unknown_generation_method():
    with pytest.raises(ValueError, match="Unknown generation method"):
        generate_X(4, 4, 2, generation="graph")


def test_ordered_matrix_prefers_lower_indices():
    X = generate_ordered_matrix(3, 4)
    assert X.tolist() == [[3.0, 2.0, 1.0, 0.0]] * 3


def test_deterministic_answer_swaps_wrong_guesses():
    X = generate_ordered_matrix(2, 3)

    right = Comparison(1, [0, 2])
    assert answer_query(X, right) is False
    assert right.items == [0, 2]

    wrong = Comparison(1, [2, 0])
    assert answer_query(X, wrong) is True
    assert wrong.items == [0, 2]


def test_noisy_answers_follow_the_btl_probability():
    X = generate_ordered_matrix(1, 2)
    generator = torch.Generator().manual_seed(0)
    surprises = 0
    for _ in range(2000):
        surprises += answer_query(X, Comparison(0, [0, 1]), scale=1.0, generator=generator)
    # P(item 1 wins) = 1 - sigmoid(1) ~ 0.269
    assert 0.22 < surprises / 2000 < 0.32


def test_random_queries():
    generator = torch.Generator().manual_seed(4)
    users = set()
    for _ in range(100):
        query = choose_query_random(3, 5, generator=generator)
        assert query.items[0] != query.items[1]
        assert all(0 <= item < 5 for item in query.items)
        users.add(query.user)
    assert users == {0, 1, 2}

    assert choose_query_random(3, 5, user=2, generator=generator).user == 2


def test_random_queries_need_two_items():
    with pytest.raises(ValueError):
        choose_query_random(3, 1)

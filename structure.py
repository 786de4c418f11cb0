# all imports
import math
import numbers
from contextlib import contextmanager

import torch # type: ignore


############################################################
# This file defines the online learning core: a low-rank belief over a
# (users x items) preference matrix, updated from pairwise comparisons with
# an accelerated proximal-gradient (trace norm) step, and a query generator
# that asks about the pairs the model is least sure about.
#
# Structure and responsibilities:
# - Comparison: one query (pending) or one answered comparison (preferred item first).
# - BeliefStore: the three matrices (current, previous, momentum) and the hyperparameters.
# - LearningEngine: respond() folds an answer into the belief, generate() samples the next query.
# - create_engine: convenience constructor.
############################################################

ANY_USER = -1
EPSILON = 1e-4

DEFAULT_STEP_SIZE = 1.0
DEFAULT_REGULARIZATION = 0.04
DEFAULT_TEMPERATURE = 1.0

MATRIX_NAMES = ("current", "previous", "momentum")


class ComparisonValidationError(ValueError):
    """Raised by respond() when a comparison is malformed. The engine is left untouched."""


class QueryGenerationError(RuntimeError):
    """Raised by generate() when there is no pair to ask about (misconfigured engine)."""


def _is_index(value):
    return isinstance(value, numbers.Integral) and not isinstance(value, bool)


class Comparison:
    """
    A pairwise question "does `user` prefer items[0] over items[1]?".

    While pending (as returned by generate) the items are ordered as the model's best guess.
    Once answered, the preferred item must be listed first.

    Parameters:
    - user (int): Index of the user the question is about.
    - items (sequence of int): The two items being compared.
    - weight (float): Sampling weight the query was drawn with (0.0 for hand-built comparisons).
    """

    def __init__(self, user, items, weight=0.0):
        self.user = user
        self.items = list(items)
        self.weight = weight

    def swap(self):
        """Reverses the order of the items in place (the user preferred the other one)."""
        self.items.reverse()
        return self

    def copy(self):
        return Comparison(self.user, list(self.items), self.weight)

    def __eq__(self, other):
        if not isinstance(other, Comparison):
            return NotImplemented
        return self.user == other.user and self.items == other.items

    def __repr__(self):
        return f"Comparison(user={self.user}, items={self.items}, weight={self.weight:.4f})"


############################################
# Belief storage
############################################

class BeliefStore:
    """
    Holds the three same-shaped preference matrices used by the accelerated update:
    - current: the model's estimate X, current[u, i] is the score of item i for user u,
    - previous: the estimate before the last update,
    - momentum: the extrapolated point Z the next gradient step starts from.

    The shape is fixed at construction. Individual cells are only reachable through
    bounds-checked accessors (negative indices do not wrap around).

    Parameters:
    - users (int): Number of users (rows), at least 1.
    - items (int): Number of items (columns), at least 1.
    - step_size (float): Gradient step size (nu).
    - regularization (float): Soft-threshold applied to the singular values (lambda).
    - temperature (float): Sharpness of the query sampling weights.
    - dtype (torch.dtype): Floating point type of the matrices.
    - device (str): Device holding the matrices ("cpu" or "cuda").
    """

    def __init__(self, users, items, step_size=DEFAULT_STEP_SIZE,
                 regularization=DEFAULT_REGULARIZATION, temperature=DEFAULT_TEMPERATURE,
                 dtype=torch.float64, device="cpu"):
        if not _is_index(users) or users < 1:
            raise ValueError(f"users must be a positive integer, got {users}")
        if not _is_index(items) or items < 1:
            raise ValueError(f"items must be a positive integer, got {items}")

        self.users = users
        self.items = items
        self.current = torch.zeros(users, items, dtype=dtype, device=device)
        self.previous = torch.zeros(users, items, dtype=dtype, device=device)
        self.momentum = torch.zeros(users, items, dtype=dtype, device=device)

        self.step_size = step_size
        self.regularization = regularization
        self.alpha = 1.0
        self.temperature = temperature

    @property
    def shape(self):
        return (self.users, self.items)

    def check_user(self, u):
        if not _is_index(u) or not 0 <= u < self.users:
            raise IndexError(f"must have 0 <= user [{u}] < {self.users}")

    def check_item(self, i):
        if not _is_index(i) or not 0 <= i < self.items:
            raise IndexError(f"must have 0 <= item [{i}] < {self.items}")

    def _matrix(self, name):
        if name not in MATRIX_NAMES:
            raise ValueError(f"Unknown matrix: {name}")
        return getattr(self, name)

    def get_cell(self, u, i, matrix="current"):
        """Returns matrix[u, i] as a float. Raises IndexError when (u, i) is out of bounds."""
        self.check_user(u)
        self.check_item(i)
        return self._matrix(matrix)[u, i].item()

    def set_cell(self, u, i, value, matrix="current"):
        """Overwrites matrix[u, i]. Raises IndexError when (u, i) is out of bounds."""
        self.check_user(u)
        self.check_item(i)
        self._matrix(matrix)[u, i] = value

    @contextmanager
    def perturb(self, u, i, delta):
        """Adds `delta` to current[u, i] inside the `with` block, then restores the original value."""
        self.check_user(u)
        self.check_item(i)
        original = self.current[u, i].item()
        self.current[u, i] = original + delta
        try:
            yield
        finally:
            self.current[u, i] = original


############################################
# Learning engine
#
# respond() -> validate, append to history, one accelerated proximal step on the full history
# generate() -> sample a (user, a, b) triplet with weight exp(-|X[u,a] - X[u,b]| / T)
############################################

class LearningEngine:
    """
    Online learner for a (users x items) preference matrix from pairwise comparisons.

    Every answered comparison is appended to the history and the whole history is
    used for one FISTA-style step:
        gradient step on the momentum point -> singular value soft-thresholding
        (proximal operator of the trace norm) -> Nesterov extrapolation.
    The trace norm keeps the estimate low rank, i.e. explained by a few latent factors.

    Parameters:
    - users (int): Number of users.
    - items (int): Number of items.
    - step_size (float): Gradient step size (nu).
    - regularization (float): Trace norm strength (lambda), subtracted from every singular value.
    - temperature (float): Query sampling temperature T; lower values focus on the closest pairs.
    - seed (int or None): Seed of the dedicated torch.Generator used for sampling.
    - uniform (callable or None): Zero-argument function returning a float in [0, 1).
                                  Overrides `seed` when given.
    - writer (SummaryWriter or None): If set, loss / rank / alpha are logged at every update.
    - verbose (bool): If True, print a warning when the estimate collapses to zero.
    """

    def __init__(self, users, items, step_size=DEFAULT_STEP_SIZE,
                 regularization=DEFAULT_REGULARIZATION, temperature=DEFAULT_TEMPERATURE,
                 seed=None, uniform=None, writer=None, verbose=False):
        self.store = BeliefStore(users, items, step_size=step_size,
                                 regularization=regularization, temperature=temperature)
        self._history = []

        if uniform is None:
            generator = torch.Generator()
            if seed is None:
                generator.seed()
            else:
                generator.manual_seed(seed)

            def uniform():
                return torch.rand(1, generator=generator, dtype=torch.float64).item()

        self.uniform = uniform
        self.writer = writer
        self.verbose = verbose

        self.last_loss = None
        self.last_rank = None

    # === Read-only inspection ===

    @property
    def shape(self):
        return self.store.shape

    @property
    def history(self):
        return tuple(c.copy() for c in self._history)

    @property
    def alpha(self):
        return self.store.alpha

    @property
    def current(self):
        return self.store.current.clone()

    @property
    def previous(self):
        return self.store.previous.clone()

    @property
    def momentum(self):
        return self.store.momentum.clone()

    def estimate(self, u, i):
        """Current preference score of item i for user u."""
        return self.store.get_cell(u, i)

    def predict(self, u, a, b):
        """Estimated score gap current[u, a] - current[u, b]; positive means a is preferred."""
        return self.store.get_cell(u, a) - self.store.get_cell(u, b)

    def ranking(self, u):
        """
        Items of user u sorted from most to least preferred by the current estimate.
        Ties keep increasing item order.
        """
        self.store.check_user(u)
        order = torch.argsort(self.store.current[u], descending=True, stable=True)
        return order.tolist()

    # === Loss and gradient ===

    def _batch(self, comparisons):
        if len(comparisons) == 0:
            raise ValueError("Cannot compute the loss of an empty batch of comparisons")
        device = self.store.current.device
        users = torch.tensor([c.user for c in comparisons], dtype=torch.long, device=device)
        winners = torch.tensor([c.items[0] for c in comparisons], dtype=torch.long, device=device)
        losers = torch.tensor([c.items[1] for c in comparisons], dtype=torch.long, device=device)
        return users, winners, losers

    def _hinge_loss(self, users, winners, losers):
        X = self.store.current
        margin = X[users, winners] - X[users, losers]
        return torch.clamp(1 - margin, min=0).mean().item()

    def hinge_loss(self, comparisons):
        """
        Mean hinge ranking loss max(0, 1 - (X[u, a] - X[u, b])) over a list of answered
        comparisons, where a (items[0]) is the preferred item.
        """
        return self._hinge_loss(*self._batch(comparisons))

    def gradient_loss(self, comparisons):
        """
        Numerical gradient of the batch hinge loss with respect to every cell of the current estimate.

        Each cell is moved by EPSILON, the loss is recomputed on the whole batch, and the cell
        is restored (forward difference). This costs O(users * items * len(comparisons)).

        Parameters:
        - comparisons (list of Comparison): Answered comparisons (preferred item first).

        Returns:
        - Tensor: Gradient matrix with the shape of the current estimate.
        """
        batch = self._batch(comparisons)
        result = torch.zeros_like(self.store.current)
        before = self._hinge_loss(*batch)

        for u in range(self.store.users):
            for i in range(self.store.items):
                with self.store.perturb(u, i, EPSILON):
                    result[u, i] = (self._hinge_loss(*batch) - before) / EPSILON

        return result

    # === Accelerated proximal update ===

    def update(self, comparisons):
        """
        Performs one accelerated proximal-gradient step of the trace-norm regularized hinge loss.
        The order of the steps below matters for convergence.
        """
        store = self.store
        loss = self.hinge_loss(comparisons)

        # === Step 1: Next Nesterov coefficient ===
        alpha_next = (1 + math.sqrt(1 + 4 * store.alpha * store.alpha)) / 2

        # === Step 2: Gradient step from the momentum point ===
        gradient = self.gradient_loss(comparisons)
        M = store.momentum - store.step_size * gradient

        # === Step 3: Proximal step, soft-threshold the singular values ===
        U, S, Vh = torch.linalg.svd(M, full_matrices=False)
        S = torch.clamp(S - store.regularization, min=0)

        # === Step 4: New estimate X = U diag(S) V^T ===
        store.previous = store.current
        store.current = U @ torch.diag(S) @ Vh

        # === Step 5: Nesterov extrapolation ===
        store.momentum = store.current + ((store.alpha - 1) / alpha_next) * (store.current - store.previous)
        store.alpha = alpha_next

        self.last_loss = loss
        self.last_rank = int((S > 0).sum().item())

        if self.verbose and self.last_rank == 0:
            print(f"⚠️ All singular values thresholded to zero (regularization={store.regularization}), "
                  f"the estimate collapsed to the zero matrix")

        if self.writer is not None:
            step = len(self._history)
            self.writer.add_scalar("engine/hinge_loss", loss, step)
            self.writer.add_scalar("engine/rank", self.last_rank, step)
            self.writer.add_scalar("engine/alpha", store.alpha, step)

    def _validate(self, comparison):
        items = comparison.items
        if len(items) != 2:
            raise ComparisonValidationError("can only handle binary rankings")

        user = comparison.user
        if not _is_index(user) or not 0 <= user < self.store.users:
            raise ComparisonValidationError(f"must have 0 <= user [{user}] < {self.store.users}")

        for choice in items:
            if not _is_index(choice) or not 0 <= choice < self.store.items:
                raise ComparisonValidationError(f"must have 0 <= choice [{choice}] < {self.store.items}")

        if items[0] == items[1]:
            raise ComparisonValidationError(f"cannot compare item {items[0]} with itself")

    def respond(self, comparison):
        """
        Folds one answered comparison (preferred item first) into the belief.

        The comparison is validated before anything is touched; on failure a
        ComparisonValidationError is raised and the engine is unchanged. On success a copy
        is appended to the history and one update step runs over the entire history.

        Parameters:
        - comparison (Comparison): The answered comparison.
        """
        self._validate(comparison)
        self._history.append(comparison.copy())
        self.update(self._history)

    # === Query generation ===

    def _candidate_users(self, user):
        if user is None or (_is_index(user) and user < 0):
            return range(self.store.users)
        if _is_index(user) and user < self.store.users:
            return [user]
        return []

    def generate(self, user=ANY_USER):
        """
        Samples the next comparison to ask.

        Every ordered pair (a, b), a != b, of every eligible user gets the weight
        exp(-|X[u, a] - X[u, b]| / T): the closer two scores are, the more likely the pair is asked.
        One candidate is drawn proportionally to its weight, then its items are ordered so that the
        item with the higher current score comes first.

        Parameters:
        - user (int or None): Restrict the query to this user. ANY_USER (or any negative value, or None)
                              lets the engine pick the user as well.

        Returns:
        - Comparison: A pending comparison, model's best guess first.

        Raises:
        - QueryGenerationError: If there is no pair to ask about (fewer than 2 items, unknown user).
        """
        X = self.store.current
        temperature = self.store.temperature
        candidates = []
        total = 0.0

        # === Step 1: Weight every candidate (u, a, b) ===
        for u in self._candidate_users(user):
            row = X[u].tolist()
            for a in range(self.store.items):
                for b in range(self.store.items):
                    if a == b:
                        continue
                    weight = math.exp(-abs(row[a] - row[b]) / temperature)
                    total += weight
                    candidates.append((u, a, b, weight))

        if not candidates:
            raise QueryGenerationError(f"Could not find another question (user={user}, shape={self.shape})")

        # === Step 2: Cumulative-weight walk over a uniform draw in [0, total) ===
        offset = self.uniform() * total
        chosen = candidates[-1]
        for candidate in candidates:
            if offset < candidate[3]:
                chosen = candidate
                break
            offset -= candidate[3]

        # === Step 3: Put the currently preferred item first ===
        u, a, b, weight = chosen
        if X[u, a].item() < X[u, b].item():
            a, b = b, a

        return Comparison(u, [a, b], weight)


def create_engine(users, items, **kwargs):
    """
    Allocates a learning engine with zero-filled matrices for `users` users and `items` items.
    Keyword arguments are forwarded to LearningEngine (step_size, regularization, temperature, seed, ...).
    """
    return LearningEngine(users, items, **kwargs)

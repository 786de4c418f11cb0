import torch # type: ignore
from sklearn.cluster import KMeans
from scipy.stats import ortho_group
import numpy as np

from structure import ANY_USER, Comparison

###########################################################
# Ground truth and simulated users for active-learning experiments.
#
# - generate_*: build a ground-truth preference matrix X^* (n users x m items)
# - answer_query: resolve a pending comparison against X^* (deterministic or BTL noise)
# - choose_query_random: baseline query strategy (uniform pairs) to compare with the engine
###########################################################


############################################
# These Functions create X^* with different structures
############################################


def generate_embeddings(n, m, d, device="cpu", random_state=None):
    """
    Generates a rank-d matrix X = U S V^T where U, V are random orthogonal matrices
    and the d non-zero singular values are equal.

    Parameters:
    - n (int): Number of users (rows), at least 2.
    - m (int): Number of items (columns), at least 2.
    - d (int): Target rank (d <= min(n, m)).
    - device (str): Target device.
    - random_state (int or None): Seed for the orthogonal draws.

    Returns:
    - X (Tensor): Matrix of shape (n, m).
    """
    n1 = min(n, m)
    s = np.zeros(n1)
    s[:d] = 1.0 / np.sqrt(d)

    S = np.zeros((n, m))
    S[:n1, :n1] = np.diag(s)
    rng = np.random.default_rng(random_state)
    U = ortho_group.rvs(dim=n, random_state=rng)
    V = ortho_group.rvs(dim=m, random_state=rng)

    X = U @ S @ V.T
    X = X * np.sqrt(n*m)/2  # Scale so entries are of order one
    return torch.tensor(X, dtype=torch.float64, device=device)


def generate_low_rank_matrix(n, m, d, rank, device="cpu", random_state=None):
    """
    Generates the factors of a low-rank matrix X = U diag(S) V^T with orthonormal U and V.
    - U: (n x d), V: (m x d), both orthonormal
    - S: [1, ..., 1, 0, ..., 0] (rank ones)
    """
    rng = np.random.default_rng(random_state)
    U_np = ortho_group.rvs(dim=n, random_state=rng)[:, :d]  # shape (n x d)
    V_np = ortho_group.rvs(dim=m, random_state=rng)[:, :d]  # shape (m x d)

    S = torch.zeros(d, dtype=torch.float64, device=device)
    S[:rank] = 1.0

    U = torch.tensor(U_np, dtype=torch.float64, device=device)
    V = torch.tensor(V_np, dtype=torch.float64, device=device)

    return U, V, S


def generate_clustered_matrix_from_embeddings(n, m, d, n_clusters=5, device="cpu", scale=1.0,
                                              shift_strength=0.5, random_state=None):
    """
    Generates a preference matrix X using base embeddings, then shifts item vectors
    toward their cluster centroid while preserving individual variation.

    Parameters:
    - n (int): Number of users.
    - m (int): Number of items.
    - d (int): Latent dimension.
    - n_clusters (int): Number of item clusters (capped at m).
    - device (str): Device to use ("cpu" or "cuda").
    - scale (float): Final scaling factor of the matrix.
    - shift_strength (float): Value in [0,1]; how strongly each item is moved toward its cluster mean.
    - random_state (int or None): Seed for the embeddings and for KMeans.

    Returns:
    - X_clustered (Tensor): Matrix of shape (n, m), structured with soft clustering of items.
    """
    # Step 1: Generate initial matrix
    X = generate_embeddings(n, m, d, device=device, random_state=random_state)

    # Step 2: Cluster item vectors (each column) in X.T
    item_vectors = X.T.cpu().numpy()  # shape (m, n)
    n_clusters = min(n_clusters, m)
    kmeans = KMeans(n_clusters=n_clusters, n_init="auto",
                    random_state=42 if random_state is None else random_state)
    labels = kmeans.fit_predict(item_vectors)

    # Step 3: Soft shift each item vector toward its cluster center
    X_np = X.cpu().numpy()
    X_shifted = X_np.copy()

    for cluster_id in range(n_clusters):
        item_indices = np.where(labels == cluster_id)[0]
        if len(item_indices) == 0:
            continue
        cluster_mean = X_np[:, item_indices].mean(axis=1, keepdims=True)  # shape (n, 1)
        X_shifted[:, item_indices] = (1 - shift_strength) * X_np[:, item_indices] + shift_strength * cluster_mean

    # Step 4: Convert back to tensor and apply global scaling
    return torch.tensor(X_shifted, dtype=torch.float64, device=device) * scale


def generate_ordered_matrix(n, m, device="cpu"):
    """
    Every user shares the same strict order: item 0 is preferred to item 1, which is preferred to item 2, ...
    X[u, i] = m - 1 - i (a rank-1 matrix).
    """
    row = torch.arange(m - 1, -1, -1, dtype=torch.float64, device=device)
    return row.repeat(n, 1)


def generate_X(n, m, d, device="cpu", generation="base", random_state=None, **kwargs):
    """
    Wrapper function that generates a ground-truth preference matrix X using a specified scheme.

    Parameters:
    - n (int): Number of users (rows).
    - m (int): Number of items (columns).
    - d (int): Latent dimension (ignored by "ordered").
    - device (str): Target device for the resulting tensor.
    - generation (str): "base", "low_rank", "clustered" or "ordered".
    - random_state (int or None): Seed forwarded to the random generators.
    - kwargs: Extra arguments for specific generators (`rank`, `n_clusters`, `shift_strength`).

    Returns:
    - X (Tensor): A generated (n x m) matrix of latent preferences.
    """
    if generation == "base":
        return generate_embeddings(n, m, d, device=device, random_state=random_state)

    elif generation == "low_rank":
        U, V, S = generate_low_rank_matrix(n, m, d, rank=kwargs.get("rank", d), device=device,
                                           random_state=random_state)
        return U @ torch.diag(S) @ V.T

    elif generation == "clustered":
        return generate_clustered_matrix_from_embeddings(
            n, m, d, n_clusters=kwargs.get("n_clusters", 5), device=device,
            shift_strength=kwargs.get("shift_strength", 0.5), random_state=random_state
        )

    elif generation == "ordered":
        return generate_ordered_matrix(n, m, device=device)

    else:
        raise ValueError(f"Unknown generation method: {generation}")


############################################
# Simulated users
############################################


def sigmoid_preference(X, u, i, j, scale=1.0):
    """Bradley-Terry-Luce probability that user u prefers item i over item j."""
    return torch.sigmoid(scale * (X[u, i] - X[u, j])).item()


def answer_query(X, comparison, scale=None, generator=None):
    """
    Answers a pending comparison against the ground truth, reordering its items in place
    so that the preferred item comes first.

    Parameters:
    - X (Tensor): Ground-truth preference matrix.
    - comparison (Comparison): Pending comparison (items in the order the engine proposed).
    - scale (float or None): If None, the item with the higher true score always wins (ties keep the order).
                             Otherwise items[0] wins with probability sigmoid(scale * (X[u, a] - X[u, b])).
    - generator (torch.Generator or None): Random source for the noisy answers.

    Returns:
    - bool: True if the proposed order was wrong and had to be swapped (a "surprise").
    """
    u = comparison.user
    a, b = comparison.items

    if scale is None:
        keep = X[u, a].item() >= X[u, b].item()
    else:
        draw = torch.rand(1, generator=generator, dtype=torch.float64).item()
        keep = draw < sigmoid_preference(X, u, a, b, scale=scale)

    if not keep:
        comparison.swap()
    return not keep


############################################
# Baseline query strategy
############################################


def choose_query_random(n, m, user=ANY_USER, generator=None):
    """
    Uniformly random query, used as a baseline against the uncertainty-weighted engine.

    Parameters:
    - n (int): Number of users.
    - m (int): Number of items, at least 2.
    - user (int or None): Fixed user, or ANY_USER / None to draw one.
    - generator (torch.Generator or None): Random source.

    Returns:
    - Comparison: Pending comparison with two distinct items.
    """
    if m < 2:
        raise ValueError(f"Need at least 2 items to build a query, got {m}")

    if user is None or user < 0:
        u = torch.randint(0, n, (1,), generator=generator).item()
    else:
        u = user
    i, j = torch.randperm(m, generator=generator)[:2].tolist()
    return Comparison(u, [i, j], weight=1.0)

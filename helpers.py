# all imports
import os
os.environ["OMP_NUM_THREADS"] = "4"

import torch # type: ignore
from tqdm import tqdm
from torch.utils.tensorboard import SummaryWriter # type: ignore
import shutil
import time
import subprocess
import webbrowser
import itertools
import pickle
from scipy.stats import spearmanr
import numpy as np

from structure import ANY_USER, LearningEngine, DEFAULT_STEP_SIZE, DEFAULT_REGULARIZATION, DEFAULT_TEMPERATURE
from generation_data import generate_X, answer_query, choose_query_random


############################################################
# This file runs simulated active-learning experiments with the learning engine.
#
# Structure and responsibilities:
# - run_active_learning: the generate -> answer -> respond loop against a ground-truth matrix.
# - run_experiment: repeats one configuration and aggregates the metrics.
# - parameter_scan: launches run_experiment over a hyperparameter grid (or a linear sweep).
# - Evaluation: ranking accuracy and Spearman correlation against the ground truth.
# - Utility functions: save intermediate results, launch TensorBoard.
############################################################

QUERY_STRATEGIES = ("uncertainty", "random")


def run_active_learning(engine, X, rounds, strategy="uncertainty", user=ANY_USER, scale=None,
                        generator=None, show_progress=True):
    """
    Asks `rounds` questions to a simulated user whose true preferences are X.

    Each round: a query is chosen (by the engine, or uniformly at random for the baseline),
    the simulated user answers it, and the engine learns from the answer.

    Parameters:
    - engine (LearningEngine): The engine to train (modified in place).
    - X (Tensor): Ground-truth preference matrix with the engine's shape.
    - rounds (int): Number of questions to ask.
    - strategy (str): "uncertainty" (engine.generate) or "random" (uniform pairs).
    - user (int): Restrict queries to one user, or ANY_USER.
    - scale (float or None): BTL noise scale of the answers, None for noiseless answers.
    - generator (torch.Generator or None): Random source for the baseline and the noisy answers.
    - show_progress (bool): Display a tqdm progress bar.

    Returns:
    - dict: Per-round lists:
        • surprises: 1 if the answer reversed the model's best guess, else 0,
        • losses: hinge loss over the history before each update,
        • ranks: rank of the estimate after each update.
    """
    if strategy not in QUERY_STRATEGIES:
        raise ValueError(f"Unknown query strategy: {strategy}")
    if tuple(X.shape) != engine.shape:
        raise ValueError(f"Ground truth shape {tuple(X.shape)} does not match engine shape {engine.shape}")

    n, m = engine.shape
    surprises, losses, ranks = [], [], []

    for _ in tqdm(range(rounds), desc="Active Learning", disable=not show_progress):
        # === Step 1: Pick the next query ===
        if strategy == "uncertainty":
            query = engine.generate(user)
        else:
            query = choose_query_random(n, m, user=user, generator=generator)
            # Present the baseline query in the model's preferred order as well
            if engine.predict(query.user, *query.items) < 0:
                query.swap()

        # === Step 2: Simulated answer, then learn from it ===
        surprised = answer_query(X, query, scale=scale, generator=generator)
        engine.respond(query)

        surprises.append(int(surprised))
        losses.append(engine.last_loss)
        ranks.append(engine.last_rank)

    return {"surprises": surprises, "losses": losses, "ranks": ranks}


def run_experiment(n=10, m=10, d=2, rounds=300, reps=1, step_size=DEFAULT_STEP_SIZE,
                   regularization=DEFAULT_REGULARIZATION, temperature=DEFAULT_TEMPERATURE,
                   strategy="uncertainty", generation="base", scale=None, seed=None,
                   log_dir=None, show_progress=True):
    """
    Runs several repetitions of an active-learning simulation and aggregates the metrics.

    Parameters:
    - n (int): Number of users.
    - m (int): Number of items.
    - d (int): Latent dimension of the ground truth.
    - rounds (int): Number of questions per repetition.
    - reps (int): Number of independent repetitions.
    - step_size (float): Engine gradient step size.
    - regularization (float): Engine trace norm strength.
    - temperature (float): Engine sampling temperature.
    - strategy (str): "uncertainty" or "random".
    - generation (str): Ground truth generation method (see generate_X).
    - scale (float or None): BTL noise of the simulated answers, None for noiseless.
    - seed (int or None): Base seed; repetition r uses seed + r.
    - log_dir (str or None): If set, each repetition logs its engine scalars to TensorBoard.
    - show_progress (bool): Display tqdm progress bars.

    Returns:
    - dict: One list entry per repetition for every metric.
    """
    surprise_rates, final_surprise_rates = [], []
    ranking_accuracies, spearman_means, spearman_stds = [], [], []
    all_surprises, all_losses, all_ranks = [], [], []

    for rep in range(reps):
        rep_seed = None if seed is None else seed + rep
        generator = torch.Generator()
        if rep_seed is None:
            generator.seed()
        else:
            generator.manual_seed(rep_seed)

        # === Step 1: Ground truth ===
        X = generate_X(n, m, d, generation=generation, random_state=rep_seed)

        # === Step 2: Fresh engine (optionally logging to TensorBoard) ===
        writer = SummaryWriter(log_dir=os.path.join(log_dir, f"rep_{rep}")) if log_dir else None
        engine = LearningEngine(n, m, step_size=step_size, regularization=regularization,
                                temperature=temperature, seed=rep_seed, writer=writer)

        # === Step 3: Simulate the question / answer loop ===
        trace = run_active_learning(engine, X, rounds, strategy=strategy, scale=scale,
                                    generator=generator, show_progress=show_progress)
        if writer is not None:
            writer.close()

        # === Step 4: Evaluate against the ground truth ===
        surprises = trace["surprises"]
        tail = surprises[-max(1, rounds // 10):] if surprises else []
        surprise_rates.append(float(np.mean(surprises)) if surprises else 0.0)
        final_surprise_rates.append(float(np.mean(tail)) if tail else 0.0)
        ranking_accuracies.append(ranking_accuracy(engine.current, X))
        spearman_mean, spearman_std = compute_spearman(engine.current, X)
        spearman_means.append(spearman_mean)
        spearman_stds.append(spearman_std)

        all_surprises.append(surprises)
        all_losses.append(trace["losses"])
        all_ranks.append(trace["ranks"])

    return {
        "surprise_rate": surprise_rates,
        "final_surprise_rate": final_surprise_rates,
        "ranking_accuracy": ranking_accuracies,
        "spearman_corr": spearman_means,
        "spearman_std": spearman_stds,
        "surprises": all_surprises,
        "losses": all_losses,
        "ranks": all_ranks,
    }


"""
The next function launches a grid search (or linear sweep) over several configurations of run_experiment.

Each parameter can be either:
- a scalar (used for all experiments), or
- a list (to scan different values).

Example structure of the output:
[
    {
        'params': {'n': 10, 'm': 10, 'd': 2, 'rounds': 300, 'regularization': 0.04, ...},
        'results': {'surprise_rate': [...], 'ranking_accuracy': [...], 'surprises': [[...]], ...}
    },
    ...
]
"""
def parameter_scan(n=10, m=10, d=2, rounds=300, reps=1, step_size=DEFAULT_STEP_SIZE,
                   regularization=DEFAULT_REGULARIZATION, temperature=DEFAULT_TEMPERATURE,
                   strategy="uncertainty", generation="base", scale=None, seed=None,
                   linear=False, save_path=None, save_every=None, show_progress=False):
    """
    Launches run_experiment across different hyperparameter configurations.

    Parameters:
    - n, m, d, rounds, reps, step_size, regularization, temperature, strategy, generation, scale
      (scalar or list): Arguments of run_experiment; lists are scanned.
    - seed (int or None): Base seed shared by all configurations.
    - linear (bool): If True, lists are read in lockstep (they must share one length).
                     If False, the full Cartesian product is run.
    - save_path (str or None): If set, results are appended to this pickle file.
    - save_every (int or None): Save (and release from memory) every `save_every` experiments.
    - show_progress (bool): Display the per-round progress bars of each experiment.

    Returns:
    - list of dict: {'params': ..., 'results': ...} for the experiments not yet flushed to disk.
    """

    # === Step 1: Collect all parameters into a single dictionary
    param_dict = {'n': n, 'm': m, 'd': d, 'rounds': rounds, 'reps': reps,
                  'step_size': step_size, 'regularization': regularization,
                  'temperature': temperature, 'strategy': strategy,
                  'generation': generation, 'scale': scale}

    # === Step 2: Convert NumPy values to native Python types
    param_dict = {k: _to_native(v) for k, v in param_dict.items()}

    # === Step 3: A linear scan needs all scanned lists to share one length
    list_params = [v for v in param_dict.values() if isinstance(v, list)]
    if linear and len(list_params) > 1 and not all(len(v) == len(list_params[0]) for v in list_params):
        raise ValueError("The linear scan is not possible because the parameters are not synchronized.")

    # === Step 4: Wrap scalar values in lists to unify iteration
    for key, value in param_dict.items():
        if not isinstance(value, list):
            param_dict[key] = [value]

    if linear:
        length = len(list_params[0]) if list_params else 1
        configurations = [{k: v[i] if len(v) > 1 else v[0] for k, v in param_dict.items()} for i in range(length)]
    else:
        configurations = [dict(zip(param_dict.keys(), values)) for values in itertools.product(*param_dict.values())]

    # === Step 5: If the saving path already exists, clear previous results
    if save_path and os.path.exists(save_path):
        print(f"🧹 Removing existing file at {save_path}")
        os.remove(save_path)

    all_results = []
    for params in tqdm(configurations, desc="Parameter Scan"):
        print(f"\nRunning experiment with parameters: {params}")
        results = run_experiment(**params, seed=seed, show_progress=show_progress)
        all_results.append({'params': params, 'results': results})

        # Periodic save: save every N experiments to avoid losing progress
        if save_path and save_every and len(all_results) >= save_every:
            save_results(all_results, save_path)
            all_results = []

    if save_path and all_results:
        save_results(all_results, save_path)
        all_results = []

    return all_results


def _to_native(value):
    if isinstance(value, np.ndarray):
        value = value.tolist()
    if isinstance(value, (list, tuple)):
        return [_to_native(v) for v in value]
    if isinstance(value, np.floating):
        return float(value)
    if isinstance(value, np.integer):
        return int(value)
    return value


def save_results(new_results, save_path):
    """Appends experiments to the pickle file at `save_path` (created if needed)."""
    directory = os.path.dirname(save_path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    if os.path.exists(save_path):
        with open(save_path, 'rb') as f:
            previous_results = pickle.load(f)
    else:
        previous_results = []
    previous_results.extend(new_results)
    with open(save_path, 'wb') as f:
        pickle.dump(previous_results, f)
    print(f"✅ Saved {len(new_results)} new experiments to {save_path}")


def load_results(save_path):
    with open(save_path, 'rb') as f:
        return pickle.load(f)


############################################
# Evaluation Utilities
############################################


def ranking_accuracy(estimate, X):
    """
    Fraction of item pairs (per user) ordered the same way by the estimate and by the ground truth.
    Pairs tied in the ground truth are ignored, pairs tied in the estimate count as wrong.

    Parameters:
    - estimate (Tensor): Learned preference matrix (n x m).
    - X (Tensor): Ground-truth preference matrix (n x m).

    Returns:
    - float: Accuracy in [0, 1] (0.0 when X has no strict pair).
    """
    estimate = estimate.to(torch.float64)
    X = X.to(torch.float64)
    true_diff = X[:, :, None] - X[:, None, :]
    est_diff = estimate[:, :, None] - estimate[:, None, :]

    mask = true_diff > 0
    total = mask.sum().item()
    if total == 0:
        return 0.0
    return ((est_diff > 0) & mask).sum().item() / total


def compute_spearman(estimate, X):
    """
    Mean and standard deviation of the row-wise Spearman correlation between estimate and X.
    Constant rows (no ranking information) are skipped.
    """
    X_np = X.cpu().numpy()
    est_np = estimate.cpu().numpy()

    spearman_scores = []
    for i in range(X_np.shape[0]):
        x_row = X_np[i, :]
        e_row = est_np[i, :]
        if np.std(x_row) > 1e-8 and np.std(e_row) > 1e-8:
            rho, _ = spearmanr(x_row, e_row)
            if not np.isnan(rho):
                spearman_scores.append(rho)

    spearman_mean = float(np.mean(spearman_scores)) if spearman_scores else 0.0
    spearman_std = float(np.std(spearman_scores)) if spearman_scores else 0.0
    return spearman_mean, spearman_std


def start_tensorboard(log_dir='runs/active_learning', port=6006, open_browser=True, clear_logs=False):
    """Starts TensorBoard on `log_dir` and opens it in the default web browser."""
    if clear_logs:
        shutil.rmtree(log_dir, ignore_errors=True)

    # Launch TensorBoard in the background
    subprocess.Popen(["tensorboard", f"--logdir={log_dir}", f"--port={port}"],
                     stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL)

    # Wait for TensorBoard to start
    time.sleep(3)

    if open_browser:
        webbrowser.open(f"http://localhost:{port}/")
    print(f"🔥 TensorBoard launched at http://localhost:{port}/")

import matplotlib
import matplotlib.pyplot as plt
import seaborn as sns
from matplotlib.colors import LogNorm
from scipy.stats import sem
import numpy as np
import torch # type: ignore


############################################
# Visualization Utilities for Active-Learning Experiments
#
# This module contains functions to:
# - Plot the surprise rate (answers that reversed the model's guess) along the rounds
# - Plot a metric across two scanned parameters as a heatmap
# - Display the learned preference matrix
# - Extract and print the best-performing hyperparameter configurations
############################################


def use_latex_style():
    """Renders text with LaTeX (requires a LaTeX installation)."""
    matplotlib.rcParams.update({
        "text.usetex": True,
        "font.family": "serif",
        "text.latex.preamble": r"\usepackage{amsmath}"
    })


def format_display_name(name):
    """
    Converts internal metric or parameter names into human-readable labels for plots and reports.

    Examples:
    - "surprise_rate" → "Surprise Rate"
    - "regularization" → "Regularization ($\\lambda$)"
    - "some_param" → "Some Param"
    """

    name_map = {
        # === Metric display names ===
        "surprise_rate": "Surprise Rate",
        "final_surprise_rate": "Final Surprise Rate",
        "ranking_accuracy": "Ranking Accuracy",
        "spearman_corr": "Spearman Correlation",
        "spearman_std": "Spearman Std",
        "losses": "Hinge Loss",
        "ranks": "Rank",

        # === Parameter display names ===
        "n": "$n$",
        "m": "$m$",
        "d": "Ground Truth Rank ($d$)",
        "rounds": "Rounds",
        "reps": "Repetitions",
        "step_size": "Step Size ($\\nu$)",
        "regularization": "Regularization ($\\lambda$)",
        "temperature": "Temperature ($T$)",
        "scale": "Noise Scale ($s$)",

        # === Strategy categories ===
        "strategy": "Strat",
        "uncertainty": "Uncertainty",
        "random": "Random",
    }

    if name in name_map:
        return name_map[name]
    return name.replace("_", " ").title()


def _moving_average(values, window):
    values = np.asarray(values, dtype=float)
    if window <= 1 or len(values) < window:
        return values
    kernel = np.ones(window) / window
    return np.convolve(values, kernel, mode="valid")


def find_varying_params(results):
    """Identifies which parameters vary across a list of experiments."""
    all_keys = results[0]['params'].keys()
    return [key for key in all_keys if len(set(str(exp['params'][key]) for exp in results)) > 1]


def plot_surprise_curves(results, window=20, selected_indices=None, save_path="", show=True):
    """
    Plots, for each experiment, the moving average of the surprise indicator along the rounds
    (averaged over repetitions). A decreasing curve means the engine's guesses are getting right.

    Parameters:
    - results (list): Output of `parameter_scan`.
    - window (int): Width of the moving average.
    - selected_indices (list, optional): Indices of experiments to display. Defaults to all.
    - save_path (str, optional): Base filename to save the plot. If empty, the plot is not saved.
    - show (bool): Call plt.show() at the end.

    Returns:
    - matplotlib.figure.Figure
    """
    if selected_indices is None:
        selected_indices = range(len(results))
    selected_indices = list(selected_indices)

    varying_params = find_varying_params(results) if len(results) > 1 else []
    colors = plt.cm.viridis(np.linspace(0, 1, max(len(selected_indices), 1)))

    fig, ax = plt.subplots(figsize=(10, 5))
    for color, exp_idx in zip(colors, selected_indices):
        exp = results[exp_idx]
        surprises = np.mean(np.asarray(exp['results']['surprises'], dtype=float), axis=0)
        label = ", ".join(f"{format_display_name(key)}={exp['params'][key]}" for key in varying_params)
        ax.plot(_moving_average(surprises, window), color=color, label=label or f"Exp {exp_idx + 1}")

    ax.set_xlabel("Rounds")
    ax.set_ylabel(f"Surprise Rate (moving average, window={window})")
    ax.set_title("Surprise rate along the rounds", fontsize=12)
    ax.grid(True, linestyle="--", alpha=0.6)
    ax.legend(fontsize=9)

    if save_path:
        fig.savefig(f"{save_path}.png", bbox_inches="tight", dpi=300)

    if show:
        plt.show()
    return fig


def plot_heatmap_best(results, param_x, param_y, result_metric, save_path="", invert_colors=False,
                      log_scale=False, fig_size=(10, 7), font_scale=1, show=True):
    """
    Plots a heatmap of the mean value (± SEM) of a metric across 2 parameters,
    keeping the best configuration for every (param_x, param_y) pair.

    Parameters:
    - results (list): Output of `parameter_scan`.
    - param_x (str): Parameter on the x-axis.
    - param_y (str): Parameter on the y-axis.
    - result_metric (str): Scalar metric to visualize (e.g., "ranking_accuracy", "surprise_rate").
    - save_path (str): If specified, saves the plot as a PNG file.
    - invert_colors (bool): If True, reverses the colormap.
    - log_scale (bool): Whether to apply logarithmic color normalization.
    - fig_size (tuple): Figure size in inches.
    - font_scale (float): Scaling factor for all text in the plot.
    - show (bool): Call plt.show() at the end.

    Returns:
    - matplotlib.figure.Figure
    """
    lower_is_better = "surprise" in result_metric.lower() or "loss" in result_metric.lower()
    data = {}

    # === Best mean value per (x, y) ===
    for exp in results:
        if param_x not in exp['params'] or param_y not in exp['params']:
            continue
        key = (exp['params'][param_x], exp['params'][param_y])
        values = exp['results'][result_metric]
        mean_val = float(np.mean(values))
        err_val = float(sem(values)) if len(values) > 1 else 0.0
        if key not in data or (lower_is_better and mean_val < data[key][0]) or \
                (not lower_is_better and mean_val > data[key][0]):
            data[key] = (mean_val, err_val)

    if not data:
        raise ValueError(f"No experiment varies both {param_x} and {param_y}")

    # === Prepare matrix for heatmap ===
    x_values = sorted(set(k[0] for k in data))
    y_values = sorted(set(k[1] for k in data))
    heatmap_matrix = np.full((len(y_values), len(x_values)), np.nan)
    annot_matrix = np.full(heatmap_matrix.shape, "", dtype=object)

    for (x, y), (mean_val, err_val) in data.items():
        xi = x_values.index(x)
        yi = y_values.index(y)
        heatmap_matrix[yi, xi] = mean_val
        annot_matrix[yi, xi] = f"{mean_val:.3f}±{err_val:.3f}" if err_val > 0 else f"{mean_val:.3f}"

    norm = None
    if log_scale:
        vmin = max(np.nanmin(heatmap_matrix), 1e-5)
        vmax = max(np.nanmax(heatmap_matrix), vmin * 10)
        norm = LogNorm(vmin=vmin, vmax=vmax)

    # === Plot heatmap ===
    fig, ax = plt.subplots(figsize=fig_size)
    cmap = "coolwarm_r" if invert_colors else "coolwarm"
    sns.heatmap(
        heatmap_matrix, annot=annot_matrix, fmt="", cmap=cmap, norm=norm,
        xticklabels=[str(v) for v in x_values], yticklabels=[str(v) for v in y_values],
        annot_kws={"size": 12*font_scale}, ax=ax, cbar=True
    )

    ax.set_xlabel(format_display_name(param_x), fontsize=14*font_scale)
    ax.set_ylabel(format_display_name(param_y), fontsize=14*font_scale)
    ax.set_title(
        f"{format_display_name(result_metric)} by {format_display_name(param_x)} "
        f"and {format_display_name(param_y)}",
        fontsize=16*font_scale
    )

    if save_path:
        fig.savefig(f"{save_path}.png", bbox_inches="tight", dpi=300)
        print(f"Saved heatmap as {save_path}.png")

    if show:
        plt.show()
    return fig


def plot_belief_matrix(belief, title="Current preference estimate", save_path="", show=True):
    """
    Displays a preference matrix (users on the rows, items on the columns).

    Parameters:
    - belief (LearningEngine or Tensor or ndarray): An engine (its current estimate is shown) or a matrix.
    - title (str): Plot title.
    - save_path (str): If specified, saves the plot as a PNG file.
    - show (bool): Call plt.show() at the end.

    Returns:
    - matplotlib.figure.Figure
    """
    matrix = belief.current if hasattr(belief, "current") else belief
    if isinstance(matrix, torch.Tensor):
        matrix = matrix.detach().cpu().numpy()

    fig, ax = plt.subplots(figsize=(8, 6))
    sns.heatmap(np.asarray(matrix), cmap="coolwarm", center=0.0, ax=ax, cbar=True)
    ax.set_xlabel("Item")
    ax.set_ylabel("User")
    ax.set_title(title)

    if save_path:
        fig.savefig(f"{save_path}.png", bbox_inches="tight", dpi=300)

    if show:
        plt.show()
    return fig


def get_best_params(results, result_metric):
    """
    Returns the (params, mean value) of the experiment with the best mean `result_metric`
    (lowest for surprise rates and losses, highest otherwise).
    """
    lower_is_better = "surprise" in result_metric.lower() or "loss" in result_metric.lower()
    means = [float(np.mean(exp['results'][result_metric])) for exp in results]
    best = int(np.argmin(means)) if lower_is_better else int(np.argmax(means))
    return results[best]['params'], means[best]


def print_results(results, indices=None, metrics=("surprise_rate", "final_surprise_rate", "ranking_accuracy", "spearman_corr")):
    """Prints the parameters and the mean scalar metrics of the selected experiments."""
    if indices is None:
        indices = range(len(results))
    for idx in indices:
        exp = results[idx]
        print(f"Experiment {idx + 1}: {exp['params']}")
        for metric in metrics:
            if metric in exp['results']:
                print(f"  {format_display_name(metric)}: {np.mean(exp['results'][metric]):.4f}")

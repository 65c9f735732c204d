"""
Visualization utilities for PhyloMM diagnostics.
"""

from typing import Dict, Optional

import numpy as np

__all__ = []


def plot_predictive_check(check: Dict[str, object], title: str = "Posterior predictive check", bins: int = 30, ax=None):
    """Histogram of simulated statistics with the observed value marked.

    Args:
        check: Output of ``predictive_check``.
        title: Plot title.
        bins: Number of histogram bins.
        ax: Existing axes to draw on; a new figure is created if ``None``.

    Returns:
        The matplotlib axes.

    Raises:
        ImportError: If ``matplotlib`` is not installed.
    """
    try:
        import matplotlib.pyplot as plt
    except ImportError:
        raise ImportError("matplotlib required for plotting: pip install matplotlib") from None

    if ax is None:
        _, ax = plt.subplots(figsize=(8, 5))

    simulated = np.asarray(check["simulated"], dtype=np.float64)
    observed = float(check["observed"])

    ax.hist(simulated, bins=bins, color="lightsteelblue", edgecolor="white", label="simulated")
    ax.axvline(observed, color="firebrick", linestyle="--", linewidth=2, label=f"observed (p={check['pvalue']:.3f})")
    ax.set_xlabel("Statistic")
    ax.set_ylabel("Frequency")
    ax.set_title(title)
    ax.legend()
    return ax


def plot_correlation_matrix(corrs: np.ndarray, trait_names: Optional[list] = None, title: str = "Phylogenetic correlations", ax=None):
    """Heatmap of a ``cor_phylo`` correlation matrix with annotated cells.

    Raises:
        ImportError: If ``matplotlib`` is not installed.
    """
    try:
        import matplotlib.pyplot as plt
    except ImportError:
        raise ImportError("matplotlib required for plotting: pip install matplotlib") from None

    corrs = np.asarray(corrs, dtype=np.float64)
    k = corrs.shape[0]
    if trait_names is None:
        trait_names = [f"X{i + 1}" for i in range(k)]

    if ax is None:
        _, ax = plt.subplots(figsize=(6, 5))

    ax.imshow(corrs, cmap="RdBu_r", vmin=-1.0, vmax=1.0)
    ax.set_xticks(range(k))
    ax.set_yticks(range(k))
    ax.set_xticklabels(trait_names)
    ax.set_yticklabels(trait_names)
    for i in range(k):
        for j in range(k):
            ax.text(j, i, f"{corrs[i, j]:.2f}", ha="center", va="center")
    ax.set_title(title)
    return ax

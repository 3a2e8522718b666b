"""Posterior summaries and credible-interval plots of the latent ratio."""
from pathlib import Path
from typing import Optional, Sequence

import matplotlib.dates as mdates
import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import seaborn as sns

from bfratio.models.diagnostics import parameter_correlation

DEFAULT_QUANTILES = (2.5, 50.0, 97.5)


def posterior_quantiles(samples: np.ndarray, quantiles: Sequence[float] = DEFAULT_QUANTILES) -> np.ndarray:
    """Percentiles over the (chain, draw) axes.

    Args:
        samples: Array of shape (chain, draw, n).
        quantiles: Percentiles in [0, 100].

    Returns:
        Array of shape (len(quantiles), n).
    """
    samples = np.asarray(samples, dtype=float)
    if samples.ndim != 3:
        raise ValueError(f"Expected samples with shape (chain, draw, n), got {samples.shape}")
    return np.percentile(samples, list(quantiles), axis=(0, 1))


def summarize_latent_state(
    idata,
    data: dict,
    var_name: str = "x",
    quantiles: Sequence[float] = DEFAULT_QUANTILES,
) -> pd.DataFrame:
    """Ratio-scale quantiles of the latent state at every timestep.

    Args:
        idata: InferenceData holding the latent log-ratio ``var_name``.
        data: Model data bundle with ``_time`` and ``_ratio`` metadata.
        var_name: Name of the latent state variable.
        quantiles: Low, median and high percentiles.

    Returns:
        DataFrame with columns date, ratio_low, ratio_median, ratio_high,
        ratio_observed.
    """
    if var_name not in idata.posterior:
        raise ValueError(
            f"No {var_name} variable found in posterior. "
            f"Available variables: {list(idata.posterior.data_vars)}"
        )

    samples = idata.posterior[var_name].values
    n = samples.shape[2]
    if n != len(data["_time"]):
        raise ValueError(
            f"Latent state length mismatch: {var_name} has {n} timesteps, "
            f"time axis has {len(data['_time'])}"
        )

    # Undo the log transform
    low, median, high = np.exp(posterior_quantiles(samples, quantiles))

    return pd.DataFrame({
        "date": data["_time"],
        "ratio_low": low,
        "ratio_median": median,
        "ratio_high": high,
        "ratio_observed": data["_ratio"],
    })


def _format_month_axis(ax):
    ax.xaxis.set_major_locator(mdates.MonthLocator())
    ax.xaxis.set_major_formatter(mdates.DateFormatter("%Y-%m"))
    for label in ax.get_xticklabels():
        label.set_rotation(90)


def plot_ratio_envelope(
    idata,
    data: dict,
    ax=None,
    title: Optional[str] = None,
    output_path: Path | str = None,
    show_legend: bool = True,
):
    """Plot the 95% envelope and median of the latent ratio with observations.

    Args:
        idata: InferenceData with the latent state ``x``.
        data: Model data bundle (see prepare_model_data()).
        ax: Axes to draw on (a new figure is created if None).
        title: Plot title (default: the site identifier).
        output_path: Optional path to save the figure.
        show_legend: Whether to draw a legend.

    Returns:
        Tuple of (fig, ax).
    """
    summary = summarize_latent_state(idata, data)

    if ax is None:
        fig, ax = plt.subplots(1, 1, figsize=(12, 4))
    else:
        fig = ax.figure

    ax.fill_between(
        summary["date"], summary["ratio_low"], summary["ratio_high"],
        alpha=0.3, color="lightblue", label="95% CI",
    )
    ax.plot(summary["date"], summary["ratio_median"], "b-", linewidth=1.5, label="Posterior median")
    # NaN observations are skipped by scatter
    ax.scatter(
        summary["date"], summary["ratio_observed"],
        s=20, color="black", zorder=10, label="Observed",
    )

    _format_month_axis(ax)
    ax.set_ylabel("Bacteria:fungi ratio")
    ax.set_title(title if title is not None else f"Site {data.get('_site_id')}")
    ax.grid(True, alpha=0.3)
    if show_legend:
        ax.legend(loc="upper left")

    if output_path:
        output_path = Path(output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        fig.savefig(output_path, dpi=150, bbox_inches="tight")
        print(f"Saved plot to {output_path}")

    return fig, ax


def plot_all_sites(results: dict, output_path: Path | str = None):
    """Stack one envelope plot per site vertically.

    Args:
        results: Mapping site_id -> fit_site() result.
        output_path: Optional path to save the figure.

    Returns:
        matplotlib Figure object.
    """
    if not results:
        raise ValueError("No site results to plot")

    n_sites = len(results)
    fig, axes = plt.subplots(n_sites, 1, figsize=(12, 2.8 * n_sites), layout="compressed", squeeze=False)

    for ax, (site_id, result) in zip(axes[:, 0], results.items()):
        plot_ratio_envelope(result["idata"], result["data"], ax=ax, title=f"Site {site_id}",
                            show_legend=ax is axes[0, 0])

    if output_path:
        output_path = Path(output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        fig.savefig(output_path, dpi=150, bbox_inches="tight")
        print(f"Saved plot to {output_path}")

    return fig


def plot_parameter_correlation(
    idata,
    var_names: Optional[Sequence[str]] = None,
    title: str = "Posterior parameter correlation",
    output_path: Path | str = None,
):
    """Heatmap of the pooled-draw correlation between scalar parameters."""
    corr = parameter_correlation(idata, var_names)

    fig, ax = plt.subplots(figsize=(7, 6))
    sns.heatmap(corr, annot=True, fmt=".2f", cmap="RdBu_r", vmin=-1, vmax=1, ax=ax)
    ax.set_title(title)
    fig.tight_layout()

    if output_path:
        output_path = Path(output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        fig.savefig(output_path, dpi=150)
        print(f"Saved correlation heatmap to {output_path}")

    return fig

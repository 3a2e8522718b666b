"""Convergence diagnostics for multi-chain posterior draws."""
from typing import Optional, Sequence

import arviz as az
import numpy as np
import pandas as pd

# Potential scale reduction must stay below this for every monitored parameter
RHAT_THRESHOLD = 1.1


class ConvergenceError(RuntimeError):
    """Raised when a fit's R-hat values reach the convergence threshold."""

    def __init__(self, site_id, rhat: pd.Series, threshold: float = RHAT_THRESHOLD):
        self.site_id = site_id
        self.rhat = rhat
        self.threshold = threshold
        failing = unconverged_parameters(rhat, threshold)
        label = f"Site {site_id}" if site_id is not None else "Fit"
        super().__init__(
            f"{label} did not converge: R-hat >= {threshold} for "
            + ", ".join(f"{name}={rhat[name]:.3f}" for name in failing)
        )


def convergence_diagnostics(idata, var_names: Optional[Sequence[str]] = None) -> pd.Series:
    """Potential scale reduction factor per parameter.

    Args:
        idata: InferenceData with at least two chains.
        var_names: Parameters to check (default: all posterior variables).

    Returns:
        Series indexed by parameter name. Vector parameters report the
        largest R-hat over their elements.
    """
    posterior = idata.posterior
    if var_names is None:
        var_names = list(posterior.data_vars)
    if posterior.sizes.get("chain", 1) < 2:
        raise ValueError("R-hat needs at least 2 chains")

    rhat = az.rhat(idata, var_names=list(var_names))
    values = {}
    for var in var_names:
        vals = np.asarray(rhat[var].values, dtype=float)
        values[var] = float(np.max(vals)) if vals.size > 0 else np.nan
    return pd.Series(values, name="rhat")


def unconverged_parameters(rhat: pd.Series, threshold: float = RHAT_THRESHOLD) -> list:
    """Parameters whose R-hat is at or above ``threshold`` (or undefined)."""
    return [name for name, value in rhat.items() if not np.isfinite(value) or value >= threshold]


def is_converged(rhat: pd.Series, threshold: float = RHAT_THRESHOLD) -> bool:
    return len(unconverged_parameters(rhat, threshold)) == 0


def assert_converged(rhat: pd.Series, site_id=None, threshold: float = RHAT_THRESHOLD):
    """Raise ConvergenceError unless every R-hat is below ``threshold``."""
    if not is_converged(rhat, threshold):
        raise ConvergenceError(site_id, rhat, threshold)


def parameter_correlation(idata, var_names: Optional[Sequence[str]] = None) -> pd.DataFrame:
    """Correlation matrix of scalar parameters, pooling chains and draws."""
    posterior = idata.posterior
    if var_names is None:
        var_names = list(posterior.data_vars)

    columns = {}
    for var in var_names:
        values = posterior[var].values
        if values.ndim != 2:
            continue
        columns[var] = values.reshape(-1)
    return pd.DataFrame(columns).corr()


def print_diagnostics(rhat: pd.Series, threshold: float = RHAT_THRESHOLD):
    """Print R-hat per parameter, flagging values at or above ``threshold``."""
    print(f"\nR-hat statistics (should be <{threshold}):")
    for var, val in rhat.items():
        if not np.isfinite(val) or val >= threshold:
            print(f"  {var:<16} {val:.3f} *** High!")
        else:
            print(f"  {var:<16} {val:.3f}")

"""Build the per-site design matrix and model data bundle."""
from typing import Any, Dict

import numpy as np
import pandas as pd

# Column order of the design matrix Z
DESIGN_COLUMNS = ["intercept", "min_temp", "precip", "ph", "litter_depth"]

# Design matrix columns feeding the process model covariates
PROCESS_COVARIATES = {"temp": "min_temp", "precip": "precip"}


def build_design_matrix(df_site: pd.DataFrame) -> Dict[str, Any]:
    """Assemble the design matrix, log response and time axis for one site.

    Rows are taken in the order given; nothing is sorted, dropped or imputed.
    Missing covariates stay NaN in Z, and a missing or non-positive ratio
    becomes a NaN log response.

    Args:
        df_site: Site dataset with columns year_month ("YYYY-MM"), ratio,
            min_temp, precip, ph, litter_depth.

    Returns:
        Dictionary with:
        - n: number of timesteps
        - Z: (n, 5) float array, columns DESIGN_COLUMNS, first column all 1
        - y: length-n log ratio
        - _time: DatetimeIndex anchored to the first day of each month
        - _ratio: length-n ratio on the original scale
        - _site_id: site identifier (None if the frame has no site_id)
        - _columns: DESIGN_COLUMNS
    """
    n = len(df_site)

    Z = np.empty((n, len(DESIGN_COLUMNS)), dtype=float)
    Z[:, 0] = 1.0
    for j, col in enumerate(DESIGN_COLUMNS[1:], start=1):
        Z[:, j] = pd.to_numeric(df_site[col], errors="coerce").to_numpy(dtype=float)

    ratio = pd.to_numeric(df_site["ratio"], errors="coerce").to_numpy(dtype=float)
    y = np.full(n, np.nan)
    positive = np.isfinite(ratio) & (ratio > 0)
    y[positive] = np.log(ratio[positive])

    time = pd.DatetimeIndex(pd.to_datetime(df_site["year_month"].astype(str), format="%Y-%m"))

    site_id = None
    if "site_id" in df_site.columns and n > 0:
        site_id = str(df_site["site_id"].iloc[0])

    return {
        "n": n,
        "Z": Z,
        "y": y,
        "_time": time,
        "_ratio": ratio,
        "_site_id": site_id,
        "_columns": list(DESIGN_COLUMNS),
    }


def count_observed(design: Dict[str, Any]) -> int:
    """Number of timesteps with a defined log response."""
    return int(np.isfinite(design["y"]).sum())


def prepare_model_data(design: Dict[str, Any], hyperparameters: Dict[str, float]) -> Dict[str, Any]:
    """Combine a design with the hyperparameter bundle into sampler input.

    The bundle is sampler-neutral: missing values remain NaN and each backend
    converts them to whatever its engine requires.

    Args:
        design: Output of build_design_matrix().
        hyperparameters: Scalar hyperparameters (see ModelConfig.as_dict()).

    Returns:
        Dictionary with n, y, Z, one vector per process covariate
        (temp, precip), the hyperparameters, and the design's metadata keys.
    """
    if design["n"] < 2:
        raise ValueError(f"State-space model needs at least 2 timesteps, got n={design['n']}")

    data = {
        "n": int(design["n"]),
        "y": np.asarray(design["y"], dtype=float),
        "Z": np.asarray(design["Z"], dtype=float),
    }
    for name, column in PROCESS_COVARIATES.items():
        data[name] = data["Z"][:, DESIGN_COLUMNS.index(column)].copy()

    data.update({key: float(value) for key, value in hyperparameters.items()})

    # Carry metadata through for plotting and caching
    data.update({key: value for key, value in design.items() if key.startswith("_")})
    return data

"""Fit the bacteria:fungi ratio state-space model site by site."""
import hashlib
import json
import math
from datetime import datetime
from pathlib import Path
from typing import Optional, Sequence

import arviz as az
import numpy as np
import pandas as pd
import xarray as xr

from bfratio.data.design import build_design_matrix, count_observed, prepare_model_data
from bfratio.data.site_months import list_sites, site_dataset
from bfratio.models.diagnostics import (
    RHAT_THRESHOLD,
    ConvergenceError,
    assert_converged,
    convergence_diagnostics,
    is_converged,
    parameter_correlation,
    print_diagnostics,
)
from bfratio.models.samplers import SamplerError
from bfratio.models.spec import ModelConfig, StateSpaceSpec, default_spec, render_stan

# Every fit stores its draws in the posterior group only
IDATA_GROUPS = ("posterior",)


def iterations_for_site(
    n_observed: int,
    dense_iter: int = 30000,
    sparse_iter: int = 100000,
    reference_obs: int = 12,
) -> int:
    """Production iteration count for a site with ``n_observed`` ratios.

    Sites with at least ``reference_obs`` observations get ``dense_iter``;
    sparser sites get proportionally more, capped at ``sparse_iter``.
    """
    if n_observed <= 0:
        return sparse_iter
    scale = math.ceil(reference_obs / n_observed)
    return int(min(max(dense_iter * scale, dense_iter), sparse_iter))


def _serializable(value):
    if isinstance(value, np.ndarray):
        return [None if not np.isfinite(v) else float(v) for v in value.ravel()]
    if isinstance(value, np.generic):
        return value.item()
    if isinstance(value, (int, float, str, bool)) or value is None:
        return value
    return str(value)


def _compute_cache_key(
    spec: StateSpaceSpec,
    data: dict,
    sampler,
    chains: int,
    n_iter: int,
    diagnostic_iter: int,
    max_extensions: int,
) -> tuple[str, dict]:
    """Compute SHA256 hash of model, data and sampler settings for caching.

    Returns:
        Tuple of (cache_key, config_dict) where config_dict contains all
        values used to compute the hash.
    """
    config = {
        "program": render_stan(spec),
        "data": {k: _serializable(v) for k, v in data.items()
                 if not k.startswith("_") and k != "Z"},
        "site_id": data.get("_site_id"),
        "sampler": type(sampler).__name__,
        "sampler_settings": {k: _serializable(v) for k, v in vars(sampler).items()},
        "chains": chains,
        "n_iter": n_iter,
        "diagnostic_iter": diagnostic_iter,
        "max_extensions": max_extensions,
    }

    config_str = json.dumps(config, sort_keys=True, default=str)
    cache_key = hashlib.sha256(config_str.encode()).hexdigest()
    return cache_key, config


def _save_cache(cache_dir: Path, result: dict, config: dict):
    """Save a site fit to the cache directory."""
    cache_dir = Path(cache_dir)
    cache_dir.mkdir(parents=True, exist_ok=True)

    _write_idata(result["idata"], cache_dir / "idata.nc")
    _write_idata(result["diagnostic_idata"], cache_dir / "diagnostic_idata.nc")

    metadata = {
        "config": {k: v for k, v in config.items() if k != "program"},
        "rhat": result["rhat"].to_dict(),
        "n_iter": result["n_iter"],
        "diagnostic_iter": result["diagnostic_iter"],
        "converged": result["converged"],
        "created": datetime.now().isoformat(),
    }
    with open(cache_dir / "metadata.json", "w") as f:
        json.dump(metadata, f, indent=2, default=str)

    print(f"Site fit cached to {cache_dir}")


def _write_idata(idata, path: Path):
    """Write draws through a temporary file so open readers never see a truncated file."""
    path = Path(path)
    tmp_path = path.with_name(path.name + ".tmp")
    idata.to_netcdf(tmp_path, engine="h5netcdf")
    tmp_path.replace(path)


def _load_idata(path: Path):
    """Read every group fully into memory and release the file handle."""
    groups = {}
    for group in IDATA_GROUPS:
        with xr.open_dataset(path, group=group, engine="h5netcdf") as ds:
            groups[group] = ds.load()
    return az.InferenceData(**groups)


def _save_draws(result: dict, output_dir: Path):
    """Persist the production draws of one site as NetCDF."""
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    draws_path = output_dir / f"{result['site_id']}_posterior.nc"
    _write_idata(result["idata"], draws_path)
    result["draws_path"] = draws_path
    print(f"Saved posterior draws to {draws_path}")


def _check_convergence(rhat: pd.Series, site_id, threshold: float, enforce: bool) -> bool:
    """Raise (or warn, when not enforcing) unless every R-hat is below ``threshold``."""
    converged = is_converged(rhat, threshold)
    if not converged:
        if enforce:
            assert_converged(rhat, site_id, threshold)
        print(f"Warning: site {site_id} did not converge (R-hat >= {threshold}); "
              "intervals may be unreliable")
    return converged


def _load_cache(cache_dir: Path, data: dict, spec: StateSpaceSpec) -> dict:
    """Load a site fit from the cache directory."""
    cache_dir = Path(cache_dir)

    with open(cache_dir / "metadata.json", "r") as f:
        metadata = json.load(f)

    diagnostic_idata = _load_idata(cache_dir / "diagnostic_idata.nc")
    idata = _load_idata(cache_dir / "idata.nc")

    print(f"Loaded cached site fit from {cache_dir}")
    return {
        "site_id": data.get("_site_id"),
        "data": data,
        "idata": idata,
        "diagnostic_idata": diagnostic_idata,
        "rhat": pd.Series(metadata["rhat"], name="rhat"),
        "correlation": parameter_correlation(diagnostic_idata, spec.coefficients),
        "n_iter": metadata["n_iter"],
        "diagnostic_iter": metadata["diagnostic_iter"],
        "converged": metadata["converged"],
    }


def _cache_exists(cache_dir: Path) -> bool:
    """Check if cache directory contains all required files."""
    required = [
        cache_dir / "metadata.json",
        cache_dir / "idata.nc",
        cache_dir / "diagnostic_idata.nc",
    ]
    return all(path.exists() for path in required)


def fit_site(
    df_site: pd.DataFrame,
    sampler,
    config: Optional[ModelConfig] = None,
    spec: Optional[StateSpaceSpec] = None,
    chains: int = 3,
    n_iter: Optional[int] = None,
    diagnostic_iter: int = 5000,
    max_extensions: int = 2,
    enforce_convergence: bool = True,
    threshold: float = RHAT_THRESHOLD,
    output_dir: Path | str = "output",
    save_draws: bool = False,
    cache: bool = False,
    force_refit: bool = False,
) -> dict:
    """Fit the state-space model to one site.

    Runs a diagnostic call monitoring coefficients and precisions, extends it
    (doubling the iterations) while any R-hat is at or above ``threshold``,
    then runs the production call that adds the latent state and random
    effects.

    Args:
        df_site: Site dataset (see site_dataset()).
        sampler: Backend with ``compile(spec, data, chains)``.
        config: Hyperparameters (default ModelConfig()).
        spec: Model description (default default_spec()).
        chains: Number of MCMC chains.
        n_iter: Production iterations per chain. If None, chosen from the
            number of observed ratios with iterations_for_site().
        diagnostic_iter: Iterations per chain of the first diagnostic call.
        max_extensions: How many times the diagnostic call may be extended.
        enforce_convergence: Raise ConvergenceError when R-hat stays at or
            above ``threshold``. If False, only print a warning.
        threshold: R-hat acceptance threshold.
        output_dir: Directory for persisted draws and cache.
        save_draws: Write the production draws to
            ``output_dir/<site_id>_posterior.nc``.
        cache: Whether to cache fits keyed on model, data and settings.
        force_refit: Force re-fitting even if a cached fit exists.

    Returns:
        Dictionary with site_id, data (model data bundle), idata (production
        draws), diagnostic_idata, rhat, correlation, n_iter, diagnostic_iter
        and converged (plus draws_path when save_draws is set).

    Raises:
        ConvergenceError: if enforcing and the diagnostic run never converges.
        SamplerError: if the engine fails.
    """
    config = config or ModelConfig()
    spec = spec or default_spec()
    output_dir = Path(output_dir)

    design = build_design_matrix(df_site)
    data = prepare_model_data(design, config.as_dict())
    site_id = data["_site_id"]
    n_observed = count_observed(design)
    if n_iter is None:
        n_iter = iterations_for_site(n_observed)

    print(f"\nSite {site_id}: {data['n']} timesteps, {n_observed} observed ratios "
          f"({data['_time'].min():%Y-%m} to {data['_time'].max():%Y-%m})")

    cache_dir = None
    cache_config = None
    if cache:
        cache_key, cache_config = _compute_cache_key(
            spec=spec,
            data=data,
            sampler=sampler,
            chains=chains,
            n_iter=n_iter,
            diagnostic_iter=diagnostic_iter,
            max_extensions=max_extensions,
        )
        cache_dir = output_dir / "cache" / cache_key

        if not force_refit and _cache_exists(cache_dir):
            result = _load_cache(cache_dir, data, spec)
            result["converged"] = _check_convergence(
                result["rhat"], site_id, threshold, enforce_convergence)
            if save_draws:
                _save_draws(result, output_dir)
            return result

    session = sampler.compile(spec, data, chains)

    # Short run on coefficients and precisions only
    diagnostic_vars = spec.diagnostic_vars()
    iters = diagnostic_iter
    diagnostic_idata = session.sample(diagnostic_vars, iters)
    rhat = convergence_diagnostics(diagnostic_idata, diagnostic_vars)
    print_diagnostics(rhat, threshold)

    extensions = 0
    while not is_converged(rhat, threshold) and extensions < max_extensions:
        extensions += 1
        iters *= 2
        print(f"Extending diagnostic run to {iters} iterations "
              f"(extension {extensions}/{max_extensions})...")
        diagnostic_idata = session.sample(diagnostic_vars, iters)
        rhat = convergence_diagnostics(diagnostic_idata, diagnostic_vars)
        print_diagnostics(rhat, threshold)

    converged = _check_convergence(rhat, site_id, threshold, enforce_convergence)

    correlation = parameter_correlation(diagnostic_idata, spec.coefficients)
    print("\nPosterior correlation of process coefficients:")
    print(correlation.round(2).to_string())

    # Full run feeding the plots
    idata = session.sample(spec.production_vars(), n_iter)

    result = {
        "site_id": site_id,
        "data": data,
        "idata": idata,
        "diagnostic_idata": diagnostic_idata,
        "rhat": rhat,
        "correlation": correlation,
        "n_iter": n_iter,
        "diagnostic_iter": iters,
        "converged": converged,
    }

    if save_draws:
        _save_draws(result, output_dir)

    if cache_dir is not None:
        _save_cache(cache_dir, result, cache_config)

    return result


def run_all_sites(
    df: pd.DataFrame,
    sampler,
    sites: Optional[Sequence[str]] = None,
    config: Optional[ModelConfig] = None,
    spec: Optional[StateSpaceSpec] = None,
    chains: int = 3,
    n_iter: Optional[int] = None,
    dense_iter: int = 30000,
    sparse_iter: int = 100000,
    reference_obs: int = 12,
    diagnostic_iter: int = 5000,
    max_extensions: int = 2,
    enforce_convergence: bool = True,
    output_dir: Path | str = "output",
    save_draws_for: Sequence[str] = (),
    cache: bool = False,
    force_refit: bool = False,
) -> tuple[dict, dict]:
    """Fit every site in turn; a failing site is reported and skipped.

    Args:
        df: Site-month table from load_site_month_data().
        sampler: Backend with ``compile(spec, data, chains)``.
        sites: Site identifiers to fit (default: all, in file order).
        n_iter: Fixed production iterations for every site. If None, each
            site gets iterations_for_site(n_observed, dense_iter,
            sparse_iter, reference_obs).
        save_draws_for: Sites whose production draws are written to disk.
        Other arguments are passed to fit_site().

    Returns:
        Tuple of (results, failures) where results maps site_id to the
        fit_site() dictionary and failures maps site_id to an error message.
    """
    config = config or ModelConfig()
    spec = spec or default_spec()
    sites = list(sites) if sites is not None else list_sites(df)

    results = {}
    failures = {}
    for site_id in sites:
        try:
            df_site = site_dataset(df, site_id)
            site_iter = n_iter
            if site_iter is None:
                n_observed = count_observed(build_design_matrix(df_site))
                site_iter = iterations_for_site(n_observed, dense_iter, sparse_iter, reference_obs)

            results[site_id] = fit_site(
                df_site,
                sampler,
                config=config,
                spec=spec,
                chains=chains,
                n_iter=site_iter,
                diagnostic_iter=diagnostic_iter,
                max_extensions=max_extensions,
                enforce_convergence=enforce_convergence,
                output_dir=output_dir,
                save_draws=site_id in save_draws_for,
                cache=cache,
                force_refit=force_refit,
            )
            print(f"✓ Site {site_id} fitted ({site_iter} iterations)")
        except (ConvergenceError, SamplerError, ValueError) as e:
            failures[site_id] = str(e)
            print(f"✗ Site {site_id} failed: {e}")

    print("\n" + "=" * 60)
    print(f"Fitted {len(results)}/{len(sites)} sites")
    for site_id, message in failures.items():
        print(f"  {site_id}: {message}")
    print("=" * 60)

    return results, failures

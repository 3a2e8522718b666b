"""Test site fitting, convergence enforcement and the multi-site batch."""
import sys
from pathlib import Path

import numpy as np
import pandas as pd
import pytest

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent.parent))

from bfratio.models.diagnostics import ConvergenceError
from bfratio.models.fit_ratio import fit_site, iterations_for_site, run_all_sites
from bfratio.models.plot_ratio import summarize_latent_state
from bfratio.models.samplers import GibbsSampler, SamplerError, draws_to_inference_data


def generate_site_frame(site_id="SITE", n=10, ratio=2.0, observed=None):
    """Constant true ratio with seasonal temperature and variable precipitation."""
    t = np.arange(n)
    df = pd.DataFrame({
        "site_id": site_id,
        "year_month": pd.date_range("2017-01-01", periods=n, freq="MS").strftime("%Y-%m"),
        "ratio": ratio,
        "min_temp": 4.0 + 6.0 * np.sin(2 * np.pi * t / 12),
        "precip": 2.0 + np.cos(2 * np.pi * t / 5),
        "ph": 5.5,
        "litter_depth": 1.5,
    })
    if observed is not None:
        mask = np.ones(n, dtype=bool)
        mask[list(observed)] = False
        df.loc[mask, "ratio"] = np.nan
    return df


class StubSampler:
    """Draws from a fixed normal, with one chain shifted for chosen sites."""

    compiled = []

    def __init__(self, offset_sites=(), offset=10.0):
        self.offset_sites = tuple(offset_sites)
        self.offset = offset

    def compile(self, spec, data, chains):
        StubSampler.compiled.append(data["_site_id"])
        offset = self.offset if data["_site_id"] in self.offset_sites else 0.0
        return StubSession(data["n"], chains, offset)


class StubSession:
    def __init__(self, n, chains, offset):
        self.n = n
        self.chains = chains
        self.offset = offset
        self.rng = np.random.default_rng(0)

    def sample(self, var_names, n_iter):
        draws = {}
        for name in var_names:
            if name in ("x", "alpha"):
                draws[name] = self.rng.normal(0.0, 0.1, (self.chains, n_iter, self.n))
            else:
                values = self.rng.normal(0.0, 1.0, (self.chains, n_iter))
                values[-1] += self.offset
                draws[name] = values
        return draws_to_inference_data(draws, self.n)


class FailingSampler:
    def compile(self, spec, data, chains):
        raise SamplerError("compiler not available")


def test_iterations_scale_with_sparsity():
    """Sparser sites never get fewer iterations; bounds are 30000 and 100000."""
    assert iterations_for_site(12) == 30000
    assert iterations_for_site(40) == 30000
    assert iterations_for_site(6) == 60000
    assert iterations_for_site(3) == 100000
    assert iterations_for_site(1) == 100000
    assert iterations_for_site(0) == 100000

    counts = [iterations_for_site(n) for n in range(1, 30)]
    assert all(a >= b for a, b in zip(counts, counts[1:]))
    print("✓ iteration count grows as sites get sparser")


def test_unconverged_site_raises():
    """A site whose chains disagree is rejected rather than plotted."""
    sampler = StubSampler(offset_sites=("BAD",))
    with pytest.raises(ConvergenceError, match="BAD did not converge") as excinfo:
        fit_site(generate_site_frame("BAD"), sampler, diagnostic_iter=200, max_extensions=1, n_iter=100)
    assert excinfo.value.rhat.max() > 1.1
    print("✓ unconverged site raises ConvergenceError")


def test_unconverged_site_warns_when_not_enforced():
    sampler = StubSampler(offset_sites=("BAD",))
    result = fit_site(generate_site_frame("BAD"), sampler, diagnostic_iter=200, max_extensions=0,
                      n_iter=100, enforce_convergence=False)

    assert not result["converged"]
    assert result["idata"].posterior["x"].shape == (3, 100, 10)


def test_converged_site_runs_both_calls():
    """Diagnostic draws hold coefficients and precisions; production adds the state."""
    StubSampler.compiled = []
    sampler = StubSampler()
    result = fit_site(generate_site_frame("OK"), sampler, diagnostic_iter=200, n_iter=100)

    assert result["converged"]
    assert result["diagnostic_iter"] == 200
    assert result["n_iter"] == 100
    assert StubSampler.compiled == ["OK"]
    assert set(result["diagnostic_idata"].posterior.data_vars) == {
        "beta_x", "beta_intercept", "beta_temp", "beta_precip", "tau_obs", "tau_add", "tau_alpha",
    }
    assert list(result["correlation"].columns) == ["beta_x", "beta_intercept", "beta_temp", "beta_precip"]


def test_batch_continues_after_site_failure():
    """One failing site is recorded without aborting the remaining sites."""
    df = pd.concat([
        generate_site_frame("GOOD_1"),
        generate_site_frame("BAD"),
        generate_site_frame("TINY", n=1),
        generate_site_frame("GOOD_2"),
    ], ignore_index=True)

    results, failures = run_all_sites(
        df, StubSampler(offset_sites=("BAD",)), n_iter=100, diagnostic_iter=200, max_extensions=0,
    )

    assert list(results) == ["GOOD_1", "GOOD_2"]
    assert set(failures) == {"BAD", "TINY"}
    assert "did not converge" in failures["BAD"]
    assert "at least 2" in failures["TINY"]
    print("✓ batch records failures and keeps going")


def test_batch_reports_sampler_failure():
    results, failures = run_all_sites(generate_site_frame("A"), FailingSampler(), n_iter=10)
    assert results == {}
    assert "compiler not available" in failures["A"]


def test_save_draws_for_deep_dive_site(tmp_path):
    df = pd.concat([generate_site_frame("A"), generate_site_frame("B")], ignore_index=True)

    results, failures = run_all_sites(
        df, StubSampler(), n_iter=50, diagnostic_iter=100,
        output_dir=tmp_path, save_draws_for=("B",),
    )

    assert failures == {}
    assert "draws_path" not in results["A"]
    assert results["B"]["draws_path"] == tmp_path / "B_posterior.nc"
    assert (tmp_path / "B_posterior.nc").exists()
    assert not (tmp_path / "A_posterior.nc").exists()


def test_cached_fit_is_reloaded(tmp_path):
    """A second fit with identical inputs loads from disk without sampling."""
    StubSampler.compiled = []
    sampler = StubSampler()
    df_site = generate_site_frame("CACHED")

    first = fit_site(df_site, sampler, n_iter=50, diagnostic_iter=100, output_dir=tmp_path, cache=True)
    second = fit_site(df_site, sampler, n_iter=50, diagnostic_iter=100, output_dir=tmp_path, cache=True)

    assert StubSampler.compiled == ["CACHED"]
    np.testing.assert_allclose(
        second["idata"].posterior["x"].values, first["idata"].posterior["x"].values,
    )
    assert second["rhat"].to_dict() == pytest.approx(first["rhat"].to_dict())

    # Rewriting the cache while the loaded fit is still referenced
    third = fit_site(df_site, sampler, n_iter=50, diagnostic_iter=100, output_dir=tmp_path,
                     cache=True, force_refit=True)
    assert StubSampler.compiled == ["CACHED", "CACHED"]
    assert second["idata"].posterior["x"].shape == (3, 50, 10)
    assert third["idata"].posterior["x"].shape == (3, 50, 10)
    print("✓ cached fit reloaded and rewritten")


def test_cached_unconverged_fit_rejected_when_enforcing(tmp_path):
    """A fit cached without enforcement still fails a later enforcing run."""
    sampler = StubSampler(offset_sites=("BAD",))
    df_site = generate_site_frame("BAD")
    kwargs = dict(n_iter=50, diagnostic_iter=100, max_extensions=0, output_dir=tmp_path, cache=True)

    first = fit_site(df_site, sampler, enforce_convergence=False, **kwargs)
    assert not first["converged"]

    with pytest.raises(ConvergenceError, match="BAD did not converge"):
        fit_site(df_site, sampler, enforce_convergence=True, **kwargs)

    # Advisory mode still returns the cached fit
    again = fit_site(df_site, sampler, enforce_convergence=False, **kwargs)
    assert not again["converged"]


def test_cached_fit_writes_deep_dive_draws(tmp_path):
    """Requesting draws on a cache hit still writes the draw file."""
    StubSampler.compiled = []
    sampler = StubSampler()
    df_site = generate_site_frame("A")
    kwargs = dict(n_iter=50, diagnostic_iter=100, output_dir=tmp_path, cache=True)

    fit_site(df_site, sampler, **kwargs)
    assert not (tmp_path / "A_posterior.nc").exists()

    result = fit_site(df_site, sampler, save_draws=True, **kwargs)

    assert StubSampler.compiled == ["A"]
    assert result["draws_path"] == tmp_path / "A_posterior.nc"
    assert (tmp_path / "A_posterior.nc").exists()


def test_constant_ratio_recovered():
    """Ten noiseless observations of ratio 2.0 give medians near 2.0."""
    sampler = GibbsSampler(n_adapt=1000, seed=11)
    result = fit_site(generate_site_frame("CONST"), sampler, chains=3, n_iter=2000,
                      diagnostic_iter=500, max_extensions=0, enforce_convergence=False)

    summary = summarize_latent_state(result["idata"], result["data"])

    np.testing.assert_allclose(summary["ratio_median"], 2.0, rtol=0.1)
    assert np.all(summary["ratio_low"] <= 2.0)
    assert np.all(summary["ratio_high"] >= 2.0)
    print(f"✓ constant ratio recovered: medians {summary['ratio_median'].round(3).tolist()}")


def test_sparse_site_has_wider_intervals():
    """Two observed timesteps leave the latent ratio far less certain than ten."""
    sampler_kwargs = dict(chains=3, n_iter=2000, diagnostic_iter=500, max_extensions=0,
                          enforce_convergence=False)
    dense = fit_site(generate_site_frame("DENSE"), GibbsSampler(n_adapt=1000, seed=3), **sampler_kwargs)
    sparse = fit_site(generate_site_frame("SPARSE", observed=[0, 9]),
                      GibbsSampler(n_adapt=1000, seed=3), **sampler_kwargs)

    def mean_log_width(result):
        summary = summarize_latent_state(result["idata"], result["data"])
        return np.mean(np.log(summary["ratio_high"] / summary["ratio_low"]))

    dense_width = mean_log_width(dense)
    sparse_width = mean_log_width(sparse)

    assert sparse_width > 2.0 * dense_width
    print(f"✓ interval width: dense {dense_width:.3f}, sparse {sparse_width:.3f}")


if __name__ == "__main__":
    test_iterations_scale_with_sparsity()
    test_constant_ratio_recovered()
    test_sparse_site_has_wider_intervals()

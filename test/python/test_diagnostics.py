"""Test convergence diagnostics on synthetic multi-chain draws."""
import sys
from pathlib import Path

import arviz as az
import numpy as np
import pandas as pd
import pytest

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent.parent))

from bfratio.models.diagnostics import (
    ConvergenceError,
    assert_converged,
    convergence_diagnostics,
    is_converged,
    parameter_correlation,
    unconverged_parameters,
)


def make_idata(n_chains=4, n_draws=2000, offset=0.0, seed=0):
    """Draws from one fixed distribution; the last chain optionally shifted."""
    rng = np.random.default_rng(seed)
    beta = rng.normal(0.0, 1.0, (n_chains, n_draws))
    tau = rng.gamma(5.0, 1.0, (n_chains, n_draws))
    x = rng.normal(0.0, 1.0, (n_chains, n_draws, 6))
    beta[-1] += offset
    return az.from_dict(posterior={"beta": beta, "tau": tau, "x": x})


def test_rhat_near_one_for_identical_chains():
    rhat = convergence_diagnostics(make_idata())

    assert list(rhat.index) == ["beta", "tau", "x"]
    assert np.all(np.abs(rhat.values - 1.0) < 0.02)
    assert is_converged(rhat)
    print(f"✓ R-hat near 1 for well-mixed chains: {rhat.round(4).to_dict()}")


def test_rhat_flags_offset_chain():
    """One chain shifted by a large constant pushes R-hat above 1.1."""
    rhat = convergence_diagnostics(make_idata(offset=10.0), var_names=["beta", "tau"])

    assert rhat["beta"] > 1.1
    assert rhat["tau"] < 1.1
    assert unconverged_parameters(rhat) == ["beta"]
    assert not is_converged(rhat)
    print(f"✓ R-hat flags shifted chain: {rhat['beta']:.2f}")


def test_assert_converged_raises_with_site():
    rhat = pd.Series({"beta": 1.5, "tau": 1.0})
    with pytest.raises(ConvergenceError, match="SITE_X did not converge") as excinfo:
        assert_converged(rhat, site_id="SITE_X")
    assert excinfo.value.site_id == "SITE_X"
    assert "beta=1.500" in str(excinfo.value)


def test_threshold_is_exclusive():
    """A value exactly at the threshold fails."""
    assert not is_converged(pd.Series({"beta": 1.1}))
    assert not is_converged(pd.Series({"beta": np.nan}))
    assert is_converged(pd.Series({"beta": 1.099}))


def test_rhat_needs_multiple_chains():
    with pytest.raises(ValueError, match="2 chains"):
        convergence_diagnostics(make_idata(n_chains=1))


def test_parameter_correlation_skips_vectors():
    rng = np.random.default_rng(1)
    a = rng.normal(size=(2, 500))
    idata = az.from_dict(posterior={
        "a": a,
        "b": -2.0 * a + 0.01 * rng.normal(size=(2, 500)),
        "x": rng.normal(size=(2, 500, 3)),
    })

    corr = parameter_correlation(idata)

    assert list(corr.columns) == ["a", "b"]
    assert corr.loc["a", "b"] < -0.99


if __name__ == "__main__":
    test_rhat_near_one_for_identical_chains()
    test_rhat_flags_offset_chain()

"""MCMC backends behind a compile/sample interface.

Every backend exposes ``compile(spec, data, chains) -> session`` and
``session.sample(var_names, n_iter) -> az.InferenceData``. The returned
posterior holds one variable per requested name with (chain, draw) leading
dimensions; vector parameters carry a ``time`` dimension.

- StanSampler: CmdStan NUTS via cmdstanpy (production runs).
- GibbsSampler: in-process sampler for the linear-Gaussian ratio model
  (tests and quick runs without a CmdStan install).
"""
import hashlib
from pathlib import Path
from typing import Any, Dict, List, Sequence

import arviz as az
import numpy as np
from cmdstanpy import CmdStanModel

from bfratio.models.spec import (
    AR_COVARIATE,
    COVARIATE_FAMILIES,
    INTERCEPT_COVARIATE,
    StateSpaceSpec,
    hyperparameter_names,
    render_stan,
    validate_spec,
)

VECTOR_DIM = "time"


class SamplerError(RuntimeError):
    """Raised when an MCMC engine fails to produce draws."""


def _vector_dims(spec: StateSpaceSpec) -> Dict[str, List[str]]:
    names = [spec.state, spec.random_effect.name] + [cov.name for cov in spec.covariates]
    return {name: [VECTOR_DIM] for name in names}


def draws_to_inference_data(draws: Dict[str, np.ndarray], n: int) -> az.InferenceData:
    """Wrap ``{name: array(chain, draw, ...)}`` draws as InferenceData."""
    dims = {
        name: [VECTOR_DIM]
        for name, values in draws.items()
        if values.ndim == 3 and values.shape[2] == n
    }
    return az.from_dict(posterior=draws, coords={VECTOR_DIM: np.arange(n)}, dims=dims)


# ---------------------------------------------------------------------------
# Stan backend
# ---------------------------------------------------------------------------

def stan_inputs(spec: StateSpaceSpec, data: Dict[str, Any]) -> Dict[str, Any]:
    """Convert a NaN-coded data bundle into the index-array form Stan reads."""
    n = int(data["n"])
    result = {"n": n}

    y = np.asarray(data[spec.response], dtype=float)
    obs = np.flatnonzero(np.isfinite(y))
    result.update({
        f"n_{spec.response}_obs": len(obs),
        f"{spec.response}_obs_idx": (obs + 1).tolist(),
        f"{spec.response}_obs": y[obs].tolist(),
    })

    for cov in spec.covariates:
        values = np.asarray(data[cov.name], dtype=float)
        observed = np.isfinite(values)
        obs = np.flatnonzero(observed)
        mis = np.flatnonzero(~observed)
        result.update({
            f"n_{cov.name}_obs": len(obs),
            f"{cov.name}_obs_idx": (obs + 1).tolist(),
            f"{cov.name}_obs": values[obs].tolist(),
            f"n_{cov.name}_mis": len(mis),
            f"{cov.name}_mis_idx": (mis + 1).tolist(),
        })

    for name in hyperparameter_names(spec):
        if name not in data:
            raise ValueError(f"Model data is missing hyperparameter {name}")
        result[name] = float(data[name])

    return result


class StanSession:
    """A compiled Stan model bound to one site's data."""

    def __init__(self, model: CmdStanModel, spec: StateSpaceSpec, stan_data: dict,
                 chains: int, sampler: "StanSampler"):
        self.model = model
        self.spec = spec
        self.stan_data = stan_data
        self.chains = chains
        self.sampler = sampler
        self._calls = 0

    def sample(self, var_names: Sequence[str], n_iter: int) -> az.InferenceData:
        """Run NUTS and return draws for ``var_names``."""
        self._calls += 1
        print(f"Sampling {self.chains} chains x {n_iter} iterations "
              f"({len(var_names)} monitored parameters)...")
        try:
            fit = self.model.sample(
                data=self.stan_data,
                chains=self.chains,
                iter_warmup=self.sampler.iter_warmup,
                iter_sampling=n_iter,
                thin=self.sampler.thin,
                seed=self.sampler.seed + self._calls,
                adapt_delta=self.sampler.adapt_delta,
                max_treedepth=self.sampler.max_treedepth,
                show_progress=self.sampler.show_progress,
            )
        except (RuntimeError, ValueError) as e:
            raise SamplerError(f"Stan sampling failed: {e}") from e

        idata = az.from_cmdstanpy(
            posterior=fit,
            coords={VECTOR_DIM: np.arange(self.stan_data["n"])},
            dims=_vector_dims(self.spec),
        )

        missing = [name for name in var_names if name not in idata.posterior]
        if missing:
            raise SamplerError(f"Stan output has no variables named {missing}")
        return az.InferenceData(posterior=idata.posterior[list(var_names)])


class StanSampler:
    """CmdStan backend.

    Args:
        stan_dir: Directory where rendered Stan programs (and their compiled
            executables) are kept. Programs are named by content hash so
            every site reuses the same executable.
        iter_warmup: Warmup iterations per chain for every sample() call.
        thin: Keep every ``thin``-th draw.
        seed: Base random seed.
        adapt_delta: Target acceptance probability for NUTS.
        max_treedepth: Maximum tree depth for NUTS.
        show_progress: Show CmdStan progress bars.
    """

    def __init__(
        self,
        stan_dir: Path | str = "stan",
        iter_warmup: int = 1000,
        thin: int = 1,
        seed: int = 42,
        adapt_delta: float = 0.95,
        max_treedepth: int = 12,
        show_progress: bool = False,
    ):
        self.stan_dir = Path(stan_dir)
        self.iter_warmup = iter_warmup
        self.thin = thin
        self.seed = seed
        self.adapt_delta = adapt_delta
        self.max_treedepth = max_treedepth
        self.show_progress = show_progress

    def write_program(self, spec: StateSpaceSpec) -> Path:
        """Write the rendered program and return its path."""
        program = render_stan(spec)
        digest = hashlib.sha256(program.encode()).hexdigest()[:12]
        stan_file = self.stan_dir / f"ratio_dlm_{digest}.stan"
        if not stan_file.exists():
            self.stan_dir.mkdir(parents=True, exist_ok=True)
            stan_file.write_text(program)
        return stan_file

    def compile(self, spec: StateSpaceSpec, data: Dict[str, Any], chains: int) -> StanSession:
        stan_file = self.write_program(spec)
        stan_data = stan_inputs(spec, data)

        print(f"Compiling Stan model {stan_file}...")
        try:
            model = CmdStanModel(stan_file=str(stan_file))
        except (RuntimeError, ValueError) as e:
            raise SamplerError(f"Failed to compile {stan_file}: {e}") from e

        return StanSession(model, spec, stan_data, chains, self)


# ---------------------------------------------------------------------------
# In-process Gibbs backend
# ---------------------------------------------------------------------------

class _ChainState:
    """Current values of every unknown in one Gibbs chain."""

    def __init__(self, session: "GibbsSession", rng: np.random.Generator):
        spec = session.spec
        n = session.n
        self.rng = rng

        # Latent state starts at the interpolated observations
        y = session.y
        observed = np.flatnonzero(np.isfinite(y))
        if len(observed) > 0:
            self.x = np.interp(np.arange(n), observed, y[observed])
        else:
            self.x = np.full(n, session.hyper_value(spec.initial_state.params[0]))
        self.x = self.x + rng.normal(0.0, 0.1, size=n)

        self.alpha = np.zeros(n)
        self.beta = np.zeros(len(spec.process_terms))
        self.tau = {name: 1.0 for name in spec.precisions}

        self.covariate = {}
        self.covariate_mean = {}
        for cov in spec.covariates:
            values = session.covariates[cov.name].copy()
            missing = ~np.isfinite(values)
            if COVARIATE_FAMILIES[cov.family]:
                usable = values[~missing & (values > 0)]
                fill = np.exp(np.mean(np.log(usable))) if len(usable) > 0 else 1.0
            else:
                usable = values[~missing]
                fill = np.mean(usable) if len(usable) > 0 else 0.0
            values[missing] = fill
            self.covariate[cov.name] = values
            self.covariate_mean[cov.name] = np.log(fill) if COVARIATE_FAMILIES[cov.family] else fill


class GibbsSession:
    """Gibbs chains for one site's data; state persists across sample() calls."""

    def __init__(self, spec: StateSpaceSpec, data: Dict[str, Any], chains: int,
                 n_adapt: int, seed: int, mh_step: float):
        self.spec = spec
        self.n = int(data["n"])
        self.y = np.asarray(data[spec.response], dtype=float)
        self.observed = np.isfinite(self.y)
        self.covariates = {cov.name: np.asarray(data[cov.name], dtype=float)
                           for cov in spec.covariates}
        self.missing = {name: np.flatnonzero(~np.isfinite(values))
                        for name, values in self.covariates.items()}
        self.hyper = {}
        for name in hyperparameter_names(spec):
            if name not in data:
                raise ValueError(f"Model data is missing hyperparameter {name}")
            self.hyper[name] = float(data[name])
        self.mh_step = mh_step

        self._ar_index = None
        self._coef_index = {}
        for j, term in enumerate(spec.process_terms):
            self._coef_index[term.covariate] = j
            if term.covariate == AR_COVARIATE:
                self._ar_index = j

        self._chains = [
            _ChainState(self, np.random.default_rng([seed, chain]))
            for chain in range(chains)
        ]
        for state in self._chains:
            for _ in range(n_adapt):
                self._sweep(state)

    def hyper_value(self, param) -> float:
        if isinstance(param, str):
            return self.hyper[param]
        return float(param)

    def _prior_params(self, name: str):
        prior = self.spec.prior(name)
        return tuple(self.hyper_value(p) for p in prior.params)

    # -- linear predictor ---------------------------------------------------

    def _exogenous(self, state: _ChainState) -> np.ndarray:
        """Process mean without the autoregressive term and random effect."""
        total = np.zeros(self.n)
        for j, term in enumerate(self.spec.process_terms):
            if term.covariate == AR_COVARIATE:
                continue
            if term.covariate == INTERCEPT_COVARIATE:
                total += state.beta[j]
            else:
                total += state.beta[j] * state.covariate[term.covariate]
        return total

    def _ar_coefficient(self, state: _ChainState) -> float:
        return state.beta[self._ar_index] if self._ar_index is not None else 0.0

    def _process_mean(self, state: _ChainState) -> np.ndarray:
        mu = self._exogenous(state) + state.alpha
        mu[1:] += self._ar_coefficient(state) * state.x[:-1]
        mu[0] = np.nan
        return mu

    # -- conditional updates ------------------------------------------------

    def _update_covariates(self, state: _ChainState):
        spec = self.spec
        tau_add = state.tau[spec.process_precision]

        for cov in spec.covariates:
            values = state.covariate[cov.name]
            restricted = COVARIATE_FAMILIES[cov.family]
            z = np.log(values[values > 0]) if restricted else values

            # Submodel mean and precision
            m0, p0 = self._prior_params(cov.mean)
            tau_c = state.tau[cov.precision]
            prec = p0 + tau_c * len(z)
            mean = (p0 * m0 + tau_c * z.sum()) / prec
            mu_c = mean + state.rng.standard_normal() / np.sqrt(prec)
            state.covariate_mean[cov.name] = mu_c

            a, r = self._prior_params(cov.precision)
            tau_c = state.rng.gamma(a + len(z) / 2.0, 1.0 / (r + np.sum((z - mu_c) ** 2) / 2.0))
            state.tau[cov.precision] = tau_c

            missing = self.missing[cov.name]
            if len(missing) == 0:
                continue

            j = self._coef_index.get(cov.name)
            coef = state.beta[j] if j is not None else 0.0
            in_process = (missing >= 1).astype(float)
            # Process residual with this covariate's contribution removed
            partial = state.x[missing] - (self._process_mean(state)[missing] - coef * values[missing])
            partial = np.where(in_process > 0, partial, 0.0)

            if not restricted:
                prec = tau_c + in_process * tau_add * coef ** 2
                mean = (tau_c * mu_c + in_process * tau_add * coef * partial) / prec
                values[missing] = mean + state.rng.standard_normal(len(missing)) / np.sqrt(prec)
                continue

            # Random-walk Metropolis on the log scale
            z_cur = np.log(values[missing])
            z_new = z_cur + self.mh_step * state.rng.standard_normal(len(missing))

            def log_target(z_val):
                resid = partial - coef * np.exp(z_val)
                return -0.5 * tau_c * (z_val - mu_c) ** 2 - 0.5 * in_process * tau_add * resid ** 2

            accept = np.log(state.rng.uniform(size=len(missing))) < log_target(z_new) - log_target(z_cur)
            values[missing] = np.exp(np.where(accept, z_new, z_cur))

    def _update_coefficients(self, state: _ChainState):
        spec = self.spec
        k = len(spec.process_terms)
        X = np.empty((self.n - 1, k))
        for j, term in enumerate(spec.process_terms):
            if term.covariate == AR_COVARIATE:
                X[:, j] = state.x[:-1]
            elif term.covariate == INTERCEPT_COVARIATE:
                X[:, j] = 1.0
            else:
                X[:, j] = state.covariate[term.covariate][1:]
        target = state.x[1:] - state.alpha[1:]

        prior = np.array([self._prior_params(name) for name in spec.coefficients])
        tau_add = state.tau[spec.process_precision]
        P = np.diag(prior[:, 1]) + tau_add * X.T @ X
        b = prior[:, 0] * prior[:, 1] + tau_add * X.T @ target

        L = np.linalg.cholesky(P)
        mean = np.linalg.solve(P, b)
        state.beta = mean + np.linalg.solve(L.T, state.rng.standard_normal(k))

    def _update_random_effects(self, state: _ChainState):
        spec = self.spec
        tau_add = state.tau[spec.process_precision]
        tau_alpha = state.tau[spec.random_effect.precision]

        resid = state.x - (self._process_mean(state) - state.alpha)
        prec = tau_add + tau_alpha
        alpha = tau_add * resid / prec + state.rng.standard_normal(self.n) / np.sqrt(prec)
        # First step has no process equation
        alpha[0] = state.rng.standard_normal() / np.sqrt(tau_alpha)
        state.alpha = alpha

    def _update_state(self, state: _ChainState):
        spec = self.spec
        x = state.x
        exo = self._exogenous(state) + state.alpha
        bx = self._ar_coefficient(state)
        tau_add = state.tau[spec.process_precision]
        tau_obs = state.tau[spec.obs_precision]
        x_ic, tau_ic = (self.hyper_value(p) for p in spec.initial_state.params)
        noise = state.rng.standard_normal(self.n)

        for t in range(self.n):
            if t == 0:
                prec = tau_ic
                num = tau_ic * x_ic
            else:
                prec = tau_add
                num = tau_add * (bx * x[t - 1] + exo[t])
            if self.observed[t]:
                prec += tau_obs
                num += tau_obs * self.y[t]
            if t < self.n - 1:
                prec += tau_add * bx ** 2
                num += tau_add * bx * (x[t + 1] - exo[t + 1])
            x[t] = num / prec + noise[t] / np.sqrt(prec)

    def _update_precisions(self, state: _ChainState):
        spec = self.spec
        rng = state.rng

        a, r = self._prior_params(spec.obs_precision)
        resid = self.y[self.observed] - state.x[self.observed]
        state.tau[spec.obs_precision] = rng.gamma(
            a + len(resid) / 2.0, 1.0 / (r + np.sum(resid ** 2) / 2.0))

        a, r = self._prior_params(spec.process_precision)
        resid = state.x[1:] - self._process_mean(state)[1:]
        state.tau[spec.process_precision] = rng.gamma(
            a + len(resid) / 2.0, 1.0 / (r + np.sum(resid ** 2) / 2.0))

        a, r = self._prior_params(spec.random_effect.precision)
        state.tau[spec.random_effect.precision] = rng.gamma(
            a + self.n / 2.0, 1.0 / (r + np.sum(state.alpha ** 2) / 2.0))

    def _sweep(self, state: _ChainState):
        self._update_covariates(state)
        self._update_coefficients(state)
        self._update_random_effects(state)
        self._update_state(state)
        self._update_precisions(state)

    # -- output -------------------------------------------------------------

    def _value(self, state: _ChainState, name: str):
        spec = self.spec
        if name == spec.state:
            return state.x
        if name == spec.random_effect.name:
            return state.alpha
        if name in self._coef_names:
            return state.beta[self._coef_names[name]]
        if name in state.tau:
            return state.tau[name]
        for cov in spec.covariates:
            if name == cov.name:
                return state.covariate[cov.name]
            if name == cov.mean:
                return state.covariate_mean[cov.name]
            if name == f"{cov.name}_mis":
                return state.covariate[cov.name][self.missing[cov.name]]
        raise SamplerError(f"Unknown parameter {name}")

    @property
    def _coef_names(self) -> Dict[str, int]:
        return {name: j for j, name in enumerate(self.spec.coefficients)}

    def sample(self, var_names: Sequence[str], n_iter: int) -> az.InferenceData:
        """Continue every chain for ``n_iter`` sweeps and return the draws."""
        if n_iter < 1:
            raise ValueError(f"n_iter must be positive, got {n_iter}")
        for name in var_names:
            self._value(self._chains[0], name)

        print(f"Sampling {len(self._chains)} chains x {n_iter} iterations "
              f"({len(var_names)} monitored parameters)...")
        draws = {}
        for name in var_names:
            shape = np.shape(self._value(self._chains[0], name))
            draws[name] = np.empty((len(self._chains), n_iter) + shape)

        for c, state in enumerate(self._chains):
            for i in range(n_iter):
                self._sweep(state)
                for name in var_names:
                    draws[name][c, i] = self._value(state, name)

        if not all(np.all(np.isfinite(values)) for values in draws.values()):
            raise SamplerError("Gibbs sampler produced non-finite draws")

        return draws_to_inference_data(draws, self.n)


class GibbsSampler:
    """In-process sampler for the ratio state-space model.

    Latent states are updated one timestep at a time, process coefficients
    as a joint normal block, precisions from their gamma conditionals.
    Missing normal covariates are drawn from their normal conditionals;
    missing lognormal covariates use random-walk Metropolis on the log scale.

    Args:
        n_adapt: Sweeps discarded when the session is created.
        seed: Base random seed; chain c uses the seed sequence [seed, c].
        mh_step: Proposal standard deviation for log-scale Metropolis steps.
    """

    def __init__(self, n_adapt: int = 1000, seed: int = 42, mh_step: float = 0.5):
        self.n_adapt = n_adapt
        self.seed = seed
        self.mh_step = mh_step

    def compile(self, spec: StateSpaceSpec, data: Dict[str, Any], chains: int) -> GibbsSession:
        validate_spec(spec)
        if int(data["n"]) < 2:
            raise ValueError(f"State-space model needs at least 2 timesteps, got n={data['n']}")
        return GibbsSession(spec, data, chains, self.n_adapt, self.seed, self.mh_step)

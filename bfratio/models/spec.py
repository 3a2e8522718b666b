"""Structured description of the bacteria:fungi ratio state-space model.

The model is kept as data (priors, process-model terms, random effect and
covariate submodels) so its structure can be validated and tested without an
MCMC engine. ``render_stan`` turns the description into a Stan program.

Model, for t = 1..n:

    y[t]   ~ normal(x[t], tau_obs)                      (observed t only)
    x[1]   ~ normal(x_ic, tau_ic)
    x[t]   ~ normal(beta_x * x[t-1] + beta_intercept
                    + beta_temp * temp[t] + beta_precip * precip[t]
                    + alpha[t], tau_add)                (t >= 2)
    alpha[t] ~ normal(0, tau_alpha)
    temp[t]  ~ normal(mu_temp, tau_temp)
    precip[t] ~ lognormal(mu_precip, tau_precip)

All normals are parameterized by precision.
"""
from dataclasses import asdict, dataclass
from typing import Dict, List, Tuple, Union

Param = Union[str, float]

PRIOR_FAMILIES = {"normal", "gamma"}

# Covariate submodel families and whether their support is restricted to x >= 0
COVARIATE_FAMILIES = {"normal": False, "lognormal": True}

# Pseudo-covariates understood by process-model terms
AR_COVARIATE = "x_prev"
INTERCEPT_COVARIATE = "intercept"


@dataclass(frozen=True)
class ModelConfig:
    """Hyperparameters shared by every site."""
    x_ic: float = 0.0          # initial latent log-ratio mean
    tau_ic: float = 0.01       # initial latent log-ratio precision (diffuse)
    a_obs: float = 0.1         # observation precision gamma shape
    r_obs: float = 0.1         # observation precision gamma rate
    a_add: float = 0.1         # process precision gamma shape
    r_add: float = 0.1         # process precision gamma rate
    a_alpha: float = 0.1       # random-effect precision gamma shape
    r_alpha: float = 0.1       # random-effect precision gamma rate
    a_cov: float = 0.1         # covariate submodel precision gamma shape
    r_cov: float = 0.1         # covariate submodel precision gamma rate
    tau_beta: float = 0.001    # precision of diffuse normal priors

    def as_dict(self) -> Dict[str, float]:
        return asdict(self)


@dataclass(frozen=True)
class Prior:
    """Prior on a named parameter.

    ``normal`` params are (mean, precision); ``gamma`` params are (shape, rate).
    Each param is either a literal or the name of a hyperparameter.
    """
    name: str
    family: str
    params: Tuple[Param, Param]


@dataclass(frozen=True)
class Term:
    """One ``coefficient * covariate[t]`` term of the process mean."""
    coefficient: str
    covariate: str


@dataclass(frozen=True)
class RandomEffect:
    name: str = "alpha"
    index: str = "t"
    precision: str = "tau_alpha"


@dataclass(frozen=True)
class CovariateModel:
    """Missing-data submodel for a process covariate."""
    name: str
    family: str
    mean: str
    precision: str
    non_negative: bool = False


@dataclass(frozen=True)
class StateSpaceSpec:
    initial_state: Prior
    priors: Tuple[Prior, ...]
    process_terms: Tuple[Term, ...]
    random_effect: RandomEffect
    covariates: Tuple[CovariateModel, ...]
    state: str = "x"
    response: str = "y"
    loop_index: str = "t"
    obs_precision: str = "tau_obs"
    process_precision: str = "tau_add"

    @property
    def coefficients(self) -> List[str]:
        return [term.coefficient for term in self.process_terms]

    @property
    def precisions(self) -> List[str]:
        names = [self.obs_precision, self.process_precision, self.random_effect.precision]
        names.extend(cov.precision for cov in self.covariates)
        return names

    def prior(self, name: str) -> Prior:
        for prior in self.priors:
            if prior.name == name:
                return prior
        raise KeyError(f"No prior declared for {name}")

    def covariate(self, name: str) -> CovariateModel:
        for cov in self.covariates:
            if cov.name == name:
                return cov
        raise KeyError(f"No covariate submodel declared for {name}")

    def diagnostic_vars(self) -> List[str]:
        """Parameters monitored by the short convergence-check run."""
        return self.coefficients + [
            self.obs_precision,
            self.process_precision,
            self.random_effect.precision,
        ]

    def production_vars(self) -> List[str]:
        """Parameters monitored by the full run that feeds the plots."""
        return self.diagnostic_vars() + [self.state, self.random_effect.name]


def default_spec() -> StateSpaceSpec:
    """The ratio model with temperature and precipitation forcing."""
    process_terms = (
        Term("beta_x", AR_COVARIATE),
        Term("beta_intercept", INTERCEPT_COVARIATE),
        Term("beta_temp", "temp"),
        Term("beta_precip", "precip"),
    )
    covariates = (
        CovariateModel("temp", "normal", "mu_temp", "tau_temp"),
        CovariateModel("precip", "lognormal", "mu_precip", "tau_precip", non_negative=True),
    )

    priors = [
        Prior("tau_obs", "gamma", ("a_obs", "r_obs")),
        Prior("tau_add", "gamma", ("a_add", "r_add")),
        Prior("tau_alpha", "gamma", ("a_alpha", "r_alpha")),
    ]
    priors.extend(Prior(term.coefficient, "normal", (0.0, "tau_beta")) for term in process_terms)
    for cov in covariates:
        priors.append(Prior(cov.mean, "normal", (0.0, "tau_beta")))
        priors.append(Prior(cov.precision, "gamma", ("a_cov", "r_cov")))

    return StateSpaceSpec(
        initial_state=Prior("x", "normal", ("x_ic", "tau_ic")),
        priors=tuple(priors),
        process_terms=process_terms,
        random_effect=RandomEffect(name="alpha", index="t", precision="tau_alpha"),
        covariates=covariates,
    )


def validate_spec(spec: StateSpaceSpec) -> StateSpaceSpec:
    """Check the structural invariants of a model description.

    Raises:
        ValueError: describing the first violated invariant.
    """
    if spec.random_effect.index != spec.loop_index:
        raise ValueError(
            f"Random effect {spec.random_effect.name} is indexed by "
            f"'{spec.random_effect.index}' but the process loop runs over '{spec.loop_index}'"
        )

    for prior in (spec.initial_state,) + tuple(spec.priors):
        if prior.family not in PRIOR_FAMILIES:
            raise ValueError(f"Unknown prior family for {prior.name}: {prior.family}")
        if len(prior.params) != 2:
            raise ValueError(f"Prior on {prior.name} needs 2 params, got {len(prior.params)}")

    declared = {prior.name for prior in spec.priors}
    for name in spec.precisions:
        if name not in declared:
            raise ValueError(f"Precision {name} has no prior")
        if spec.prior(name).family != "gamma":
            raise ValueError(f"Precision {name} must have a gamma prior, got {spec.prior(name).family}")

    for name in spec.coefficients:
        if name not in declared:
            raise ValueError(f"Coefficient {name} has no prior")
        if spec.prior(name).family != "normal":
            raise ValueError(f"Coefficient {name} must have a normal prior")

    if len(set(spec.coefficients)) != len(spec.coefficients):
        raise ValueError(f"Duplicate process coefficients: {spec.coefficients}")

    covariate_names = {cov.name for cov in spec.covariates}
    for term in spec.process_terms:
        if term.covariate not in covariate_names | {AR_COVARIATE, INTERCEPT_COVARIATE}:
            raise ValueError(f"Term {term.coefficient} uses unknown covariate {term.covariate}")

    for cov in spec.covariates:
        if cov.family not in COVARIATE_FAMILIES:
            raise ValueError(f"Unknown covariate family for {cov.name}: {cov.family}")
        if cov.non_negative and not COVARIATE_FAMILIES[cov.family]:
            raise ValueError(
                f"Covariate {cov.name} is non-negative but uses unrestricted family {cov.family}"
            )
        if cov.mean not in declared:
            raise ValueError(f"Covariate mean {cov.mean} has no prior")

    return spec


def hyperparameter_names(spec: StateSpaceSpec) -> List[str]:
    """Hyperparameters referenced by name in the priors."""
    names = []
    for prior in (spec.initial_state,) + tuple(spec.priors):
        for param in prior.params:
            if isinstance(param, str) and param not in names:
                names.append(param)
    return names


def _fmt(param: Param) -> str:
    if isinstance(param, str):
        return param
    return f"{float(param):g}"


def _sampling_statement(target: str, family: str, params: Tuple[Param, Param]) -> str:
    first, second = (_fmt(p) for p in params)
    if family == "gamma":
        return f"{target} ~ gamma({first}, {second});"
    return f"{target} ~ {family}({first}, inv_sqrt({second}));"


def process_mean_expression(spec: StateSpaceSpec) -> str:
    """Stan expression for the process mean at step ``loop_index``."""
    t = spec.loop_index
    parts = []
    for term in spec.process_terms:
        if term.covariate == AR_COVARIATE:
            parts.append(f"{term.coefficient} * {spec.state}[{t} - 1]")
        elif term.covariate == INTERCEPT_COVARIATE:
            parts.append(term.coefficient)
        else:
            parts.append(f"{term.coefficient} * {term.covariate}[{t}]")
    parts.append(f"{spec.random_effect.name}[{spec.random_effect.index}]")
    return " + ".join(parts)


def render_stan(spec: StateSpaceSpec) -> str:
    """Render the model description as a Stan program.

    Missing responses and covariates are passed as index arrays
    (``*_obs_idx``/``*_mis_idx``); missing covariate values become
    parameters so the sampler marginalizes over them.
    """
    validate_spec(spec)

    positive_hyper = set()
    for prior in (spec.initial_state,) + tuple(spec.priors):
        params = prior.params if prior.family == "gamma" else prior.params[1:]
        positive_hyper.update(p for p in params if isinstance(p, str))

    lines = ["// Generated by bfratio.models.spec.render_stan", "data {"]
    lines += [
        "  int<lower=2> n;",
        f"  int<lower=0> n_{spec.response}_obs;",
        f"  array[n_{spec.response}_obs] int<lower=1, upper=n> {spec.response}_obs_idx;",
        f"  vector[n_{spec.response}_obs] {spec.response}_obs;",
    ]
    for cov in spec.covariates:
        bound = "<lower=0>" if COVARIATE_FAMILIES[cov.family] else ""
        lines += [
            f"  int<lower=0> n_{cov.name}_obs;",
            f"  array[n_{cov.name}_obs] int<lower=1, upper=n> {cov.name}_obs_idx;",
            f"  vector{bound}[n_{cov.name}_obs] {cov.name}_obs;",
            f"  int<lower=0> n_{cov.name}_mis;",
            f"  array[n_{cov.name}_mis] int<lower=1, upper=n> {cov.name}_mis_idx;",
        ]
    for name in hyperparameter_names(spec):
        bound = "<lower=0>" if name in positive_hyper else ""
        lines.append(f"  real{bound} {name};")
    lines.append("}")

    lines += ["parameters {", f"  vector[n] {spec.state};"]
    for name in (spec.obs_precision, spec.process_precision, spec.random_effect.precision):
        lines.append(f"  real<lower=0> {name};")
    lines.append(f"  vector[n] {spec.random_effect.name};")
    for name in spec.coefficients:
        lines.append(f"  real {name};")
    for cov in spec.covariates:
        bound = "<lower=0>" if COVARIATE_FAMILIES[cov.family] else ""
        lines += [
            f"  real {cov.mean};",
            f"  real<lower=0> {cov.precision};",
            f"  vector{bound}[n_{cov.name}_mis] {cov.name}_mis;",
        ]
    lines.append("}")

    lines.append("transformed parameters {")
    for cov in spec.covariates:
        lines += [
            f"  vector[n] {cov.name};",
            f"  {cov.name}[{cov.name}_obs_idx] = {cov.name}_obs;",
            f"  {cov.name}[{cov.name}_mis_idx] = {cov.name}_mis;",
        ]
    lines.append("}")

    lines += ["model {", "  // Priors"]
    lines.append("  " + _sampling_statement(
        f"{spec.state}[1]", spec.initial_state.family, spec.initial_state.params))
    for prior in spec.priors:
        lines.append("  " + _sampling_statement(prior.name, prior.family, prior.params))

    effect = spec.random_effect
    lines += ["", "  // Random effects", f"  {effect.name} ~ normal(0, inv_sqrt({effect.precision}));"]

    lines += ["", "  // Covariate missing-data submodels"]
    for cov in spec.covariates:
        params = (cov.mean, cov.precision)
        if COVARIATE_FAMILIES[cov.family]:
            # Zero observations lie outside the lognormal support
            lines += [
                f"  for (i in 1:n_{cov.name}_obs) {{",
                f"    if ({cov.name}_obs[i] > 0) {{",
                "      " + _sampling_statement(f"{cov.name}_obs[i]", cov.family, params),
                "    }",
                "  }",
                "  " + _sampling_statement(f"{cov.name}_mis", cov.family, params),
            ]
        else:
            lines.append("  " + _sampling_statement(cov.name, cov.family, params))

    lines += [
        "",
        "  // Data model",
        f"  {spec.response}_obs ~ normal({spec.state}[{spec.response}_obs_idx], "
        f"inv_sqrt({spec.obs_precision}));",
        "",
        "  // Process model",
        f"  for ({spec.loop_index} in 2:n) {{",
        f"    {spec.state}[{spec.loop_index}] ~ normal({process_mean_expression(spec)}, "
        f"inv_sqrt({spec.process_precision}));",
        "  }",
        "}",
    ]
    return "\n".join(lines) + "\n"

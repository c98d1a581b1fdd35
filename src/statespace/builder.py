"""
Model graph builder for Gaussian state-space models.

Assembles a validated ModelSpec for one member of the model family:

    Random walk (univariate, single stream):
        x[t] ~ Normal(x[t-1], tau_add)
        y[t] ~ Normal(x[t], tau_obs)

    Dual-stream fusion (diameter + ring increment):
        x[i, t] ~ Normal(x[i, t-1] + mu + alpha_ind[i] + alpha_year[t], tau_add)
        z[i, t] ~ Normal(x[i, t], tau_dbh)
        y[i, t] ~ Normal(x[i, t] - x[i, t-1], tau_inc)

    Priors:
        tau_*     ~ Gamma(a_*, r_*)
        tau_ind   ~ Gamma(1, 0.1),  tau_year ~ Gamma(1, 0.1)
        mu        ~ Normal(mu_mean, mu_prec)
        beta_*    ~ Normal(beta_mean, beta_prec)
        x[i, 0]   ~ Normal(x_ic, tau_ic)

Precisions, drift and slopes are shared across individuals (partial pooling
through the random effects).
"""

import logging
from typing import Dict, List, Optional, Sequence, Tuple

from statespace.errors import ConfigurationError
from statespace.spec import (
    EFFECT_AXES,
    FixedEffect,
    Likelihood,
    ModelSpec,
    Prior,
    RandomEffectGroup,
    Transition,
)

_log = logging.getLogger("statespace.builder")


class PriorSpec:
    """Numeric hyperparameters for every prior the builder can emit."""

    def __init__(
        self,
        # Observation error, single-stream model
        obs_shape: float = 1.0,
        obs_rate: float = 1.0,
        # Process error
        add_shape: float = 1.0,
        add_rate: float = 1.0,
        # Fusion: direct size measurement and increment measurement
        dbh_shape: float = 16.0,
        dbh_rate: float = 8.0,
        inc_shape: float = 0.001,
        inc_rate: float = 1.0,
        # Random-effect group precisions
        effect_shape: float = 1.0,
        effect_rate: float = 0.1,
        # Drift and covariate slopes (mean, precision)
        drift_mean: float = 0.5,
        drift_precision: float = 0.5,
        slope_mean: float = 0.0,
        slope_precision: float = 0.001,
        # Initial latent value
        ic_precision: float = 0.01,
    ) -> None:
        """
        Initialize prior specification.

        Parameters
        ----------
        obs_shape, obs_rate : float
            Gamma prior on observation precision ``tau_obs``. Default (1, 1).
        add_shape, add_rate : float
            Gamma prior on process precision ``tau_add``. Default (1, 1).
        dbh_shape, dbh_rate : float
            Gamma prior on size-measurement precision ``tau_dbh``.
            Default (16, 8), an informative prior from measurement error
            studies.
        inc_shape, inc_rate : float
            Gamma prior on increment precision ``tau_inc``. Default (0.001, 1).
        effect_shape, effect_rate : float
            Gamma prior on every random-effect precision. Default (1, 0.1).
        drift_mean, drift_precision : float
            Normal prior on drift ``mu``. Default (0.5, 0.5).
        slope_mean, slope_precision : float
            Normal prior on covariate slopes. Default (0, 0.001).
        ic_precision : float
            Precision of the initial-state prior. Default 0.01.
        """
        values = {
            "obs_shape": obs_shape,
            "obs_rate": obs_rate,
            "add_shape": add_shape,
            "add_rate": add_rate,
            "dbh_shape": dbh_shape,
            "dbh_rate": dbh_rate,
            "inc_shape": inc_shape,
            "inc_rate": inc_rate,
            "effect_shape": effect_shape,
            "effect_rate": effect_rate,
            "drift_precision": drift_precision,
            "slope_precision": slope_precision,
            "ic_precision": ic_precision,
        }
        bad = {name: value for name, value in values.items() if value <= 0}
        if bad:
            raise ValueError(f"Shape, rate and precision values must be positive. Got {bad}")

        self.obs_shape = obs_shape
        self.obs_rate = obs_rate
        self.add_shape = add_shape
        self.add_rate = add_rate
        self.dbh_shape = dbh_shape
        self.dbh_rate = dbh_rate
        self.inc_shape = inc_shape
        self.inc_rate = inc_rate
        self.effect_shape = effect_shape
        self.effect_rate = effect_rate
        self.drift_mean = drift_mean
        self.drift_precision = drift_precision
        self.slope_mean = slope_mean
        self.slope_precision = slope_precision
        self.ic_precision = ic_precision

    def hyperparameters(self, spec: ModelSpec) -> Dict[str, float]:
        """
        Numeric values for the hyperparameters referenced by ``spec``.

        The initial-state mean ``x_ic`` depends on the data and is left to
        the data assembler.
        """
        known = {
            "a_obs": self.obs_shape,
            "r_obs": self.obs_rate,
            "a_add": self.add_shape,
            "r_add": self.add_rate,
            "a_dbh": self.dbh_shape,
            "r_dbh": self.dbh_rate,
            "a_inc": self.inc_shape,
            "r_inc": self.inc_rate,
            "mu_mean": self.drift_mean,
            "mu_prec": self.drift_precision,
            "beta_mean": self.slope_mean,
            "beta_prec": self.slope_precision,
            "tau_ic": self.ic_precision,
        }
        for group in spec.random_effects:
            known[f"a_{group.name}"] = self.effect_shape
            known[f"r_{group.name}"] = self.effect_rate

        return {name: known[name] for name in spec.hyperparameter_names() if name in known}

    def __repr__(self) -> str:
        return (
            f"PriorSpec(obs=({self.obs_shape}, {self.obs_rate}), "
            f"add=({self.add_shape}, {self.add_rate}), "
            f"dbh=({self.dbh_shape}, {self.dbh_rate}), "
            f"inc=({self.inc_shape}, {self.inc_rate}), "
            f"effect=({self.effect_shape}, {self.effect_rate}), "
            f"tau_ic={self.ic_precision})"
        )


class ModelConfig:
    """Flags selecting one member of the state-space model family."""

    def __init__(
        self,
        n_time: int,
        n_individuals: Optional[int] = None,
        increments: bool = False,
        drift: Optional[bool] = None,
        individual_effect: bool = False,
        time_effect: bool = False,
        individual_levels: Optional[Sequence[int]] = None,
        time_levels: Optional[Sequence[int]] = None,
        covariates: Sequence[str] = (),
        observed_times: Optional[Sequence[int]] = None,
        increment_times: Optional[Sequence[int]] = None,
    ) -> None:
        """
        Parameters
        ----------
        n_time : int
            Number of time steps.
        n_individuals : int, optional
            Number of individuals. None builds a univariate series.
        increments : bool
            Add the increment stream ``y`` next to the size stream ``z``
            (dual-stream fusion). Default False.
        drift : bool, optional
            Include a drift term ``mu``. Defaults to the value of ``increments``.
        individual_effect : bool
            Random offset per individual (or per level of
            ``individual_levels``, e.g. plot). Default False.
        time_effect : bool
            Random offset per time step (or per level of ``time_levels``,
            e.g. month). Default False.
        individual_levels, time_levels : sequence of int, optional
            Level maps for the random-effect groups.
        covariates : sequence of str
            Names of individual-level covariates with fixed slopes.
        observed_times, increment_times : sequence of int, optional
            Time steps (0-based) that may carry size / increment data.
        """
        self.n_time = n_time
        self.n_individuals = n_individuals
        self.increments = increments
        self.drift = increments if drift is None else drift
        self.individual_effect = individual_effect
        self.time_effect = time_effect
        self.individual_levels = _as_tuple(individual_levels)
        self.time_levels = _as_tuple(time_levels)
        self.covariates = tuple(covariates)
        self.observed_times = _as_tuple(observed_times)
        self.increment_times = _as_tuple(increment_times)

    def __repr__(self) -> str:
        return (
            f"ModelConfig(n_time={self.n_time}, n_individuals={self.n_individuals}, "
            f"increments={self.increments}, drift={self.drift}, "
            f"individual_effect={self.individual_effect}, "
            f"time_effect={self.time_effect}, covariates={list(self.covariates)})"
        )


class ModelGraphBuilder:
    """
    Build a ModelSpec from a ModelConfig.

    Extra random-effect groups (e.g. by plot or species) can be registered
    with :meth:`add_random_effect` before calling :meth:`build`.

    Attributes
    ----------
    config : ModelConfig
        Model family flags.
    prior_spec : PriorSpec
        Hyperparameter defaults.
    """

    def __init__(self, config: ModelConfig, prior_spec: Optional[PriorSpec] = None) -> None:
        self.config = config
        self.prior_spec = prior_spec or PriorSpec()
        self._extra_groups: List[RandomEffectGroup] = []

    def add_random_effect(
        self,
        name: str,
        axis: str,
        levels: Sequence[int],
        size: Optional[int] = None,
    ) -> "ModelGraphBuilder":
        """
        Register an additional random-effect group.

        Parameters
        ----------
        name : str
            Group name; offsets are called ``alpha_<name>``, precision
            ``tau_<name>``.
        axis : str
            "individual" or "time".
        levels : sequence of int
            Level of each individual / time step.
        size : int, optional
            Number of levels. Defaults to ``max(levels) + 1`` (0 when empty).
        """
        if axis not in EFFECT_AXES:
            raise ConfigurationError(f"axis must be one of {EFFECT_AXES}. Got '{axis}'")
        levels = tuple(int(level) for level in levels)
        if size is None:
            size = max(levels) + 1 if levels else 0
        self._extra_groups.append(
            RandomEffectGroup(name=name, axis=axis, size=size, precision=f"tau_{name}", levels=levels)
        )
        return self

    def _likelihoods(self, latent: str) -> Tuple[Likelihood, ...]:
        cfg = self.config
        if not cfg.increments:
            return (
                Likelihood(
                    name="obs",
                    observed="y",
                    latent=latent,
                    relation="level",
                    precision="tau_obs",
                    time_index=cfg.observed_times,
                ),
            )
        return (
            Likelihood(
                name="dbh",
                observed="z",
                latent=latent,
                relation="level",
                precision="tau_dbh",
                time_index=cfg.observed_times,
            ),
            Likelihood(
                name="inc",
                observed="y",
                latent=latent,
                relation="increment",
                precision="tau_inc",
                time_index=cfg.increment_times,
            ),
        )

    def _random_effects(self) -> Tuple[RandomEffectGroup, ...]:
        cfg = self.config
        groups = []
        if cfg.individual_effect:
            groups.append(
                _group("ind", "individual", cfg.individual_levels, cfg.n_individuals or 0)
            )
        if cfg.time_effect:
            groups.append(_group("year", "time", cfg.time_levels, cfg.n_time))
        groups.extend(self._extra_groups)
        return tuple(groups)

    def build(self) -> ModelSpec:
        """
        Build and validate the model graph.

        Returns
        -------
        spec : ModelSpec
            Validated, engine-agnostic model description.

        Raises
        ------
        ConfigurationError
            If the configuration yields an inconsistent graph.
        """
        cfg = self.config
        latent = "x"

        likelihoods = self._likelihoods(latent)
        groups = self._random_effects()
        fixed = tuple(FixedEffect(name=name, covariate=name) for name in cfg.covariates)

        transition = Transition(
            latent=latent,
            precision="tau_add",
            drift="mu" if cfg.drift else None,
            random_effects=groups,
            fixed_effects=fixed,
        )

        priors: List[Prior] = []
        for lik in likelihoods:
            suffix = lik.precision[len("tau_"):]
            priors.append(Prior(lik.precision, "gamma", (f"a_{suffix}", f"r_{suffix}")))
        priors.append(Prior("tau_add", "gamma", ("a_add", "r_add")))
        for group in groups:
            priors.append(Prior(group.precision, "gamma", (f"a_{group.name}", f"r_{group.name}")))
        if transition.drift is not None:
            priors.append(Prior(transition.drift, "normal", ("mu_mean", "mu_prec")))
        for effect in fixed:
            priors.append(Prior(effect.variable, "normal", ("beta_mean", "beta_prec")))

        spec = ModelSpec(
            latent=latent,
            n_time=cfg.n_time,
            n_individuals=cfg.n_individuals,
            likelihoods=likelihoods,
            transition=transition,
            priors=tuple(priors),
            initial=Prior(latent, "normal", ("x_ic", "tau_ic")),
        ).validate()

        _log.info("Built state-space model %r", spec)
        _log.debug("Model relations:\n%s", spec.describe())
        return spec

    def __repr__(self) -> str:
        return f"ModelGraphBuilder(config={self.config}, prior_spec={self.prior_spec})"


def _as_tuple(values: Optional[Sequence[int]]) -> Optional[Tuple[int, ...]]:
    if values is None:
        return None
    return tuple(int(v) for v in values)


def _group(
    name: str,
    axis: str,
    levels: Optional[Tuple[int, ...]],
    default_size: int,
) -> RandomEffectGroup:
    if levels is None:
        size = default_size
    else:
        size = max(levels) + 1 if levels else 0
    return RandomEffectGroup(
        name=name, axis=axis, size=size, precision=f"tau_{name}", levels=levels
    )


def random_walk(n_time: int, observed_times: Optional[Sequence[int]] = None) -> ModelSpec:
    """Univariate random walk with one observation stream."""
    return ModelGraphBuilder(ModelConfig(n_time=n_time, observed_times=observed_times)).build()


def growth_fusion(
    n_individuals: Optional[int],
    n_time: int,
    individual_effect: bool = False,
    time_effect: bool = False,
    covariates: Sequence[str] = (),
    prior_spec: Optional[PriorSpec] = None,
) -> ModelSpec:
    """Diameter + increment fusion model with drift, optionally hierarchical."""
    config = ModelConfig(
        n_time=n_time,
        n_individuals=n_individuals,
        increments=True,
        individual_effect=individual_effect,
        time_effect=time_effect,
        covariates=covariates,
    )
    return ModelGraphBuilder(config, prior_spec).build()

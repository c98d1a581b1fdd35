"""
Engine boundary: translate a ModelSpec + DataBundle into a PyMC model.

Translation rules (precision parameterization throughout):

    tau ~ Gamma(a, r)                      -> pm.Gamma(alpha=a, beta=r)
    theta ~ Normal(m, p)                   -> pm.Normal(mu=m, tau=p)
    alpha_g[k] ~ Normal(0, tau_g)          -> pm.Normal(mu=0, tau=tau_g, dims=g_level)
    x                                      -> pm.Flat, shape (n_time,) or (ni, n_time)
    x[., 0] ~ Normal(x_ic, tau_ic)         -> pm.Potential("initial_state")
    x[., t] ~ Normal(mean[., t], tau_add)  -> pm.Potential("process")
    obs ~ Normal(f(x), tau)                -> pm.Normal(observed=...) over non-missing cells

Missing observations contribute no likelihood term; the latent state keeps
its full length regardless of how much data is missing.
"""

import logging
from typing import Dict, Optional

import numpy as np
import pymc as pm
import pytensor.tensor as pt

from assembly.assembler import DataBundle
from statespace.errors import ConfigurationError
from statespace.spec import Likelihood, ModelSpec, Prior

_log = logging.getLogger("statespace.inference")


class ModelBuilder:
    """
    Build the PyMC model for one state-space analysis.

    Attributes
    ----------
    spec : ModelSpec
        Validated model graph.
    bundle : DataBundle
        Observations, covariates and hyperparameters.
    model : pm.Model or None
        PyMC model (None until built)
    """

    def __init__(self, spec: ModelSpec, bundle: DataBundle) -> None:
        """
        Initialize model builder.

        Raises
        ------
        ConfigurationError
            If the spec is inconsistent or the bundle does not match it.
        """
        self.spec = spec.validate()
        self.bundle = bundle
        self.model: Optional[pm.Model] = None
        self._validate_data()

    def _validate_data(self) -> None:
        spec, bundle = self.spec, self.bundle

        if bundle.shape != spec.latent_shape:
            raise ConfigurationError(
                f"Data dimensions {bundle.shape} do not match model dimensions {spec.latent_shape}"
            )

        for name in spec.observation_names():
            if name not in bundle.observations:
                raise ConfigurationError(f"Observation stream '{name}' missing from data")
            if bundle.observations[name].shape != spec.latent_shape:
                raise ConfigurationError(
                    f"Stream '{name}' must have shape {spec.latent_shape}. "
                    f"Got {bundle.observations[name].shape}"
                )

        for name in spec.hyperparameter_names():
            if name not in bundle.hyperparameters:
                raise ConfigurationError(f"Hyperparameter '{name}' missing from data")
            if not np.isfinite(bundle.hyperparameters[name]):
                raise ConfigurationError(
                    f"Hyperparameter '{name}' must be finite. Got {bundle.hyperparameters[name]}"
                )

        for effect in spec.transition.fixed_effects:
            if effect.covariate not in bundle.covariates:
                raise ConfigurationError(f"Covariate '{effect.covariate}' missing from data")
            expected = spec.n_individuals if effect.axis == "individual" else spec.n_time
            if bundle.covariates[effect.covariate].shape != (expected,):
                raise ConfigurationError(
                    f"Covariate '{effect.covariate}' must have shape ({expected},)"
                )

    def _build_prior(self, prior: Prior):
        first, second = (self.bundle.hyperparameters[name] for name in prior.params)
        if prior.family == "gamma":
            return pm.Gamma(prior.target, alpha=first, beta=second)
        return pm.Normal(prior.target, mu=first, tau=second)

    def _coords(self) -> Dict[str, list]:
        coords = {"time": list(self.bundle.time_labels)}
        if self.spec.multi:
            coords["individual"] = list(self.bundle.individual_labels)
        for group in self.spec.random_effects:
            coords[f"{group.name}_level"] = list(range(group.size))
        return coords

    def _process_mean(self, x2, params):
        """Transition mean for time steps 1..n_time-1, shape (ni, n_time - 1)."""
        transition = self.spec.transition
        mean = x2[:, :-1]

        if transition.drift is not None:
            mean = mean + params[transition.drift]

        for group in transition.random_effects:
            alpha = pm.Normal(
                group.variable,
                mu=0.0,
                tau=params[group.precision],
                dims=f"{group.name}_level",
            )
            levels = np.arange(group.size) if group.levels is None else np.asarray(group.levels)
            if group.axis == "individual":
                mean = mean + alpha[levels][:, None]
            else:
                mean = mean + alpha[levels[1:]][None, :]

        for effect in transition.fixed_effects:
            covariate = self.bundle.covariates[effect.covariate]
            if effect.axis == "individual":
                mean = mean + params[effect.variable] * covariate[:, None]
            else:
                mean = mean + params[effect.variable] * covariate[None, 1:]

        return mean

    def _build_likelihood(self, lik: Likelihood, x2, params) -> None:
        values = np.atleast_2d(self.bundle.observations[lik.observed])
        allowed = np.zeros(values.shape, dtype=bool)
        allowed[:, list(lik.times(self.spec.n_time))] = True

        present = ~np.isnan(values)
        ignored = int(np.sum(present & ~allowed))
        if ignored:
            _log.warning(
                "Stream '%s': %d observations fall outside the modelled time steps and are ignored",
                lik.observed,
                ignored,
            )

        rows, cols = np.nonzero(present & allowed)
        if rows.size == 0:
            _log.warning(
                "Stream '%s' has no observations; '%s' is informed by its prior only",
                lik.observed,
                lik.precision,
            )
            return

        if lik.relation == "level":
            mu = x2[rows, cols]
        else:
            mu = x2[rows, cols] - x2[rows, cols - 1]

        pm.Normal(lik.name, mu=mu, tau=params[lik.precision], observed=values[rows, cols])

    def build(self) -> pm.Model:
        """
        Build the full PyMC model.

        Returns
        -------
        model : pm.Model
            PyMC model ready for sampling.
        """
        spec = self.spec
        hyper = self.bundle.hyperparameters

        with pm.Model(coords=self._coords()) as model:
            params = {prior.target: self._build_prior(prior) for prior in spec.priors}

            dims = ("individual", "time") if spec.multi else ("time",)
            x = pm.Flat(spec.latent, dims=dims)
            x2 = x if spec.multi else x[None, :]

            mean = self._process_mean(x2, params)
            pm.Potential(
                "process",
                pt.sum(
                    pm.logp(
                        pm.Normal.dist(mu=mean, tau=params[spec.transition.precision]),
                        x2[:, 1:],
                    )
                ),
            )

            x_ic, tau_ic = (hyper[name] for name in spec.initial.params)
            pm.Potential(
                "initial_state",
                pt.sum(pm.logp(pm.Normal.dist(mu=x_ic, tau=tau_ic), x2[:, 0])),
            )

            for lik in spec.likelihoods:
                self._build_likelihood(lik, x2, params)

        _log.debug("Built PyMC model with free variables %s", [rv.name for rv in model.free_RVs])
        self.model = model
        return model

    def get_model(self) -> pm.Model:
        """
        Get the built model.

        Raises
        ------
        RuntimeError
            If model has not been built yet.
        """
        if self.model is None:
            raise RuntimeError("Model has not been built. Call .build() first.")
        return self.model

    def __repr__(self) -> str:
        return f"ModelBuilder(spec={self.spec!r}, bundle={self.bundle!r})"

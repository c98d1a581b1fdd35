"""
Chain initializer: dispersed, finite starting values for every chain.

Each chain starts from plug-in moment estimates computed on its own
bootstrap resample of the non-missing observations:

    tau_add ~= 1 / var(diff(resample))          # process precision
    tau_obs ~= scale / var(resample)            # observation precision
    tau_inc ~= 1 / var(resample of increments)  # increment precision

A resample without variation (constant values, fewer than two usable
points) makes these estimates non-finite. The estimators raise
DegenerateStatisticError and the initializer substitutes a fixed default,
so no inf/NaN ever reaches the sampler.
"""

import logging
from typing import Any, Dict, List, Optional

import numpy as np
from numpy.typing import NDArray

from assembly.assembler import DataBundle
from statespace.errors import DegenerateStatisticError
from statespace.spec import ModelSpec

_log = logging.getLogger("statespace.inference")


def _finite_precision(variance: float, scale: float, what: str) -> float:
    if not np.isfinite(variance) or variance <= 0:
        raise DegenerateStatisticError(f"{what}: variance is {variance}, precision undefined")
    precision = scale / variance
    if not np.isfinite(precision):
        raise DegenerateStatisticError(f"{what}: precision estimate is {precision}")
    return float(precision)


def process_precision_estimate(sample: NDArray[np.float64]) -> float:
    """
    Inverse sample variance of first differences.

    ``sample`` is 1-D (one series) or 2-D (individuals x time, differences
    taken along time). NaN entries are dropped after differencing.

    Raises
    ------
    DegenerateStatisticError
        If fewer than two finite differences exist or their variance is zero.
    """
    diffs = np.diff(np.atleast_2d(np.asarray(sample, dtype=np.float64)), axis=-1)
    diffs = diffs[np.isfinite(diffs)]
    if diffs.size < 2:
        raise DegenerateStatisticError(
            f"process precision: need at least two finite differences, got {diffs.size}"
        )
    return _finite_precision(np.var(diffs, ddof=1), 1.0, "process precision")


def observation_precision_estimate(sample: NDArray[np.float64], scale: float = 5.0) -> float:
    """
    Scaled inverse sample variance, ``scale / var(sample)``.

    Raises
    ------
    DegenerateStatisticError
        If fewer than two finite values exist or their variance is zero.
    """
    values = np.asarray(sample, dtype=np.float64)
    values = values[np.isfinite(values)]
    if values.size < 2:
        raise DegenerateStatisticError(
            f"observation precision: need at least two finite values, got {values.size}"
        )
    return _finite_precision(np.var(values, ddof=1), scale, "observation precision")


def interpolate_series(values: NDArray[np.float64], fill: float) -> NDArray[np.float64]:
    """Linear interpolation over NaNs along time; constant ``fill`` for empty rows."""
    rows = np.atleast_2d(np.asarray(values, dtype=np.float64)).copy()
    t = np.arange(rows.shape[1])
    for row in rows:
        known = np.isfinite(row)
        if not np.any(known):
            row[:] = fill
        elif not np.all(known):
            row[~known] = np.interp(t[~known], t[known], row[known])
    return rows


class InitializerConfig:
    """Defaults and scales used by the ChainInitializer."""

    def __init__(
        self,
        default_precision: float = 1.0,
        observation_scale: float = 5.0,
        effect_precision: float = 10.0,
        latent_jitter: float = 0.01,
    ) -> None:
        """
        Parameters
        ----------
        default_precision : float
            Fallback for any degenerate plug-in precision. Default 1.0.
        observation_scale : float
            Numerator of the observation-precision estimator. Default 5.0.
        effect_precision : float
            Starting value of random-effect group precisions. Default 10.0.
        latent_jitter : float
            Standard deviation of the noise added to the starting latent path.
            Default 0.01.
        """
        for name, value in [
            ("default_precision", default_precision),
            ("observation_scale", observation_scale),
            ("effect_precision", effect_precision),
        ]:
            if not (np.isfinite(value) and value > 0):
                raise ValueError(f"{name} must be finite and positive. Got {value}")
        if latent_jitter < 0:
            raise ValueError(f"latent_jitter must be >= 0. Got {latent_jitter}")

        self.default_precision = default_precision
        self.observation_scale = observation_scale
        self.effect_precision = effect_precision
        self.latent_jitter = latent_jitter

    def __repr__(self) -> str:
        return (
            f"InitializerConfig(default_precision={self.default_precision}, "
            f"observation_scale={self.observation_scale}, "
            f"effect_precision={self.effect_precision}, latent_jitter={self.latent_jitter})"
        )


class ChainInitializer:
    """
    Produce one dict of starting values per chain.

    Parameters
    ----------
    spec : ModelSpec
        Model whose free variables need starting values.
    bundle : DataBundle
        Observations the plug-in estimates are computed from.
    config : InitializerConfig, optional
        Fallbacks and scales. If None, use defaults.
    random_seed : int, optional
        Seed for the bootstrap resamples and jitter.
    """

    def __init__(
        self,
        spec: ModelSpec,
        bundle: DataBundle,
        config: Optional[InitializerConfig] = None,
        random_seed: Optional[int] = None,
    ) -> None:
        self.spec = spec
        self.bundle = bundle
        self.config = config or InitializerConfig()
        self.rng = np.random.default_rng(random_seed)

    def _resample(self, values: NDArray[np.float64]) -> NDArray[np.float64]:
        """Bootstrap resample of the non-missing values, keeping row structure."""
        rows = np.atleast_2d(values)
        out = []
        for row in rows:
            observed = row[np.isfinite(row)]
            if observed.size == 0:
                continue
            out.append(self.rng.choice(observed, size=observed.size, replace=True))
        if not out:
            return np.empty((0, 0))
        width = max(len(r) for r in out)
        padded = np.full((len(out), width), np.nan)
        for i, r in enumerate(out):
            padded[i, : len(r)] = r
        return padded

    def _guarded(self, estimator, sample, name: str, chain: int, **kwargs) -> float:
        try:
            return estimator(sample, **kwargs)
        except DegenerateStatisticError as exc:
            _log.warning(
                "Chain %d: %s; starting %s at default %.3g",
                chain,
                exc,
                name,
                self.config.default_precision,
            )
            return self.config.default_precision

    def _drift_start(self) -> float:
        transition = self.spec.transition
        prior = next(p for p in self.spec.priors if p.target == transition.drift)
        fallback = float(self.bundle.hyperparameters[prior.params[0]])
        # increment streams first, they measure the step directly
        ordered = sorted(self.spec.likelihoods, key=lambda lik: lik.relation != "increment")
        for lik in ordered:
            values = self.bundle.observations[lik.observed]
            if lik.relation == "increment":
                observed = values[np.isfinite(values)]
            else:
                diffs = np.diff(np.atleast_2d(values), axis=-1)
                observed = diffs[np.isfinite(diffs)]
            if observed.size:
                return float(np.mean(observed))
        return fallback

    def _latent_start(self) -> NDArray[np.float64]:
        spec, bundle = self.spec, self.bundle
        x_ic = float(bundle.hyperparameters[spec.initial.params[0]])
        level = [lik for lik in spec.likelihoods if lik.relation == "level"]

        if level:
            path = interpolate_series(bundle.observations[level[0].observed], fill=x_ic)
        else:
            # Increment-only: integrate the observed increments from x_ic
            inc = np.nan_to_num(np.atleast_2d(bundle.observations[spec.likelihoods[0].observed]))
            inc[:, 0] = 0.0
            path = x_ic + np.cumsum(inc, axis=-1)

        return path if spec.multi else path[0]

    def chain_values(self, chain: int = 0) -> Dict[str, Any]:
        """Starting values for one chain."""
        spec, bundle, cfg = self.spec, self.bundle, self.config
        values: Dict[str, Any] = {}

        process_set = False
        for lik in spec.likelihoods:
            sample = self._resample(bundle.observations[lik.observed])
            if lik.relation == "level":
                values[lik.precision] = self._guarded(
                    observation_precision_estimate,
                    sample,
                    lik.precision,
                    chain,
                    scale=cfg.observation_scale,
                )
                if not process_set:
                    values[spec.transition.precision] = self._guarded(
                        process_precision_estimate, sample, spec.transition.precision, chain
                    )
                    process_set = True
            else:
                values[lik.precision] = self._guarded(
                    observation_precision_estimate, sample, lik.precision, chain, scale=1.0
                )

        if not process_set:
            values[spec.transition.precision] = cfg.default_precision

        for group in spec.random_effects:
            values[group.precision] = cfg.effect_precision
            values[group.variable] = np.zeros(group.size)

        if spec.transition.drift is not None:
            values[spec.transition.drift] = self._drift_start()

        for effect in spec.transition.fixed_effects:
            values[effect.variable] = 0.0

        latent = self._latent_start()
        if cfg.latent_jitter > 0:
            latent = latent + self.rng.normal(0.0, cfg.latent_jitter, size=latent.shape)
        values[spec.latent] = latent

        return values

    def initial_values(self, n_chains: int) -> List[Dict[str, Any]]:
        """
        Starting values for ``n_chains`` chains.

        Returns
        -------
        inits : List[Dict[str, Any]]
            One mapping of free-variable name to finite value per chain.
        """
        if n_chains < 1:
            raise ValueError(f"n_chains must be >= 1. Got {n_chains}")
        inits = [self.chain_values(chain) for chain in range(n_chains)]
        _log.info(
            "Initial precisions per chain: %s",
            [{k: round(float(v), 4) for k, v in init.items() if k in self.spec.precision_parameters()} for init in inits],
        )
        return inits

    def __repr__(self) -> str:
        return f"ChainInitializer(spec={self.spec!r}, config={self.config})"

"""
Data assembler: tabular measurements to engine-ready data bundles.

Produces, for one ModelSpec:
- observation arrays of shape ``(n_time,)`` or ``(n_individuals, n_time)``,
  with missing entries kept as NaN at their original index
- numeric hyperparameters for every prior (from PriorSpec) plus the
  data-dependent initial-state mean ``x_ic``
- covariate vectors for fixed effects

Masking helpers build held-out scenarios (every k-th value kept, a block
withheld, a truncated tail) from a complete series.
"""

import logging
from typing import Any, Dict, Iterable, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd
from numpy.typing import NDArray

from statespace.builder import PriorSpec
from statespace.errors import ConfigurationError
from statespace.spec import ModelSpec

_log = logging.getLogger("statespace.assembly")

Index = Union[int, Tuple[int, int]]


def to_float_array(x: Any) -> NDArray[np.float64]:
    """
    Convert array-like input to float64, with None / NaN / pd.NA as np.nan.

    Raises
    ------
    ConfigurationError
        If an entry is neither a number nor a missing-value marker.
    """
    frame = pd.DataFrame(np.asarray(x, dtype=object))
    numeric = frame.apply(pd.to_numeric, errors="coerce")
    invalid = (numeric.isna() & ~frame.isna()).to_numpy()
    if invalid.any():
        examples = list(frame.to_numpy()[invalid][:3])
        raise ConfigurationError(
            f"{int(invalid.sum())} non-numeric entries (e.g. {examples}); "
            f"use None or NaN for missing values"
        )
    return numeric.to_numpy(dtype=np.float64, na_value=np.nan).reshape(np.shape(x))


class DataBundle:
    """
    Data handed to the sampling engine for one analysis.

    Attributes
    ----------
    observations : Dict[str, NDArray]
        Observation streams keyed by the names used in the ModelSpec.
    n_time : int
        Number of time steps.
    n_individuals : int or None
        Number of individuals (None for a univariate series).
    hyperparameters : Dict[str, float]
        Numeric value of every prior hyperparameter.
    covariates : Dict[str, NDArray]
        Covariate vectors referenced by fixed effects.
    log_transform : bool
        Whether level observations and ``x_ic`` are on the log scale.
    time_labels, individual_labels : list
        Labels of the time axis and of the individuals.
    """

    def __init__(
        self,
        observations: Dict[str, NDArray[np.float64]],
        n_time: int,
        n_individuals: Optional[int],
        hyperparameters: Dict[str, float],
        covariates: Optional[Dict[str, NDArray[np.float64]]] = None,
        log_transform: bool = False,
        time_labels: Optional[Sequence] = None,
        individual_labels: Optional[Sequence] = None,
    ) -> None:
        self.observations = {name: np.array(values, dtype=np.float64) for name, values in observations.items()}
        self.n_time = n_time
        self.n_individuals = n_individuals
        self.hyperparameters = dict(hyperparameters)
        self.covariates = {name: np.asarray(values, dtype=np.float64) for name, values in (covariates or {}).items()}
        self.log_transform = log_transform
        self.time_labels = list(time_labels) if time_labels is not None else list(range(n_time))
        self.individual_labels = (
            list(individual_labels)
            if individual_labels is not None
            else (list(range(n_individuals)) if n_individuals is not None else None)
        )

    @property
    def shape(self) -> Tuple[int, ...]:
        if self.n_individuals is None:
            return (self.n_time,)
        return (self.n_individuals, self.n_time)

    def as_engine_data(self) -> Dict[str, Any]:
        """Flat name-to-value mapping (observations, covariates, hyperparameters)."""
        data: Dict[str, Any] = {"nt": self.n_time}
        if self.n_individuals is not None:
            data["ni"] = self.n_individuals
        data.update(self.observations)
        data.update(self.covariates)
        data.update(self.hyperparameters)
        return data

    def with_observations(self, **streams: NDArray[np.float64]) -> "DataBundle":
        """Copy of this bundle with some streams replaced (values on the bundle scale)."""
        observations = {name: values.copy() for name, values in self.observations.items()}
        for name, values in streams.items():
            if name not in observations:
                raise ConfigurationError(f"Unknown observation stream '{name}'")
            values = to_float_array(values)
            if values.shape != observations[name].shape:
                raise ConfigurationError(
                    f"Stream '{name}' must have shape {observations[name].shape}. Got {values.shape}"
                )
            observations[name] = values
        return DataBundle(
            observations=observations,
            n_time=self.n_time,
            n_individuals=self.n_individuals,
            hyperparameters=self.hyperparameters,
            covariates=self.covariates,
            log_transform=self.log_transform,
            time_labels=self.time_labels,
            individual_labels=self.individual_labels,
        )

    def missing_fraction(self) -> Dict[str, float]:
        return {name: float(np.mean(np.isnan(values))) for name, values in self.observations.items()}

    def __repr__(self) -> str:
        return (
            f"DataBundle(shape={self.shape}, streams={list(self.observations)}, "
            f"log_transform={self.log_transform})"
        )


class DataAssembler:
    """
    Build DataBundles for a given ModelSpec.

    Parameters
    ----------
    spec : ModelSpec
        Model the data is assembled for.
    prior_spec : PriorSpec, optional
        Hyperparameter defaults. If None, use defaults.
    log_transform : bool
        Log-transform level observations and the initial-state mean.
        Not available for models with an increment stream. Default False.
    """

    def __init__(
        self,
        spec: ModelSpec,
        prior_spec: Optional[PriorSpec] = None,
        log_transform: bool = False,
    ) -> None:
        if log_transform and any(lik.relation == "increment" for lik in spec.likelihoods):
            raise ConfigurationError(
                "log_transform cannot be combined with an increment stream; "
                "increments are differences on the measurement scale"
            )
        self.spec = spec
        self.prior_spec = prior_spec or PriorSpec()
        self.log_transform = log_transform

    def _transform(self, name: str, values: NDArray[np.float64]) -> NDArray[np.float64]:
        if not self.log_transform:
            return values
        observed = values[~np.isnan(values)]
        if np.any(observed <= 0):
            raise ValueError(f"Stream '{name}' must be strictly positive for log transform")
        return np.log(values)

    def _initial_mean(self, observations: Dict[str, NDArray[np.float64]]) -> float:
        level = [lik.observed for lik in self.spec.likelihoods if lik.relation == "level"]
        if not level:
            return 0.0
        values = np.atleast_2d(observations[level[0]])
        for t in range(values.shape[1]):
            column = values[:, t]
            if np.any(~np.isnan(column)):
                return float(np.nanmean(column))
        return 0.0

    def from_arrays(
        self,
        observations: Dict[str, Any],
        x_ic: Optional[float] = None,
        covariates: Optional[Dict[str, Any]] = None,
        time_labels: Optional[Sequence] = None,
        individual_labels: Optional[Sequence] = None,
    ) -> DataBundle:
        """
        Assemble a bundle from observation arrays on the measurement scale.

        Parameters
        ----------
        observations : Dict[str, array-like]
            One array per stream named in the model; NaN / None marks missing.
        x_ic : float, optional
            Initial-state prior mean on the measurement scale. If None, the
            mean of the earliest observed level values (after transform).
        covariates : Dict[str, array-like], optional
            Covariate vector per fixed effect, length n_individuals.

        Returns
        -------
        bundle : DataBundle

        Raises
        ------
        ConfigurationError
            If a stream is missing or has the wrong shape.
        """
        spec = self.spec
        arrays: Dict[str, NDArray[np.float64]] = {}
        for name in spec.observation_names():
            if name not in observations:
                raise ConfigurationError(f"Observation stream '{name}' is required by the model")
            values = to_float_array(observations[name])
            if values.shape != spec.latent_shape:
                raise ConfigurationError(
                    f"Stream '{name}' must have shape {spec.latent_shape}. Got {values.shape}"
                )
            relation = next(lik.relation for lik in spec.likelihoods if lik.observed == name)
            arrays[name] = self._transform(name, values) if relation == "level" else values

        extra = set(observations) - set(arrays)
        if extra:
            _log.warning("Ignoring streams not used by the model: %s", sorted(extra))

        if x_ic is None:
            x_ic = self._initial_mean(arrays)
        elif self.log_transform:
            if x_ic <= 0:
                raise ValueError(f"x_ic must be positive for log transform. Got {x_ic}")
            x_ic = float(np.log(x_ic))

        covariate_arrays: Dict[str, NDArray[np.float64]] = {}
        for effect in spec.transition.fixed_effects:
            if covariates is None or effect.covariate not in covariates:
                raise ConfigurationError(f"Covariate '{effect.covariate}' is required by the model")
            values = to_float_array(covariates[effect.covariate])
            expected = spec.n_individuals if effect.axis == "individual" else spec.n_time
            if values.shape != (expected,):
                raise ConfigurationError(
                    f"Covariate '{effect.covariate}' must have shape ({expected},). Got {values.shape}"
                )
            if np.any(np.isnan(values)):
                raise ConfigurationError(f"Covariate '{effect.covariate}' must be fully observed")
            covariate_arrays[effect.covariate] = values

        hyperparameters = self.prior_spec.hyperparameters(spec)
        hyperparameters["x_ic"] = float(x_ic)

        bundle = DataBundle(
            observations=arrays,
            n_time=spec.n_time,
            n_individuals=spec.n_individuals,
            hyperparameters=hyperparameters,
            covariates=covariate_arrays,
            log_transform=self.log_transform,
            time_labels=time_labels,
            individual_labels=individual_labels,
        )
        _log.info("Assembled %r, missing fraction %s", bundle, bundle.missing_fraction())
        return bundle

    def from_series(
        self,
        values: Any,
        time_labels: Optional[Sequence] = None,
        x_ic: Optional[float] = None,
        stream: str = "y",
    ) -> DataBundle:
        """Assemble a univariate single-stream bundle."""
        if isinstance(values, pd.Series) and time_labels is None:
            time_labels = list(values.index)
        return self.from_arrays({stream: values}, x_ic=x_ic, time_labels=time_labels)

    def from_table(
        self,
        frame: pd.DataFrame,
        individual_col: str,
        time_col: str,
        measurement_cols: Dict[str, str],
        covariate_cols: Sequence[str] = (),
        time_axis: Optional[Sequence] = None,
        x_ic: Optional[float] = None,
    ) -> DataBundle:
        """
        Assemble a multi-individual bundle from a long table.

        Parameters
        ----------
        frame : pd.DataFrame
            One row per (individual, time) with measurement and covariate columns.
        individual_col, time_col : str
            Identifier and time columns.
        measurement_cols : Dict[str, str]
            Stream name to column, e.g. ``{"z": "dbh", "y": "increment"}``.
        covariate_cols : sequence of str
            Numeric per-individual covariates; values are centered.
        time_axis : sequence, optional
            Full time axis. Defaults to the sorted unique times in ``frame``.
        """
        missing = [c for c in [individual_col, time_col, *measurement_cols.values(), *covariate_cols] if c not in frame]
        if missing:
            raise ConfigurationError(f"Columns not found in table: {missing}")

        individuals = list(pd.unique(frame[individual_col]))
        times = list(time_axis) if time_axis is not None else sorted(pd.unique(frame[time_col]))

        observations = {}
        for stream, column in measurement_cols.items():
            wide = frame.pivot(index=individual_col, columns=time_col, values=column)
            observations[stream] = wide.reindex(index=individuals, columns=times).to_numpy(
                dtype=np.float64, na_value=np.nan
            )

        covariates = {}
        per_individual = frame.groupby(individual_col, sort=False).first().reindex(individuals)
        for column in covariate_cols:
            values = pd.to_numeric(per_individual[column], errors="coerce").to_numpy(dtype=np.float64)
            covariates[column] = values - np.nanmean(values)

        return self.from_arrays(
            observations,
            x_ic=x_ic,
            covariates=covariates,
            time_labels=times,
            individual_labels=individuals,
        )

    def __repr__(self) -> str:
        return f"DataAssembler(spec={self.spec!r}, log_transform={self.log_transform})"


def group_levels(
    frame: pd.DataFrame,
    individual_col: str,
    column: str,
) -> Tuple[Tuple[int, ...], list]:
    """
    Level map of a categorical per-individual column (e.g. plot or species).

    Returns
    -------
    levels : tuple of int
        Level code of each individual, in order of first appearance.
    labels : list
        Category label of each code.
    """
    per_individual = frame.groupby(individual_col, sort=False)[column].first()
    codes, labels = pd.factorize(per_individual)
    if np.any(codes < 0):
        raise ConfigurationError(f"Column '{column}' has missing values")
    return tuple(int(c) for c in codes), list(labels)


def mask_observations(
    values: Any,
    indices: Iterable[Index],
) -> Tuple[NDArray[np.float64], Dict[Index, float]]:
    """
    Withhold observations at the given indices.

    Returns
    -------
    masked : NDArray
        Copy of ``values`` with the indices set to NaN.
    held_out : Dict
        Index to withheld value; entries already missing are skipped.
    """
    masked = to_float_array(values).copy()
    held_out: Dict[Index, float] = {}
    for index in indices:
        value = masked[index]
        if not np.isnan(value):
            held_out[index] = float(value)
        masked[index] = np.nan
    return masked, held_out


def thin_observations(
    values: Any,
    every: int = 4,
    offset: int = 0,
) -> Tuple[NDArray[np.float64], Dict[Index, float]]:
    """Keep every ``every``-th time step (starting at ``offset``), withhold the rest."""
    if every < 1:
        raise ValueError(f"every must be >= 1. Got {every}")
    array = to_float_array(values)
    n_time = array.shape[-1]
    drop = [t for t in range(n_time) if (t - offset) % every != 0]
    return mask_observations(array, _expand(array.shape, drop))


def truncate_observations(
    values: Any,
    n_keep: int,
) -> Tuple[NDArray[np.float64], Dict[Index, float]]:
    """Withhold every time step from ``n_keep`` on (forecast-style masking)."""
    array = to_float_array(values)
    n_time = array.shape[-1]
    if not (0 <= n_keep <= n_time):
        raise ValueError(f"n_keep must be in [0, {n_time}]. Got {n_keep}")
    return mask_observations(array, _expand(array.shape, range(n_keep, n_time)))


def _expand(shape: Tuple[int, ...], times: Iterable[int]) -> list:
    times = list(times)
    if len(shape) == 1:
        return times
    return [(i, t) for i in range(shape[0]) for t in times]

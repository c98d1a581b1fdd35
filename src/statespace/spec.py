"""
Structured description of a Gaussian state-space model.

A ModelSpec is a declarative graph made of three kinds of relations:

    Likelihood   obs[i, t] ~ Normal(f(x), tau)       # data model
    Transition   x[i, t]   ~ Normal(x[i, t-1] + drift + effects, tau_add)
    Prior        theta     ~ Gamma(a, r) | Normal(m, p)

Distribution parameters of priors are *names* of hyperparameters. Their
numeric values travel in the data bundle, so the same graph can be fitted
against different data without being rebuilt. Normal distributions are
parameterized by precision throughout.

Nothing here depends on the sampling engine; translation to PyMC happens in
``inference.model_builder``.
"""

from dataclasses import dataclass
from typing import ClassVar, Dict, List, Optional, Tuple

from statespace.errors import ConfigurationError

PRIOR_FAMILIES = ("gamma", "normal")
RELATIONS = ("level", "increment")
EFFECT_AXES = ("individual", "time")


@dataclass(frozen=True)
class Prior:
    """Prior distribution of one free parameter (or of the initial state)."""

    kind: ClassVar[str] = "prior"

    target: str
    family: str
    params: Tuple[str, str]

    def describe(self) -> str:
        return f"{self.target} ~ {self.family.capitalize()}({', '.join(self.params)})"


@dataclass(frozen=True)
class Likelihood:
    """
    Data model tying one observation stream to the latent state.

    ``relation="level"`` means ``obs[t] ~ Normal(x[t], tau)``;
    ``relation="increment"`` means ``obs[t] ~ Normal(x[t] - x[t-1], tau)``.
    ``time_index`` lists the (0-based) time steps that may carry data,
    None means all steps valid for the relation.
    """

    kind: ClassVar[str] = "likelihood"

    name: str
    observed: str
    latent: str
    relation: str
    precision: str
    time_index: Optional[Tuple[int, ...]] = None

    def times(self, n_time: int) -> Tuple[int, ...]:
        if self.time_index is not None:
            return tuple(self.time_index)
        start = 1 if self.relation == "increment" else 0
        return tuple(range(start, n_time))

    def describe(self, multi: bool = False) -> str:
        ix = "[i, t]" if multi else "[t]"
        prev = "[i, t-1]" if multi else "[t-1]"
        if self.relation == "increment":
            mean = f"{self.latent}{ix} - {self.latent}{prev}"
        else:
            mean = f"{self.latent}{ix}"
        return f"{self.observed}{ix} ~ Normal({mean}, {self.precision})"


@dataclass(frozen=True)
class RandomEffectGroup:
    """
    Zero-mean offsets shared by all members of a group level.

    ``levels`` maps each individual (axis "individual") or each time step
    (axis "time") to one of ``size`` levels. Offsets are not constrained to
    sum to zero; their mean is absorbed by the drift term.
    """

    kind: ClassVar[str] = "random_effect"

    name: str
    axis: str
    size: int
    precision: str
    levels: Optional[Tuple[int, ...]] = None

    @property
    def variable(self) -> str:
        return f"alpha_{self.name}"


@dataclass(frozen=True)
class FixedEffect:
    """Covariate slope ``beta_<name> * covariate`` added to the transition mean."""

    kind: ClassVar[str] = "fixed_effect"

    name: str
    covariate: str
    axis: str = "individual"

    @property
    def variable(self) -> str:
        return f"beta_{self.name}"


@dataclass(frozen=True)
class Transition:
    """Process model: first-order Gaussian random walk with additive effects."""

    kind: ClassVar[str] = "transition"

    latent: str
    precision: str
    drift: Optional[str] = None
    random_effects: Tuple[RandomEffectGroup, ...] = ()
    fixed_effects: Tuple[FixedEffect, ...] = ()

    def describe(self, multi: bool = False) -> str:
        ix = "[i, t]" if multi else "[t]"
        prev = "[i, t-1]" if multi else "[t-1]"
        terms = [f"{self.latent}{prev}"]
        if self.drift is not None:
            terms.append(self.drift)
        for group in self.random_effects:
            sub = "i" if group.axis == "individual" else "t"
            terms.append(f"{group.variable}[{sub}]")
        for effect in self.fixed_effects:
            sub = "i" if effect.axis == "individual" else "t"
            terms.append(f"{effect.variable} * {effect.covariate}[{sub}]")
        return f"{self.latent}{ix} ~ Normal({' + '.join(terms)}, {self.precision})"


@dataclass(frozen=True)
class ModelSpec:
    """
    Complete state-space model graph.

    Attributes
    ----------
    latent : str
        Name of the latent state variable.
    n_time : int
        Number of time steps.
    n_individuals : int or None
        Number of individuals. None for a univariate series.
    likelihoods : tuple of Likelihood
        One or more data models.
    transition : Transition
        Process model.
    priors : tuple of Prior
        One prior per free parameter.
    initial : Prior
        Prior on the first latent value of every individual.
    """

    latent: str
    n_time: int
    n_individuals: Optional[int]
    likelihoods: Tuple[Likelihood, ...]
    transition: Transition
    priors: Tuple[Prior, ...]
    initial: Prior

    @property
    def multi(self) -> bool:
        return self.n_individuals is not None

    @property
    def latent_shape(self) -> Tuple[int, ...]:
        if self.multi:
            return (self.n_individuals, self.n_time)
        return (self.n_time,)

    @property
    def random_effects(self) -> Tuple[RandomEffectGroup, ...]:
        return self.transition.random_effects

    def precision_parameters(self) -> List[str]:
        names = [lik.precision for lik in self.likelihoods]
        names.append(self.transition.precision)
        names.extend(group.precision for group in self.random_effects)
        return list(dict.fromkeys(names))

    def free_parameters(self) -> List[str]:
        """Every parameter referenced by a likelihood or the transition."""
        names = self.precision_parameters()
        if self.transition.drift is not None:
            names.append(self.transition.drift)
        names.extend(effect.variable for effect in self.transition.fixed_effects)
        return list(dict.fromkeys(names))

    def scalar_parameters(self) -> List[str]:
        """Variables monitored while exploring convergence."""
        return self.free_parameters()

    def monitor_variables(self) -> List[str]:
        """Variables monitored in the production run."""
        names = self.free_parameters() + [self.latent]
        names.extend(group.variable for group in self.random_effects)
        return names

    def hyperparameter_names(self) -> List[str]:
        names: List[str] = []
        for prior in self.priors + (self.initial,):
            names.extend(prior.params)
        return list(dict.fromkeys(names))

    def observation_names(self) -> List[str]:
        return list(dict.fromkeys(lik.observed for lik in self.likelihoods))

    def validate(self) -> "ModelSpec":
        """
        Check internal consistency.

        Returns
        -------
        spec : ModelSpec
            ``self``, to allow chaining.

        Raises
        ------
        ConfigurationError
            On any dangling reference, missing or duplicate prior,
            out-of-range index or empty group.
        """
        if self.n_time < 2:
            raise ConfigurationError(f"n_time must be >= 2. Got {self.n_time}")
        if self.n_individuals is not None and self.n_individuals <= 0:
            raise ConfigurationError(
                f"n_individuals must be positive. Got {self.n_individuals}"
            )
        if not self.likelihoods:
            raise ConfigurationError("At least one likelihood is required")
        if self.transition.latent != self.latent:
            raise ConfigurationError(
                f"Transition refers to latent '{self.transition.latent}', "
                f"expected '{self.latent}'"
            )

        names = [lik.name for lik in self.likelihoods]
        if len(set(names)) != len(names):
            raise ConfigurationError(f"Likelihood names must be unique. Got {names}")

        for lik in self.likelihoods:
            self._validate_likelihood(lik)
        for group in self.random_effects:
            self._validate_group(group)
        for effect in self.transition.fixed_effects:
            if effect.axis not in EFFECT_AXES:
                raise ConfigurationError(
                    f"Fixed effect '{effect.name}' has unknown axis '{effect.axis}'"
                )
            if effect.axis == "individual" and not self.multi:
                raise ConfigurationError(
                    f"Fixed effect '{effect.name}' is by individual but the "
                    f"model is univariate"
                )

        self._validate_priors()
        return self

    def _validate_likelihood(self, lik: Likelihood) -> None:
        if lik.latent != self.latent:
            raise ConfigurationError(
                f"Likelihood '{lik.name}' refers to unknown latent '{lik.latent}'"
            )
        if lik.relation not in RELATIONS:
            raise ConfigurationError(
                f"Likelihood '{lik.name}' has unknown relation '{lik.relation}'. "
                f"Expected one of {RELATIONS}"
            )
        times = lik.times(self.n_time)
        if not times:
            raise ConfigurationError(f"Likelihood '{lik.name}' covers no time steps")
        lowest = 1 if lik.relation == "increment" else 0
        for t in times:
            if not (lowest <= t < self.n_time):
                raise ConfigurationError(
                    f"Likelihood '{lik.name}' references time index {t} outside "
                    f"[{lowest}, {self.n_time - 1}]"
                )

    def _validate_group(self, group: RandomEffectGroup) -> None:
        if group.axis not in EFFECT_AXES:
            raise ConfigurationError(
                f"Random effect '{group.name}' has unknown axis '{group.axis}'"
            )
        if group.size <= 0:
            raise ConfigurationError(
                f"Random effect '{group.name}' must have at least one level. "
                f"Got size={group.size}"
            )
        if group.axis == "individual":
            if not self.multi:
                raise ConfigurationError(
                    f"Random effect '{group.name}' is by individual but the "
                    f"model is univariate"
                )
            expected = self.n_individuals
        else:
            expected = self.n_time

        if group.levels is None:
            if group.size != expected:
                raise ConfigurationError(
                    f"Random effect '{group.name}' without a level map must have "
                    f"size {expected}. Got {group.size}"
                )
            return
        if len(group.levels) != expected:
            raise ConfigurationError(
                f"Random effect '{group.name}' level map must have length "
                f"{expected}. Got {len(group.levels)}"
            )
        if any(not (0 <= level < group.size) for level in group.levels):
            raise ConfigurationError(
                f"Random effect '{group.name}' levels must lie in "
                f"[0, {group.size - 1}]"
            )

    def _validate_priors(self) -> None:
        counts: Dict[str, int] = {}
        for prior in self.priors:
            if prior.family not in PRIOR_FAMILIES:
                raise ConfigurationError(
                    f"Prior on '{prior.target}' has unknown family '{prior.family}'"
                )
            if len(prior.params) != 2:
                raise ConfigurationError(
                    f"Prior on '{prior.target}' needs two hyperparameters. "
                    f"Got {prior.params}"
                )
            counts[prior.target] = counts.get(prior.target, 0) + 1

        free = self.free_parameters()
        for name in free:
            n = counts.get(name, 0)
            if n != 1:
                raise ConfigurationError(
                    f"Parameter '{name}' must have exactly one prior. Got {n}"
                )
        dangling = [target for target in counts if target not in free]
        if dangling:
            raise ConfigurationError(f"Priors target unknown parameters: {dangling}")

        if self.initial.target != self.latent or self.initial.family != "normal":
            raise ConfigurationError(
                f"Initial-state prior must be a normal prior on '{self.latent}'"
            )

    def describe(self) -> str:
        """Readable listing of all relations, one per line."""
        lines = [lik.describe(self.multi) for lik in self.likelihoods]
        lines.append(self.transition.describe(self.multi))
        for group in self.random_effects:
            lines.append(f"{group.variable}[k] ~ Normal(0, {group.precision})")
        first = f"{self.latent}[i, 0]" if self.multi else f"{self.latent}[0]"
        lines.append(f"{first} ~ Normal({', '.join(self.initial.params)})")
        lines.extend(prior.describe() for prior in self.priors)
        return "\n".join(lines)

    def __repr__(self) -> str:
        return (
            f"ModelSpec(latent={self.latent!r}, shape={self.latent_shape}, "
            f"likelihoods={[lik.name for lik in self.likelihoods]}, "
            f"effects={[g.name for g in self.random_effects]})"
        )

"""
Sampling engine and two-phase sampling driver for state-space models.

Engine protocol (PyMC underneath):
- compile(spec, data, inits, n_chains) -> ModelHandle   (stateful)
- sample(handle, var_names, iterations) -> PosteriorSample
  continues every chain from its last draw; the first request adapts the
  step method, later requests reuse that adaptation unchanged
- convergence_statistic(sample) -> per-variable R-hat

Driver workflow:
1. compile: ModelSpec + DataBundle + per-chain inits
2. explore: short run over the scalar parameters, R-hat / ESS reported,
   draws discarded
3. produce: long run over latent states, random effects and parameters,
   continuing the same chains

Key diagnostics:
- Rhat (potential scale reduction): <1.1 used as the default threshold
- ESS (effective sample size): reported, not enforced
Convergence is advisory. A ConvergenceWarning is emitted and the operator
decides whether to run longer; the driver never extends a run by itself.
"""

import logging
import time
import warnings
from typing import Any, Dict, List, Optional, Sequence

import arviz as az
import numpy as np
import pymc as pm
from numpy.typing import NDArray
from pymc.step_methods.hmc.quadpotential import QuadPotentialDiag

from assembly.assembler import DataBundle
from inference.initializer import ChainInitializer
from inference.model_builder import ModelBuilder
from statespace.errors import ConfigurationError, ConvergenceWarning, EngineFailure
from statespace.spec import ModelSpec

_log = logging.getLogger("statespace.inference")

STEP_METHODS = ("nuts", "slice", "metropolis")


class PosteriorSample:
    """
    Posterior draws addressed by variable name.

    Attributes
    ----------
    posterior : xarray.Dataset
        Draws with dimensions ``(chain, draw, ...)``.
    var_names : List[str]
        Variables held by this sample.
    """

    def __init__(self, idata: az.InferenceData, var_names: Optional[Sequence[str]] = None) -> None:
        posterior = idata.posterior
        names = list(var_names) if var_names is not None else list(posterior.data_vars)
        unknown = [name for name in names if name not in posterior]
        if unknown:
            raise KeyError(f"Variables not in posterior: {unknown}")
        self.posterior = posterior[names]
        self.var_names = names

    @classmethod
    def from_arrays(cls, arrays: Dict[str, NDArray[np.float64]]) -> "PosteriorSample":
        """Build from arrays of shape ``(chain, draw, ...)``."""
        return cls(az.from_dict(posterior=arrays))

    @property
    def n_chains(self) -> int:
        return int(self.posterior.sizes["chain"])

    @property
    def n_draws(self) -> int:
        return int(self.posterior.sizes["draw"])

    def draws(self, name: str) -> NDArray[np.float64]:
        """Draws of one variable, shape ``(chain, draw, *variable_shape)``."""
        if name not in self.var_names:
            raise KeyError(f"Variable '{name}' was not requested. Available: {self.var_names}")
        return np.asarray(self.posterior[name].values)

    def pooled(self, name: str) -> NDArray[np.float64]:
        """Draws of one variable pooled across chains, shape ``(chain * draw, ...)``."""
        values = self.draws(name)
        return values.reshape(-1, *values.shape[2:])

    def __contains__(self, name: str) -> bool:
        return name in self.var_names

    def __repr__(self) -> str:
        return (
            f"PosteriorSample(chains={self.n_chains}, draws={self.n_draws}, "
            f"vars={self.var_names})"
        )


class ModelHandle:
    """
    Compiled model plus the current state of every chain.

    A handle belongs to exactly one analysis. Each sampling request starts
    every chain from the point where the previous request left it.

    Attributes
    ----------
    model : pm.Model
        Compiled PyMC model.
    spec : ModelSpec
        Model graph the handle was compiled from.
    step : step method
        Adapting before the first request, fixed after it.
    n_chains : int
        Number of chains.
    points : List[Dict[str, Any]]
        Current state of each chain (constrained values of free variables).
    iterations : int
        Draws produced per chain so far.
    """

    def __init__(
        self,
        model: pm.Model,
        spec: ModelSpec,
        step: Any,
        n_chains: int,
        points: List[Dict[str, Any]],
        tune: int,
        random_seed: Optional[int] = None,
    ) -> None:
        self.model = model
        self.spec = spec
        self.step = step
        self.n_chains = n_chains
        self.points = points
        self.tune = tune
        self.iterations = 0
        self.requests = 0
        self.rng = np.random.default_rng(random_seed)

    @property
    def free_variables(self) -> List[str]:
        return [rv.name for rv in self.model.free_RVs]

    def __repr__(self) -> str:
        return (
            f"ModelHandle(chains={self.n_chains}, iterations={self.iterations}, "
            f"requests={self.requests})"
        )


class SamplingEngine:
    """
    PyMC-backed sampling engine.

    Parameters
    ----------
    step_method : str
        "nuts", "slice" or "metropolis". Default "nuts".
    target_accept : float
        NUTS acceptance rate target. Default 0.85.
    progressbar : bool
        Show PyMC progress bars. Default False.
    """

    def __init__(
        self,
        step_method: str = "nuts",
        target_accept: float = 0.85,
        progressbar: bool = False,
    ) -> None:
        if step_method not in STEP_METHODS:
            raise ValueError(f"step_method must be one of {STEP_METHODS}. Got '{step_method}'")
        if not (0.5 < target_accept < 0.99):
            raise ValueError(f"target_accept must be in (0.5, 0.99). Got {target_accept}")

        self.step_method = step_method
        self.target_accept = target_accept
        self.progressbar = progressbar

    def _make_step(self, model: pm.Model):
        with model:
            if self.step_method == "nuts":
                return pm.NUTS(target_accept=self.target_accept)
            if self.step_method == "slice":
                return pm.Slice()
            return pm.Metropolis()

    def _freeze_step(self, handle: ModelHandle, idata: az.InferenceData):
        """
        Step method that keeps the adaptation of the first request.

        PyMC resets a step method's tuning at the start of every ``pm.sample``
        call. NUTS is rebuilt with the adapted diagonal mass matrix and the
        chain-averaged step size, Metropolis with its tuned proposal scaling.
        Slice widths are not reset, so the slice step is kept as is.
        """
        step = handle.step
        with handle.model:
            if self.step_method == "nuts":
                variance = np.array(step.potential._var, dtype=np.float64, copy=True)
                step_size = float(np.mean(idata.sample_stats["step_size_bar"].values[:, -1]))
                return pm.NUTS(
                    vars=step.vars,
                    potential=QuadPotentialDiag(variance),
                    step_scale=step_size * variance.size**0.25,
                    adapt_step_size=False,
                    target_accept=self.target_accept,
                )
            if self.step_method == "metropolis":
                methods = getattr(step, "methods", [step])
                frozen = [
                    pm.Metropolis(
                        vars=method.vars,
                        S=method.proposal_dist.s,
                        scaling=np.array(method.scaling, copy=True),
                        tune=False,
                    )
                    for method in methods
                ]
                return frozen[0] if len(frozen) == 1 else pm.CompoundStep(frozen)
        return step

    @staticmethod
    def _check_initial_values(
        model: pm.Model,
        initial_values: Sequence[Dict[str, Any]],
    ) -> List[Dict[str, Any]]:
        free = {rv.name: rv for rv in model.free_RVs}
        shapes = {name: tuple(shape) for name, shape in model.eval_rv_shapes().items()}
        checked = []
        for chain, init in enumerate(initial_values):
            unknown = sorted(set(init) - set(free))
            if unknown:
                raise ConfigurationError(f"Chain {chain}: initial values for unknown variables {unknown}")
            point = {}
            for name, value in init.items():
                value = np.asarray(value, dtype=np.float64)
                if not np.all(np.isfinite(value)):
                    raise ConfigurationError(f"Chain {chain}: initial value of '{name}' is not finite")
                if name in shapes and value.shape != shapes[name]:
                    raise ConfigurationError(
                        f"Chain {chain}: initial value of '{name}' must have shape "
                        f"{shapes[name]}. Got {value.shape}"
                    )
                point[name] = value
            checked.append(point)
        return checked

    def compile(
        self,
        spec: ModelSpec,
        bundle: DataBundle,
        initial_values: Sequence[Dict[str, Any]],
        n_chains: int,
        tune: int = 1000,
        random_seed: Optional[int] = None,
    ) -> ModelHandle:
        """
        Compile a model and attach per-chain starting values.

        Parameters
        ----------
        spec : ModelSpec
            Model graph.
        bundle : DataBundle
            Observations and hyperparameters.
        initial_values : sequence of dict
            One starting-value mapping per chain.
        n_chains : int
            Number of chains.
        tune : int
            Adaptation steps before the first request, discarded. Later
            requests reuse the adapted step method and do not tune.
            Default 1000.
        random_seed : int, optional
            Seed for all sampling requests against this handle.

        Raises
        ------
        ConfigurationError
            Inconsistent spec, data dimensions or initial values.
        """
        if n_chains < 1:
            raise ConfigurationError(f"n_chains must be >= 1. Got {n_chains}")
        if len(initial_values) != n_chains:
            raise ConfigurationError(
                f"Need one set of initial values per chain: {n_chains} chains, "
                f"{len(initial_values)} sets"
            )
        if tune < 0:
            raise ValueError(f"tune must be >= 0. Got {tune}")

        model = ModelBuilder(spec, bundle).build()
        points = self._check_initial_values(model, initial_values)
        step = self._make_step(model)

        _log.info(
            "Compiled %r with %d chains (%s), free variables %s",
            spec,
            n_chains,
            self.step_method,
            [rv.name for rv in model.free_RVs],
        )
        return ModelHandle(
            model=model,
            spec=spec,
            step=step,
            n_chains=n_chains,
            points=points,
            tune=tune,
            random_seed=random_seed,
        )

    def sample(
        self,
        handle: ModelHandle,
        var_names: Sequence[str],
        iterations: int,
    ) -> PosteriorSample:
        """
        Append ``iterations`` draws to every chain of ``handle``.

        Returns
        -------
        sample : PosteriorSample
            The new draws, restricted to ``var_names``.

        Raises
        ------
        ConfigurationError
            If a requested variable is not in the model.
        EngineFailure
            If PyMC fails; the message is passed through unchanged.
        """
        if iterations < 1:
            raise ValueError(f"iterations must be >= 1. Got {iterations}")
        var_names = list(dict.fromkeys(var_names))
        known = set(handle.model.named_vars)
        unknown = [name for name in var_names if name not in known]
        if unknown:
            raise ConfigurationError(f"Requested variables not in model: {unknown}")

        first_request = handle.requests == 0
        tune = handle.tune if first_request else 0
        seed = int(handle.rng.integers(2**31 - 1))

        start_time = time.time()
        try:
            with handle.model:
                idata = pm.sample(
                    draws=iterations,
                    tune=tune,
                    chains=handle.n_chains,
                    cores=1,
                    step=handle.step,
                    initvals=handle.points,
                    random_seed=seed,
                    progressbar=self.progressbar,
                    compute_convergence_checks=False,
                    return_inferencedata=True,
                    discard_tuned_samples=True,
                )
        except (ValueError, RuntimeError, ArithmeticError) as exc:
            raise EngineFailure(str(exc)) from exc
        sampling_time = time.time() - start_time

        if first_request:
            handle.step = self._freeze_step(handle, idata)

        posterior = idata.posterior
        handle.points = [
            {name: np.asarray(posterior[name].values[chain, -1]) for name in handle.free_variables}
            for chain in range(handle.n_chains)
        ]
        handle.iterations += iterations
        handle.requests += 1

        _log.info(
            "Drew %d iterations x %d chains (tune=%d) in %.1fs; %d iterations per chain so far",
            iterations,
            handle.n_chains,
            tune,
            sampling_time,
            handle.iterations,
        )
        return PosteriorSample(idata, var_names)

    @staticmethod
    def convergence_statistic(sample: PosteriorSample) -> Dict[str, float]:
        """Largest R-hat over the elements of each variable."""
        if sample.n_chains < 2:
            _log.warning("R-hat needs at least 2 chains; got %d", sample.n_chains)
            return {name: float("nan") for name in sample.var_names}
        result = {}
        for name in sample.var_names:
            draws = sample.draws(name)
            flat = draws.reshape(draws.shape[0], draws.shape[1], -1)
            # np.max propagates NaN
            result[name] = float(
                np.max([DiagnosticsComputer.rhat(flat[:, :, k]) for k in range(flat.shape[2])])
            )
        return result

    def __repr__(self) -> str:
        return f"SamplingEngine(step_method={self.step_method!r}, target_accept={self.target_accept})"


class DiagnosticsComputer:
    """Convergence diagnostics on raw draw arrays."""

    @staticmethod
    def rhat(posterior_samples: NDArray[np.float64]) -> float:
        """
        Potential scale reduction factor of one scalar variable.

        Parameters
        ----------
        posterior_samples : NDArray[np.float64]
            Draws from multiple chains, shape (chains, draws).
        """
        posterior_samples = np.asarray(posterior_samples, dtype=np.float64)
        if posterior_samples.ndim != 2 or posterior_samples.shape[0] < 2:
            raise ValueError("Need at least 2 chains for Rhat")
        if np.all(posterior_samples == posterior_samples.flat[0]):
            return 1.0
        return float(az.rhat(posterior_samples))

    @staticmethod
    def ess(posterior_samples: NDArray[np.float64]) -> float:
        """
        Bulk effective sample size of one scalar variable.

        Parameters
        ----------
        posterior_samples : NDArray[np.float64]
            Draws of shape (draws,) for one chain or (chains, draws).
        """
        samples = np.atleast_2d(np.asarray(posterior_samples, dtype=np.float64))
        if np.all(samples == samples.flat[0]):
            return float(samples.size)
        return float(az.ess(samples))


class ExplorationReport:
    """Outcome of the exploratory phase; the draws themselves are not kept."""

    def __init__(
        self,
        rhat: Dict[str, float],
        ess: Dict[str, float],
        threshold: float,
        iterations: int,
    ) -> None:
        self.rhat = rhat
        self.ess = ess
        self.threshold = threshold
        self.iterations = iterations

    def not_converged(self) -> List[str]:
        return [name for name, value in self.rhat.items() if not value <= self.threshold]

    @property
    def converged(self) -> bool:
        return not self.not_converged()

    def __repr__(self) -> str:
        worst = max(self.rhat.values()) if self.rhat else float("nan")
        return (
            f"ExplorationReport(iterations={self.iterations}, max_rhat={worst:.3f}, "
            f"converged={self.converged})"
        )


class DriverConfig:
    """Chain counts, run lengths and convergence threshold of the driver."""

    def __init__(
        self,
        n_chains: int = 3,
        explore_iterations: int = 1000,
        production_iterations: int = 10000,
        tune: int = 1000,
        rhat_threshold: float = 1.1,
        step_method: str = "nuts",
        random_seed: Optional[int] = None,
        progressbar: bool = False,
    ) -> None:
        if n_chains < 1:
            raise ValueError(f"n_chains must be >= 1. Got {n_chains}")
        if explore_iterations < 1 or production_iterations < 1:
            raise ValueError(
                f"Iteration counts must be >= 1. Got explore={explore_iterations}, "
                f"production={production_iterations}"
            )
        if rhat_threshold <= 1.0:
            raise ValueError(f"rhat_threshold must be > 1. Got {rhat_threshold}")
        if step_method not in STEP_METHODS:
            raise ValueError(f"step_method must be one of {STEP_METHODS}. Got '{step_method}'")

        self.n_chains = n_chains
        self.explore_iterations = explore_iterations
        self.production_iterations = production_iterations
        self.tune = tune
        self.rhat_threshold = rhat_threshold
        self.step_method = step_method
        self.random_seed = random_seed
        self.progressbar = progressbar

    def __repr__(self) -> str:
        return (
            f"DriverConfig(chains={self.n_chains}, explore={self.explore_iterations}, "
            f"production={self.production_iterations}, tune={self.tune}, "
            f"step={self.step_method!r}, rhat<{self.rhat_threshold})"
        )


class SamplingDriver:
    """
    Orchestrate compile, explore and produce against one engine.

    Parameters
    ----------
    config : DriverConfig, optional
        Run lengths and thresholds. If None, use defaults.
    engine : SamplingEngine, optional
        Engine to drive. If None, a PyMC engine with ``config.step_method``.
    """

    def __init__(
        self,
        config: Optional[DriverConfig] = None,
        engine: Optional[SamplingEngine] = None,
    ) -> None:
        self.config = config or DriverConfig()
        self.engine = engine or SamplingEngine(
            step_method=self.config.step_method,
            progressbar=self.config.progressbar,
        )

    def compile(
        self,
        spec: ModelSpec,
        bundle: DataBundle,
        initial_values: Optional[Sequence[Dict[str, Any]]] = None,
    ) -> ModelHandle:
        """Compile a fresh handle; inits default to ChainInitializer output."""
        cfg = self.config
        if initial_values is None:
            initializer = ChainInitializer(spec, bundle, random_seed=cfg.random_seed)
            initial_values = initializer.initial_values(cfg.n_chains)
        return self.engine.compile(
            spec,
            bundle,
            initial_values,
            cfg.n_chains,
            tune=cfg.tune,
            random_seed=cfg.random_seed,
        )

    def explore(
        self,
        handle: ModelHandle,
        variables: Optional[Sequence[str]] = None,
        iterations: Optional[int] = None,
    ) -> ExplorationReport:
        """
        Short diagnostic run over the scalar parameters.

        Emits a ConvergenceWarning when any R-hat exceeds the threshold.
        """
        variables = list(variables or handle.spec.scalar_parameters())
        iterations = iterations or self.config.explore_iterations

        sample = self.engine.sample(handle, variables, iterations)
        rhat = self.engine.convergence_statistic(sample)
        ess = {}
        for name in variables:
            draws = sample.draws(name)
            flat = draws.reshape(draws.shape[0], draws.shape[1], -1)
            ess[name] = min(DiagnosticsComputer.ess(flat[:, :, k]) for k in range(flat.shape[2]))

        report = ExplorationReport(rhat, ess, self.config.rhat_threshold, iterations)
        if report.converged:
            _log.info("Exploration converged: %r", report)
        else:
            message = (
                f"R-hat above {report.threshold} for {report.not_converged()}; "
                f"consider a longer run before trusting the production draws"
            )
            _log.warning(message)
            warnings.warn(message, ConvergenceWarning, stacklevel=2)
        return report

    def produce(
        self,
        handle: ModelHandle,
        variables: Optional[Sequence[str]] = None,
        iterations: Optional[int] = None,
    ) -> PosteriorSample:
        """Long run over the full variable set, continuing the same chains."""
        variables = list(variables or handle.spec.monitor_variables())
        iterations = iterations or self.config.production_iterations
        return self.engine.sample(handle, variables, iterations)

    def __repr__(self) -> str:
        return f"SamplingDriver(config={self.config}, engine={self.engine})"

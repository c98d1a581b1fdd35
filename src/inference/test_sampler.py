"""
Tests for the sampling engine, two-phase driver and diagnostics.

Progressive sizing:
- Small (synthetic): diagnostics and posterior containers (instant)
- Medium: configuration, compile-time validation and the driver against a
  scripted engine (1-5 seconds)
- Large: short NUTS runs on a 15-step random walk (marked slow)
"""

import warnings

import arviz as az
import numpy as np
import pytest
from pymc.step_methods.hmc.quadpotential import QuadPotentialDiag

from assembly.assembler import DataAssembler, mask_observations
from inference import sampler
from inference.sampler import (
    DiagnosticsComputer,
    DriverConfig,
    ExplorationReport,
    PosteriorSample,
    SamplingDriver,
    SamplingEngine,
)
from simulation.simulator import StateSpaceSimulator
from statespace.builder import random_walk
from statespace.errors import ConfigurationError, ConvergenceWarning, EngineFailure


def _random_walk_data(n_time=15, seed=0):
    spec = random_walk(n_time)
    _, observed = StateSpaceSimulator(random_seed=seed).random_walk(n_time, x0=2.0)
    return spec, DataAssembler(spec).from_series(observed)


class ScriptedEngine:
    """Engine double returning prepared draws and recording requests."""

    def __init__(self, arrays):
        self.arrays = arrays
        self.requests = []

    def sample(self, handle, var_names, iterations):
        self.requests.append((list(var_names), iterations))
        return PosteriorSample.from_arrays({name: self.arrays[name] for name in var_names})

    convergence_statistic = staticmethod(SamplingEngine.convergence_statistic)


class FakeHandle:
    def __init__(self, spec):
        self.spec = spec


# ============================================================================
# SMALL TESTS: Synthetic diagnostics (no real sampling)
# ============================================================================

def test_small_rhat_perfect_convergence():
    """Test Rhat with identical constant chains."""
    chains = np.ones((2, 100))
    rhat = DiagnosticsComputer.rhat(chains)
    assert np.isclose(rhat, 1.0, atol=0.01), f"Expected ~1.0, got {rhat}"


def test_small_rhat_poor_convergence():
    """Test Rhat with divergent chains."""
    rng = np.random.default_rng(42)
    chains = np.array([rng.normal(-5, 1, 100), rng.normal(5, 1, 100)])
    rhat = DiagnosticsComputer.rhat(chains)
    assert rhat > 1.5, f"Expected Rhat > 1.5 for divergent chains, got {rhat}"


def test_small_rhat_good_convergence():
    """Test Rhat with chains from the same distribution."""
    rng = np.random.default_rng(42)
    chains = rng.normal(0, 1, size=(4, 500))
    rhat = DiagnosticsComputer.rhat(chains)
    assert rhat < 1.05, f"Expected Rhat < 1.05, got {rhat}"


def test_small_rhat_requires_two_chains():
    """Test Rhat rejects a single chain."""
    with pytest.raises(ValueError, match="at least 2 chains"):
        DiagnosticsComputer.rhat(np.ones((1, 100)))


def test_small_ess_white_noise():
    """Test ESS of independent draws is close to the draw count."""
    rng = np.random.default_rng(42)
    ess = DiagnosticsComputer.ess(rng.normal(0, 1, 1000))
    assert ess > 500, f"Expected ESS > 500 for white noise, got {ess}"


def test_small_ess_autocorrelated():
    """Test ESS drops for an AR(1) chain."""
    rng = np.random.default_rng(42)
    samples = np.zeros(1000)
    for t in range(1, 1000):
        samples[t] = 0.95 * samples[t - 1] + rng.normal(0, 1)
    ess = DiagnosticsComputer.ess(samples)
    assert ess < 300, f"Expected ESS < 300 for AR(1), got {ess}"


def test_small_ess_constant():
    """Test ESS of a constant chain."""
    assert DiagnosticsComputer.ess(np.ones(200)) == 200.0


def test_small_posterior_sample_access():
    """Test name-based draws, pooling and membership."""
    rng = np.random.default_rng(0)
    sample = PosteriorSample.from_arrays(
        {"tau_add": rng.gamma(2.0, size=(3, 50)), "x": rng.normal(size=(3, 50, 7))}
    )
    assert sample.n_chains == 3
    assert sample.n_draws == 50
    assert sample.draws("x").shape == (3, 50, 7)
    assert sample.pooled("x").shape == (150, 7)
    assert sample.pooled("tau_add").shape == (150,)
    assert "x" in sample and "mu" not in sample


def test_small_posterior_sample_unknown_variable():
    """Test variables that were not requested cannot be read."""
    sample = PosteriorSample.from_arrays({"tau_add": np.ones((2, 10))})
    with pytest.raises(KeyError):
        sample.draws("x")


def test_small_convergence_statistic_single_chain():
    """Test R-hat is NaN (not an error) with one chain."""
    sample = PosteriorSample.from_arrays({"tau_add": np.random.default_rng(0).normal(size=(1, 100))})
    assert np.isnan(SamplingEngine.convergence_statistic(sample)["tau_add"])


def test_small_convergence_statistic_vector():
    """Test the largest element R-hat is reported for vector variables."""
    rng = np.random.default_rng(1)
    x = rng.normal(size=(2, 200, 3))
    x[1, :, 2] += 10.0
    rhat = SamplingEngine.convergence_statistic(PosteriorSample.from_arrays({"x": x}))
    assert rhat["x"] > 1.5


def test_small_convergence_statistic_constant_element():
    """Test a constant element counts as converged instead of NaN."""
    rng = np.random.default_rng(2)
    x = rng.normal(size=(2, 200, 2))
    x[:, :, 0] = 3.0
    rhat = SamplingEngine.convergence_statistic(PosteriorSample.from_arrays({"x": x}))
    assert np.isfinite(rhat["x"])
    assert rhat["x"] < 1.05


def test_small_exploration_report():
    """Test threshold logic, NaN counted as not converged."""
    report = ExplorationReport({"a": 1.01, "b": 1.3, "c": float("nan")}, {}, 1.1, 100)
    assert report.not_converged() == ["b", "c"]
    assert not report.converged
    assert ExplorationReport({"a": 1.01}, {}, 1.1, 100).converged


# ============================================================================
# MEDIUM TESTS: Configuration, compile, driver
# ============================================================================

def test_medium_driver_config_defaults():
    """Test default run lengths and threshold."""
    config = DriverConfig()
    assert config.n_chains == 3
    assert config.explore_iterations == 1000
    assert config.production_iterations == 10000
    assert config.rhat_threshold == 1.1


def test_medium_driver_config_validation():
    """Test invalid driver settings."""
    with pytest.raises(ValueError):
        DriverConfig(n_chains=0)
    with pytest.raises(ValueError):
        DriverConfig(explore_iterations=0)
    with pytest.raises(ValueError):
        DriverConfig(rhat_threshold=1.0)
    with pytest.raises(ValueError):
        DriverConfig(step_method="gibbs")


def test_medium_engine_validation():
    """Test invalid engine settings."""
    with pytest.raises(ValueError):
        SamplingEngine(step_method="hmc")
    with pytest.raises(ValueError):
        SamplingEngine(target_accept=1.5)


def test_medium_compile_handle():
    """Test a compiled handle carries the chain states."""
    spec, bundle = _random_walk_data()
    driver = SamplingDriver(DriverConfig(n_chains=2, random_seed=1))
    handle = driver.compile(spec, bundle)

    assert handle.n_chains == 2
    assert handle.iterations == 0
    assert set(handle.free_variables) == {"tau_obs", "tau_add", "x"}
    assert handle.points[0]["x"].shape == (15,)


def test_medium_compile_rejects_init_count():
    """Test one set of initial values per chain."""
    spec, bundle = _random_walk_data()
    inits = [{"tau_obs": 1.0, "tau_add": 1.0, "x": np.zeros(15)}]
    with pytest.raises(ConfigurationError, match="per chain"):
        SamplingEngine().compile(spec, bundle, inits, n_chains=2)


def test_medium_compile_rejects_bad_initial_values():
    """Test unknown names, non-finite values and wrong shapes."""
    spec, bundle = _random_walk_data()
    engine = SamplingEngine()
    with pytest.raises(ConfigurationError, match="unknown"):
        engine.compile(spec, bundle, [{"tau_obs": 1.0, "sigma": 1.0}], n_chains=1)
    with pytest.raises(ConfigurationError, match="not finite"):
        engine.compile(spec, bundle, [{"tau_obs": np.inf}], n_chains=1)
    with pytest.raises(ConfigurationError, match="shape"):
        engine.compile(spec, bundle, [{"x": np.zeros(14)}], n_chains=1)


def test_medium_compile_rejects_negative_tune():
    """Test adaptation length must not be negative."""
    spec, bundle = _random_walk_data()
    with pytest.raises(ValueError, match="tune"):
        SamplingEngine().compile(spec, bundle, [{}], n_chains=1, tune=-1)


def test_medium_freeze_nuts_keeps_step_size():
    """Test the fixed NUTS step reuses the adapted step size and mass matrix."""
    spec, bundle = _random_walk_data()
    engine = SamplingEngine()
    handle = SamplingDriver(DriverConfig(n_chains=2, random_seed=1), engine).compile(spec, bundle)
    handle.step.potential._var[:] = 0.5
    stats = {"step_size_bar": np.array([[0.2, 0.3], [0.4, 0.5]])}

    frozen = engine._freeze_step(handle, az.from_dict(sample_stats=stats))

    assert frozen is not handle.step
    assert not frozen.adapt_step_size
    assert np.isclose(frozen.step_size, 0.4)
    assert isinstance(frozen.potential, QuadPotentialDiag)
    assert np.allclose(frozen.potential.v, 0.5)


def test_medium_freeze_metropolis_stops_tuning():
    """Test fixed Metropolis steps keep their tuned scaling."""
    spec, bundle = _random_walk_data()
    engine = SamplingEngine(step_method="metropolis")
    handle = SamplingDriver(DriverConfig(n_chains=2, random_seed=1), engine).compile(spec, bundle)
    for method in handle.step.methods:
        method.scaling = np.array([0.3])

    frozen = engine._freeze_step(handle, None)

    assert len(frozen.methods) == len(handle.step.methods)
    for method in frozen.methods:
        assert not method.tune
        assert np.allclose(method.scaling, 0.3)


def test_medium_freeze_slice_is_unchanged():
    """Test slice widths carry over without rebuilding the step."""
    spec, bundle = _random_walk_data()
    engine = SamplingEngine(step_method="slice")
    handle = SamplingDriver(DriverConfig(n_chains=2, random_seed=1), engine).compile(spec, bundle)
    assert engine._freeze_step(handle, None) is handle.step


def test_medium_explore_warns_without_extending():
    """Test non-convergence is reported once and never triggers more sampling."""
    spec = random_walk(10)
    rng = np.random.default_rng(0)
    engine = ScriptedEngine(
        {
            "tau_obs": np.stack([rng.normal(1, 0.1, 100), rng.normal(9, 0.1, 100)]),
            "tau_add": rng.normal(1, 0.1, size=(2, 100)),
        }
    )
    driver = SamplingDriver(DriverConfig(n_chains=2, explore_iterations=100), engine=engine)

    with pytest.warns(ConvergenceWarning, match="tau_obs"):
        report = driver.explore(FakeHandle(spec))

    assert report.not_converged() == ["tau_obs"]
    assert engine.requests == [(["tau_obs", "tau_add"], 100)]


def test_medium_explore_converged_is_silent():
    """Test no warning for well-mixed chains."""
    spec = random_walk(10)
    rng = np.random.default_rng(0)
    engine = ScriptedEngine(
        {
            "tau_obs": rng.normal(1, 0.1, size=(3, 500)),
            "tau_add": rng.normal(1, 0.1, size=(3, 500)),
        }
    )
    driver = SamplingDriver(DriverConfig(explore_iterations=500), engine=engine)

    with warnings.catch_warnings():
        warnings.simplefilter("error", ConvergenceWarning)
        report = driver.explore(FakeHandle(spec))
    assert report.converged
    assert report.ess["tau_obs"] > 500


def test_medium_produce_requests_monitor_set():
    """Test production monitors parameters plus the latent state."""
    spec = random_walk(10)
    rng = np.random.default_rng(0)
    engine = ScriptedEngine(
        {
            "tau_obs": rng.gamma(2.0, size=(2, 20)),
            "tau_add": rng.gamma(2.0, size=(2, 20)),
            "x": rng.normal(size=(2, 20, 10)),
        }
    )
    driver = SamplingDriver(DriverConfig(n_chains=2, production_iterations=20), engine=engine)

    sample = driver.produce(FakeHandle(spec))
    assert engine.requests == [(["tau_obs", "tau_add", "x"], 20)]
    assert sample.draws("x").shape == (2, 20, 10)


def test_medium_engine_failure_passes_message(monkeypatch):
    """Test PyMC errors surface as EngineFailure with the original message."""
    spec, bundle = _random_walk_data()
    handle = SamplingDriver(DriverConfig(n_chains=2, random_seed=1)).compile(spec, bundle)

    def broken_sample(*args, **kwargs):
        raise ValueError("Mass matrix contains zeros on the diagonal")

    monkeypatch.setattr(sampler.pm, "sample", broken_sample)
    with pytest.raises(EngineFailure, match="Mass matrix contains zeros") as excinfo:
        SamplingEngine().sample(handle, ["tau_add"], 10)

    assert isinstance(excinfo.value.__cause__, ValueError)
    assert handle.iterations == 0
    assert handle.requests == 0


# ============================================================================
# LARGE TESTS: Short NUTS runs
# ============================================================================

@pytest.mark.slow
def test_large_requests_continue_chains():
    """Test each request appends draws and moves every chain forward."""
    spec, bundle = _random_walk_data()
    config = DriverConfig(n_chains=2, tune=300, random_seed=3)
    engine = SamplingEngine()
    handle = SamplingDriver(config, engine).compile(spec, bundle)

    first = engine.sample(handle, ["tau_add"], 60)
    assert handle.iterations == 60
    for chain in range(2):
        assert np.isclose(handle.points[chain]["tau_add"], first.draws("tau_add")[chain, -1])

    second = engine.sample(handle, ["tau_add", "x"], 40)
    assert handle.iterations == 100
    assert handle.requests == 2
    assert second.draws("x").shape == (2, 40, 15)
    assert "x" not in first


@pytest.mark.slow
def test_large_production_keeps_exploration_tuning(monkeypatch):
    """Test production runs untuned with the step size adapted before exploration."""
    spec, bundle = _random_walk_data(n_time=30)
    config = DriverConfig(
        n_chains=2, explore_iterations=100, production_iterations=100, tune=500, random_seed=5
    )
    driver = SamplingDriver(config)
    handle = driver.compile(spec, bundle)

    calls = []
    pymc_sample = sampler.pm.sample

    def recording_sample(*args, **kwargs):
        idata = pymc_sample(*args, **kwargs)
        calls.append((kwargs["tune"], idata.sample_stats["step_size_bar"].values))
        return idata

    monkeypatch.setattr(sampler.pm, "sample", recording_sample)
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", ConvergenceWarning)
        driver.explore(handle)
    driver.produce(handle)

    (explore_tune, explore_steps), (produce_tune, produce_steps) = calls
    assert explore_tune == 500
    assert produce_tune == 0
    assert np.allclose(produce_steps, np.mean(explore_steps[:, -1]))
    # an untuned NUTS step would start from 0.25 / n**0.25
    assert not np.isclose(produce_steps[0, 0], 0.25 / 32**0.25, rtol=0.01)


@pytest.mark.slow
def test_large_missing_values_keep_full_latent():
    """Test latent draws span every time step when half the data is missing."""
    spec, bundle = _random_walk_data()
    masked, _ = mask_observations(bundle.observations["y"], range(1, 15, 2))
    config = DriverConfig(n_chains=2, tune=300, random_seed=4)
    driver = SamplingDriver(config)
    handle = driver.compile(spec, bundle.with_observations(y=masked))

    sample = driver.produce(handle, iterations=50)
    x = sample.draws("x")
    assert x.shape == (2, 50, 15)
    assert np.all(np.isfinite(x))


@pytest.mark.slow
def test_large_unknown_variable_request():
    """Test requesting a variable the model does not have."""
    spec, bundle = _random_walk_data()
    handle = SamplingDriver(DriverConfig(n_chains=1)).compile(spec, bundle)
    with pytest.raises(ConfigurationError, match="alpha_ind"):
        SamplingEngine().sample(handle, ["alpha_ind"], 10)

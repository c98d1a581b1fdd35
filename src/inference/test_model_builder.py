"""
Tests for the PyMC model builder.

Progressive sizing:
- Small (n=10): validation and build of the random-walk model (instant)
- Medium (n=30): missing data, fusion and hierarchical variants (1-5 seconds)
- Large (10 x 20 panel): realistic hierarchical growth model

No sampling happens here; models are only built and evaluated at their
initial point.
"""

import numpy as np
import pytest

from assembly.assembler import DataAssembler, mask_observations
from inference.model_builder import ModelBuilder
from simulation.simulator import StateSpaceSimulator
from statespace.builder import ModelConfig, ModelGraphBuilder, growth_fusion, random_walk
from statespace.errors import ConfigurationError


def _series_bundle(n_time, seed=0, spec=None):
    spec = spec or random_walk(n_time)
    _, observed = StateSpaceSimulator(random_seed=seed).random_walk(n_time, x0=5.0)
    return spec, DataAssembler(spec).from_series(observed)


def _panel_bundle(n_individuals, n_time, seed=0, **kwargs):
    spec = growth_fusion(n_individuals, n_time, **kwargs)
    panel = StateSpaceSimulator(random_seed=seed).growth_panel(n_individuals, n_time)
    bundle = DataAssembler(spec).from_arrays({"z": panel["z"], "y": panel["y"]})
    return spec, bundle


def _names(rvs):
    return {rv.name for rv in rvs}


# ============================================================================
# SMALL SAMPLE TESTS (n=10): should be instant
# ============================================================================

def test_small_builder_init():
    """Test builder stores spec and bundle without building."""
    spec, bundle = _series_bundle(10)
    builder = ModelBuilder(spec, bundle)
    assert builder.spec is spec
    assert builder.model is None


def test_small_build_random_walk():
    """Test free variables of the random-walk model."""
    spec, bundle = _series_bundle(10)
    model = ModelBuilder(spec, bundle).build()
    assert _names(model.free_RVs) == {"tau_obs", "tau_add", "x"}
    assert _names(model.observed_RVs) == {"obs"}
    assert tuple(model.eval_rv_shapes()["x"]) == (10,)


def test_small_get_model_before_build():
    """Test get_model raises before build."""
    spec, bundle = _series_bundle(10)
    builder = ModelBuilder(spec, bundle)
    with pytest.raises(RuntimeError, match="not been built"):
        builder.get_model()
    model = builder.build()
    assert builder.get_model() is model


def test_small_dimension_mismatch():
    """Test data built for another series length is rejected."""
    _, bundle = _series_bundle(10)
    with pytest.raises(ConfigurationError, match="dimensions"):
        ModelBuilder(random_walk(12), bundle)


def test_small_missing_hyperparameter():
    """Test every prior hyperparameter must be supplied."""
    spec, bundle = _series_bundle(10)
    del bundle.hyperparameters["a_obs"]
    with pytest.raises(ConfigurationError, match="a_obs"):
        ModelBuilder(spec, bundle)


def test_small_non_finite_hyperparameter():
    """Test hyperparameters must be finite."""
    spec, bundle = _series_bundle(10)
    bundle.hyperparameters["x_ic"] = np.nan
    with pytest.raises(ConfigurationError, match="finite"):
        ModelBuilder(spec, bundle)


def test_small_repr():
    """Test string representation."""
    spec, bundle = _series_bundle(10)
    text = repr(ModelBuilder(spec, bundle))
    assert "ModelBuilder" in text and "DataBundle" in text


# ============================================================================
# MEDIUM SAMPLE TESTS (n=30): should be 1-5 seconds
# ============================================================================

def test_medium_missing_cells_have_no_likelihood():
    """Test masked cells are dropped from the likelihood, latent keeps full length."""
    spec, bundle = _series_bundle(30)
    masked, held_out = mask_observations(bundle.observations["y"], range(10, 20))
    model = ModelBuilder(spec, bundle.with_observations(y=masked)).build()

    assert tuple(model["obs"].shape.eval()) == (30 - len(held_out),)
    assert tuple(model.eval_rv_shapes()["x"]) == (30,)


def test_medium_all_missing_stream():
    """Test a stream without data leaves its precision to the prior."""
    spec, bundle = _series_bundle(30)
    model = ModelBuilder(spec, bundle.with_observations(y=np.full(30, np.nan))).build()
    assert _names(model.observed_RVs) == set()
    assert "tau_obs" in _names(model.free_RVs)


def test_medium_initial_point_logp_finite():
    """Test every term has a finite log density at the default initial point."""
    spec, bundle = _series_bundle(30)
    model = ModelBuilder(spec, bundle).build()
    logps = model.point_logps()
    assert set(logps) >= {"tau_obs", "tau_add", "obs", "process", "initial_state"}
    assert np.all(np.isfinite(list(logps.values())))


def test_medium_fusion_model():
    """Test both streams share the latent matrix."""
    spec, bundle = _panel_bundle(4, 8)
    model = ModelBuilder(spec, bundle).build()

    assert _names(model.free_RVs) == {"tau_dbh", "tau_inc", "tau_add", "mu", "x"}
    assert _names(model.observed_RVs) == {"dbh", "inc"}
    assert tuple(model.eval_rv_shapes()["x"]) == (4, 8)
    # increments start at t = 1
    assert tuple(model["inc"].shape.eval()) == (4 * 7,)
    assert tuple(model["dbh"].shape.eval()) == (4 * 8,)


def test_medium_hierarchical_effects():
    """Test random-effect offsets get one value per level."""
    spec, bundle = _panel_bundle(4, 8, individual_effect=True, time_effect=True)
    model = ModelBuilder(spec, bundle).build()
    shapes = model.eval_rv_shapes()

    assert {"alpha_ind", "alpha_year", "tau_ind", "tau_year"} <= _names(model.free_RVs)
    assert tuple(shapes["alpha_ind"]) == (4,)
    assert tuple(shapes["alpha_year"]) == (8,)


def test_medium_grouped_effect():
    """Test a plot-level group with fewer levels than individuals."""
    builder = ModelGraphBuilder(ModelConfig(n_time=6, n_individuals=4, increments=True))
    spec = builder.add_random_effect("plot", "individual", [0, 0, 1, 1]).build()
    panel = StateSpaceSimulator(random_seed=1).growth_panel(4, 6)
    bundle = DataAssembler(spec).from_arrays({"z": panel["z"], "y": panel["y"]})

    model = ModelBuilder(spec, bundle).build()
    assert tuple(model.eval_rv_shapes()["alpha_plot"]) == (2,)


def test_medium_covariate_slope():
    """Test a fixed effect needs its covariate."""
    spec = growth_fusion(4, 6, covariates=("sdi",))
    panel = StateSpaceSimulator(random_seed=2).growth_panel(4, 6)
    bundle = DataAssembler(spec).from_arrays(
        {"z": panel["z"], "y": panel["y"]}, covariates={"sdi": [-1.0, 0.0, 0.5, 0.5]}
    )
    model = ModelBuilder(spec, bundle).build()
    assert "beta_sdi" in _names(model.free_RVs)

    bundle.covariates.clear()
    with pytest.raises(ConfigurationError, match="sdi"):
        ModelBuilder(spec, bundle)


# ============================================================================
# LARGE SAMPLE TESTS (10 x 20 panel): should be 5-30 seconds
# ============================================================================

def test_large_hierarchical_panel():
    """Test realistic hierarchical panel with gaps in both streams."""
    n_individuals, n_time = 10, 20
    spec = growth_fusion(n_individuals, n_time, individual_effect=True, time_effect=True)
    panel = StateSpaceSimulator(random_seed=3).growth_panel(
        n_individuals, n_time, sigma_individual=0.2, sigma_time=0.1
    )
    z, _ = mask_observations(panel["z"], [(i, t) for i in range(n_individuals) for t in range(1, n_time, 2)])
    y, _ = mask_observations(panel["y"], [(i, t) for i in range(0, n_individuals, 2) for t in range(n_time)])
    bundle = DataAssembler(spec).from_arrays({"z": z, "y": y})

    model = ModelBuilder(spec, bundle).build()
    assert tuple(model.eval_rv_shapes()["x"]) == (n_individuals, n_time)
    assert tuple(model["dbh"].shape.eval()) == (int(np.sum(~np.isnan(z))),)
    assert tuple(model["inc"].shape.eval()) == (int(np.sum(~np.isnan(y))),)
    assert np.all(np.isfinite(list(model.point_logps().values())))

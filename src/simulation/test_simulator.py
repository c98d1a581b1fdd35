"""
Tests for the synthetic state-space data generator.

Progressive sizing:
- Small: shapes, parameter validation, noiseless limits (instant)
- Medium: long-table export and round trip through the data assembler
"""

import numpy as np
import pytest

from assembly.assembler import DataAssembler
from simulation.simulator import StateSpaceSimulator
from statespace.builder import growth_fusion


# ============================================================================
# SMALL TESTS
# ============================================================================

def test_small_random_walk_shapes():
    """Test latent and observed series have n_time entries."""
    latent, observed = StateSpaceSimulator(random_seed=0).random_walk(25, x0=3.0)
    assert latent.shape == (25,)
    assert observed.shape == (25,)
    assert latent[0] == 3.0


def test_small_random_walk_noiseless_observation():
    """Test zero observation error returns the latent path."""
    latent, observed = StateSpaceSimulator(random_seed=0).random_walk(10, sigma_obs=0.0)
    np.testing.assert_array_equal(latent, observed)


def test_small_random_walk_no_process_error():
    """Test zero process error keeps the latent state constant."""
    latent, _ = StateSpaceSimulator(random_seed=0).random_walk(10, x0=1.5, sigma_add=0.0)
    np.testing.assert_array_equal(latent, np.full(10, 1.5))


def test_small_random_walk_reproducible():
    """Test same seed, same series."""
    a = StateSpaceSimulator(random_seed=7).random_walk(30)
    b = StateSpaceSimulator(random_seed=7).random_walk(30)
    np.testing.assert_array_equal(a[1], b[1])


def test_small_random_walk_validation():
    """Test invalid lengths and negative standard deviations."""
    sim = StateSpaceSimulator()
    with pytest.raises(ValueError):
        sim.random_walk(1)
    with pytest.raises(ValueError):
        sim.random_walk(10, sigma_add=-0.1)


def test_small_growth_panel_shapes():
    """Test panel arrays and the missing first increment."""
    panel = StateSpaceSimulator(random_seed=0).growth_panel(5, 8)
    for name in ("x", "z", "y"):
        assert panel[name].shape == (5, 8)
    assert np.all(np.isnan(panel["y"][:, 0]))
    assert not np.any(np.isnan(panel["y"][:, 1:]))
    assert panel["alpha_ind"].shape == (5,)
    assert panel["alpha_year"].shape == (8,)


def test_small_growth_panel_pure_drift():
    """Test growth equals the drift when every error term is zero."""
    panel = StateSpaceSimulator(random_seed=0).growth_panel(
        3, 6, drift=0.7, sigma_add=0.0, sigma_dbh=0.0, sigma_inc=0.0
    )
    np.testing.assert_allclose(np.diff(panel["x"], axis=1), 0.7)
    np.testing.assert_allclose(panel["y"][:, 1:], 0.7)
    np.testing.assert_array_equal(panel["z"], panel["x"])


def test_small_growth_panel_individual_effect():
    """Test individual offsets shift each tree's growth rate."""
    panel = StateSpaceSimulator(random_seed=1).growth_panel(
        4, 6, drift=0.5, sigma_add=0.0, sigma_individual=0.3
    )
    growth = np.diff(panel["x"], axis=1)
    np.testing.assert_allclose(growth, (0.5 + panel["alpha_ind"])[:, None] * np.ones((1, 5)))


def test_small_growth_panel_validation():
    """Test invalid dimensions and negative standard deviations."""
    sim = StateSpaceSimulator()
    with pytest.raises(ValueError):
        sim.growth_panel(0, 5)
    with pytest.raises(ValueError):
        sim.growth_panel(3, 5, sigma_time=-1.0)


# ============================================================================
# MEDIUM TESTS
# ============================================================================

def test_medium_long_table():
    """Test one row per (tree, year) with the ingestion columns."""
    panel = StateSpaceSimulator(random_seed=0).growth_panel(3, 4)
    table = StateSpaceSimulator.to_long_table(panel, times=[2001, 2002, 2003, 2004], plots=["A", "A", "B"])
    assert len(table) == 12
    assert list(table.columns) == ["tree", "plot", "year", "dbh", "increment"]
    assert table["tree"].nunique() == 3
    assert set(table.loc[table["tree"] == "T002", "plot"]) == {"B"}


def test_medium_long_table_dimension_check():
    """Test mismatched labels are rejected."""
    panel = StateSpaceSimulator(random_seed=0).growth_panel(3, 4)
    with pytest.raises(ValueError):
        StateSpaceSimulator.to_long_table(panel, times=[1, 2, 3])


def test_medium_table_round_trip():
    """Test the long table pivots back to the simulated matrices."""
    panel = StateSpaceSimulator(random_seed=0).growth_panel(3, 4)
    table = StateSpaceSimulator.to_long_table(panel)
    spec = growth_fusion(3, 4)
    bundle = DataAssembler(spec).from_table(table, "tree", "year", {"z": "dbh", "y": "increment"})
    np.testing.assert_allclose(bundle.observations["z"], panel["z"])
    np.testing.assert_array_equal(np.isnan(bundle.observations["y"]), np.isnan(panel["y"]))

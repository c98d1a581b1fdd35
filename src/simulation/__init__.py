"""
Synthetic data generation for state-space models.

**Usage:**
```python
from simulation.simulator import StateSpaceSimulator

sim = StateSpaceSimulator(random_seed=1)
latent, observed = sim.random_walk(n_time=50, sigma_add=0.1, sigma_obs=0.05)

panel = sim.growth_panel(n_individuals=10, n_time=15, sigma_individual=0.3)
table = sim.to_long_table(panel, times=range(2000, 2015))
```
"""

from simulation.simulator import StateSpaceSimulator

__all__ = [
    "StateSpaceSimulator",
]

"""
Bayesian inference for state-space models.

This module provides the PyMC-based fitting pipeline:
1. ModelBuilder: translate a ModelSpec + DataBundle into a PyMC model
2. ChainInitializer: dispersed, always-finite starting values per chain
3. SamplingEngine: stateful compile / sample / R-hat
4. SamplingDriver: explore (diagnostics) then produce (full draws)
5. AnalysisRun / fit: one owned context per scenario

**Usage:**
```python
from inference.sampler import DriverConfig
from inference.workflow import fit

run = fit(spec, bundle, DriverConfig(n_chains=3, production_iterations=5000))
print(run.exploration)           # R-hat / ESS of the precisions
x = run.posterior.pooled("x")    # (chains * draws, n_time)
```

**Key Classes:**
- ModelBuilder: spec to PyMC translation
- ChainInitializer, InitializerConfig: bootstrap plug-in inits
- SamplingEngine, ModelHandle, PosteriorSample: engine protocol
- SamplingDriver, DriverConfig, ExplorationReport: two-phase driver
- DiagnosticsComputer: Rhat, ESS
- AnalysisRun, fit: run context
"""

from inference.initializer import ChainInitializer, InitializerConfig
from inference.model_builder import ModelBuilder
from inference.sampler import (
    DiagnosticsComputer,
    DriverConfig,
    ExplorationReport,
    ModelHandle,
    PosteriorSample,
    SamplingDriver,
    SamplingEngine,
)
from inference.workflow import AnalysisRun, fit

__all__ = [
    "ChainInitializer",
    "InitializerConfig",
    "ModelBuilder",
    "DiagnosticsComputer",
    "DriverConfig",
    "ExplorationReport",
    "ModelHandle",
    "PosteriorSample",
    "SamplingDriver",
    "SamplingEngine",
    "AnalysisRun",
    "fit",
]

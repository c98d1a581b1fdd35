"""
Structured state-space model graphs.

This module describes Gaussian latent random-walk models declaratively:
1. ModelSpec: likelihood, transition and prior relations
2. ModelGraphBuilder: assemble a validated ModelSpec from flags
3. PriorSpec: numeric hyperparameter defaults

**Usage:**
```python
from statespace.builder import ModelConfig, ModelGraphBuilder

config = ModelConfig(n_time=30, n_individuals=12, increments=True,
                     individual_effect=True, time_effect=True)
spec = ModelGraphBuilder(config).build()
print(spec.describe())
```

**Key Classes:**
- ModelSpec, Likelihood, Transition, Prior, RandomEffectGroup, FixedEffect
- ModelGraphBuilder, ModelConfig, PriorSpec
- ConfigurationError, DegenerateStatisticError, EngineFailure, ConvergenceWarning
"""

from statespace.builder import (
    ModelConfig,
    ModelGraphBuilder,
    PriorSpec,
    growth_fusion,
    random_walk,
)
from statespace.errors import (
    ConfigurationError,
    ConvergenceWarning,
    DegenerateStatisticError,
    EngineFailure,
    StateSpaceError,
)
from statespace.spec import (
    FixedEffect,
    Likelihood,
    ModelSpec,
    Prior,
    RandomEffectGroup,
    Transition,
)

__all__ = [
    "ModelConfig",
    "ModelGraphBuilder",
    "PriorSpec",
    "growth_fusion",
    "random_walk",
    "ConfigurationError",
    "ConvergenceWarning",
    "DegenerateStatisticError",
    "EngineFailure",
    "StateSpaceError",
    "FixedEffect",
    "Likelihood",
    "ModelSpec",
    "Prior",
    "RandomEffectGroup",
    "Transition",
]

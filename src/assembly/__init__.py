"""
Data assembly for state-space models.

Turns series or long tables into DataBundles (observation arrays with
missing values kept in place, dimensions, prior hyperparameters) and builds
held-out scenarios by masking.

**Usage:**
```python
from assembly.assembler import DataAssembler, thin_observations

assembler = DataAssembler(spec, log_transform=True)
bundle = assembler.from_series(flu_counts, x_ic=1000)

thinned, held_out = thin_observations(bundle.observations["y"], every=4)
monthly = bundle.with_observations(y=thinned)
```
"""

from assembly.assembler import (
    DataAssembler,
    DataBundle,
    group_levels,
    mask_observations,
    thin_observations,
    to_float_array,
    truncate_observations,
)

__all__ = [
    "DataAssembler",
    "DataBundle",
    "group_levels",
    "mask_observations",
    "thin_observations",
    "to_float_array",
    "truncate_observations",
]

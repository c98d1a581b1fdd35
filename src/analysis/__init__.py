"""
Posterior analysis for state-space fits.

**Usage:**
```python
import numpy as np
from analysis.summarizer import credible_interval, pathwise_increment, held_out_comparison

ci = credible_interval(run.posterior, "x", transform=np.exp)   # (3, n_time)
growth = pathwise_increment(run.posterior, "x")               # (3, ..., n_time - 1)
check = held_out_comparison(run.posterior, "x", held_out)
print(check.slope, check.intercept, check.r_squared)
```
"""

from analysis.summarizer import (
    HeldOutComparison,
    credible_interval,
    held_out_comparison,
    interval_table,
    parameter_correlation,
    pathwise_increment,
    summary_table,
)

__all__ = [
    "HeldOutComparison",
    "credible_interval",
    "held_out_comparison",
    "interval_table",
    "parameter_correlation",
    "pathwise_increment",
    "summary_table",
]

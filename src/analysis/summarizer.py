"""
Posterior summaries for state-space fits.

- Credible intervals per time step from draws pooled across chains
- Pathwise derived quantities: differences are taken inside each draw
  before quantiles, which keeps the correlation between x[t-1] and x[t]
- Held-out comparison: posterior median vs. withheld observation, with a
  linear regression of observed on predicted
- Correlation of precision parameters, to spot error sources that the
  data cannot tell apart
"""

from typing import Callable, Dict, Optional, Sequence, Tuple, Union

import arviz as az
import numpy as np
import pandas as pd
from numpy.typing import NDArray
from scipy import stats

from inference.sampler import PosteriorSample

Index = Union[int, Tuple[int, int]]
Transform = Optional[Callable[[NDArray[np.float64]], NDArray[np.float64]]]

DEFAULT_PROBS = (0.025, 0.5, 0.975)


def _pooled(sample: PosteriorSample, name: str, transform: Transform) -> NDArray[np.float64]:
    draws = sample.pooled(name)
    return transform(draws) if transform is not None else draws


def credible_interval(
    sample: PosteriorSample,
    name: str,
    probs: Sequence[float] = DEFAULT_PROBS,
    transform: Transform = None,
) -> NDArray[np.float64]:
    """
    Quantiles of a variable's draws, pooled across chains.

    Parameters
    ----------
    sample : PosteriorSample
        Posterior draws.
    name : str
        Variable name, e.g. "x".
    probs : sequence of float
        Quantile levels. Default (0.025, 0.5, 0.975).
    transform : callable, optional
        Applied to every draw before the quantiles, e.g. ``np.exp`` to
        back-transform log-scale states.

    Returns
    -------
    interval : NDArray[np.float64]
        Shape ``(len(probs), *variable_shape)``.
    """
    return np.quantile(_pooled(sample, name, transform), probs, axis=0)


def pathwise_increment(
    sample: PosteriorSample,
    name: str,
    probs: Sequence[float] = DEFAULT_PROBS,
    transform: Transform = None,
) -> NDArray[np.float64]:
    """
    Quantiles of ``x[t] - x[t-1]`` computed within each draw.

    Returns
    -------
    interval : NDArray[np.float64]
        Shape ``(len(probs), ..., n_time - 1)``; column ``k`` is the increment
        into time step ``k + 1``.
    """
    draws = _pooled(sample, name, transform)
    return np.quantile(np.diff(draws, axis=-1), probs, axis=0)


def interval_table(
    sample: PosteriorSample,
    name: str,
    probs: Sequence[float] = DEFAULT_PROBS,
    transform: Transform = None,
    time_labels: Optional[Sequence] = None,
    individual_labels: Optional[Sequence] = None,
) -> pd.DataFrame:
    """
    Credible interval as a table with columns ``lower``, ``median``, ``upper``.

    Indexed by time (univariate) or by (individual, time).
    """
    if len(probs) != 3:
        raise ValueError(f"probs must hold (lower, median, upper). Got {probs}")
    lower, median, upper = credible_interval(sample, name, probs, transform)

    if lower.ndim == 1:
        index = pd.Index(time_labels if time_labels is not None else range(lower.shape[0]), name="time")
    else:
        individuals = individual_labels if individual_labels is not None else range(lower.shape[0])
        times = time_labels if time_labels is not None else range(lower.shape[1])
        index = pd.MultiIndex.from_product([individuals, times], names=["individual", "time"])

    return pd.DataFrame(
        {"lower": lower.ravel(), "median": median.ravel(), "upper": upper.ravel()},
        index=index,
    )


class HeldOutComparison:
    """
    Posterior medians at withheld indices vs. the withheld observations.

    Attributes
    ----------
    index : list
        Withheld indices.
    predicted, observed : NDArray[np.float64]
        Posterior median and withheld value at each index.
    lower, upper : NDArray[np.float64]
        95% credible bounds at each index.
    slope, intercept, r_squared : float
        Regression of observed on predicted.
    coverage : float
        Share of withheld values inside their credible interval.
    """

    def __init__(
        self,
        index: list,
        predicted: NDArray[np.float64],
        observed: NDArray[np.float64],
        lower: NDArray[np.float64],
        upper: NDArray[np.float64],
    ) -> None:
        self.index = index
        self.predicted = predicted
        self.observed = observed
        self.lower = lower
        self.upper = upper
        self.coverage = float(np.mean((observed >= lower) & (observed <= upper)))

        if len(index) >= 3 and np.ptp(predicted) > 0:
            fit = stats.linregress(predicted, observed)
            self.slope = float(fit.slope)
            self.intercept = float(fit.intercept)
            self.r_squared = float(fit.rvalue**2)
        else:
            self.slope = self.intercept = self.r_squared = float("nan")

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame(
            {
                "predicted": self.predicted,
                "observed": self.observed,
                "lower": self.lower,
                "upper": self.upper,
            },
            index=pd.Index(self.index, name="index", tupleize_cols=False),
        )

    def __repr__(self) -> str:
        return (
            f"HeldOutComparison(n={len(self.index)}, slope={self.slope:.3f}, "
            f"intercept={self.intercept:.3f}, r2={self.r_squared:.3f}, "
            f"coverage={self.coverage:.2f})"
        )


def held_out_comparison(
    sample: PosteriorSample,
    name: str,
    held_out: Dict[Index, float],
    transform: Transform = None,
) -> HeldOutComparison:
    """
    Compare posterior medians with withheld observations.

    Parameters
    ----------
    sample : PosteriorSample
        Posterior draws.
    name : str
        Latent variable name.
    held_out : Dict
        Index to withheld value, on the same scale as the transformed draws.
    transform : callable, optional
        Applied to draws before summarizing.
    """
    if not held_out:
        raise ValueError("held_out is empty")
    lower, median, upper = credible_interval(sample, name, DEFAULT_PROBS, transform)
    index = list(held_out)
    observed = np.array([held_out[i] for i in index], dtype=np.float64)
    return HeldOutComparison(
        index=index,
        predicted=np.array([median[i] for i in index]),
        observed=observed,
        lower=np.array([lower[i] for i in index]),
        upper=np.array([upper[i] for i in index]),
    )


def parameter_correlation(
    sample: PosteriorSample,
    names: Optional[Sequence[str]] = None,
) -> pd.DataFrame:
    """
    Pairwise correlation of scalar parameters' pooled draws.

    Defaults to every scalar variable whose name starts with ``tau_``.
    """
    if names is None:
        names = [
            name for name in sample.var_names
            if name.startswith("tau_") and sample.draws(name).ndim == 2
        ]
    frame = pd.DataFrame({name: sample.pooled(name) for name in names})
    return frame.corr()


def summary_table(
    sample: PosteriorSample,
    var_names: Optional[Sequence[str]] = None,
) -> Dict[str, Dict[str, float]]:
    """
    Posterior summary: mean, sd, 95% HDI, R-hat and bulk ESS per element.
    """
    summary_df = az.summary(sample.posterior, var_names=list(var_names) if var_names else None, hdi_prob=0.95)

    stats_by_name = {}
    for var_name in summary_df.index:
        stats_by_name[var_name] = {
            "mean": float(summary_df.loc[var_name, "mean"]),
            "sd": float(summary_df.loc[var_name, "sd"]),
            "hdi_low": float(summary_df.loc[var_name, "hdi_2.5%"]),
            "hdi_high": float(summary_df.loc[var_name, "hdi_97.5%"]),
            "rhat": float(summary_df.loc[var_name, "r_hat"]),
            "ess_bulk": float(summary_df.loc[var_name, "ess_bulk"]),
        }
    return stats_by_name

"""
Synthetic data for state-space models.

Generates latent random walks and their noisy observations with known
process and observation error, so fits can be checked against the truth:

    x[t]    = x[t-1] + drift + alpha_ind[i] + alpha_year[t] + e_add,  e_add ~ N(0, sigma_add²)
    y[t]    = x[t] + e_obs                                         (random walk)
    z[i, t] = x[i, t] + e_dbh                                      (size)
    y[i, t] = x[i, t] - x[i, t-1] + e_inc                          (increment)
"""

from typing import Dict, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from numpy.typing import NDArray


class StateSpaceSimulator:
    """
    Simulator for univariate random walks and multi-individual growth panels.

    Attributes
    ----------
    rng : np.random.Generator
        Random generator shared by all draws of this simulator.
    """

    def __init__(self, random_seed: Optional[int] = None) -> None:
        self.rng = np.random.default_rng(random_seed)

    def random_walk(
        self,
        n_time: int,
        x0: float = 0.0,
        sigma_add: float = 0.1,
        sigma_obs: float = 0.05,
    ) -> Tuple[NDArray[np.float64], NDArray[np.float64]]:
        """
        Latent random walk and its noisy observation.

        Parameters
        ----------
        n_time : int
            Number of time steps.
        x0 : float
            Initial latent value. Default 0.0.
        sigma_add : float
            Process error standard deviation. Default 0.1.
        sigma_obs : float
            Observation error standard deviation. Default 0.05.

        Returns
        -------
        latent : NDArray[np.float64]
            True states, shape (n_time,)
        observed : NDArray[np.float64]
            Observations, shape (n_time,)
        """
        if n_time < 2:
            raise ValueError(f"n_time must be >= 2. Got {n_time}")
        if sigma_add < 0 or sigma_obs < 0:
            raise ValueError(
                f"Standard deviations must be non-negative. Got "
                f"sigma_add={sigma_add}, sigma_obs={sigma_obs}"
            )

        steps = self.rng.normal(0.0, sigma_add, size=n_time)
        steps[0] = 0.0
        latent = x0 + np.cumsum(steps)
        observed = latent + self.rng.normal(0.0, sigma_obs, size=n_time)
        return latent, observed

    def growth_panel(
        self,
        n_individuals: int,
        n_time: int,
        x0: float = 20.0,
        x0_spread: float = 5.0,
        drift: float = 0.5,
        sigma_add: float = 0.1,
        sigma_dbh: float = 0.5,
        sigma_inc: float = 0.05,
        sigma_individual: float = 0.0,
        sigma_time: float = 0.0,
    ) -> Dict[str, NDArray[np.float64]]:
        """
        Diameter growth of several individuals with optional random effects.

        Returns
        -------
        panel : Dict[str, NDArray]
            - 'x': true sizes, shape (n_individuals, n_time)
            - 'z': size measurements, shape (n_individuals, n_time)
            - 'y': increment measurements, shape (n_individuals, n_time);
              column 0 is NaN (no previous size)
            - 'alpha_ind': individual offsets, shape (n_individuals,)
            - 'alpha_year': time offsets, shape (n_time,)
        """
        if n_individuals <= 0 or n_time < 2:
            raise ValueError(
                f"Need n_individuals > 0 and n_time >= 2. Got "
                f"n_individuals={n_individuals}, n_time={n_time}"
            )
        for name, value in [
            ("sigma_add", sigma_add),
            ("sigma_dbh", sigma_dbh),
            ("sigma_inc", sigma_inc),
            ("sigma_individual", sigma_individual),
            ("sigma_time", sigma_time),
        ]:
            if value < 0:
                raise ValueError(f"{name} must be non-negative. Got {value}")

        alpha_ind = self.rng.normal(0.0, sigma_individual, size=n_individuals)
        alpha_year = self.rng.normal(0.0, sigma_time, size=n_time)

        x = np.empty((n_individuals, n_time))
        x[:, 0] = x0 + self.rng.normal(0.0, x0_spread, size=n_individuals)
        for t in range(1, n_time):
            noise = self.rng.normal(0.0, sigma_add, size=n_individuals)
            x[:, t] = x[:, t - 1] + drift + alpha_ind + alpha_year[t] + noise

        z = x + self.rng.normal(0.0, sigma_dbh, size=x.shape)
        y = np.full(x.shape, np.nan)
        y[:, 1:] = np.diff(x, axis=1) + self.rng.normal(0.0, sigma_inc, size=(n_individuals, n_time - 1))

        return {"x": x, "z": z, "y": y, "alpha_ind": alpha_ind, "alpha_year": alpha_year}

    @staticmethod
    def to_long_table(
        panel: Dict[str, NDArray[np.float64]],
        times: Optional[Sequence] = None,
        plots: Optional[Sequence] = None,
    ) -> pd.DataFrame:
        """
        Long table in the ingestion schema: one row per (tree, year) with
        ``dbh`` and ``increment`` columns and a ``plot`` grouping column.
        """
        n_individuals, n_time = panel["z"].shape
        times = list(times) if times is not None else list(range(n_time))
        plots = list(plots) if plots is not None else ["P1"] * n_individuals
        if len(times) != n_time or len(plots) != n_individuals:
            raise ValueError("times / plots do not match the panel dimensions")

        rows = []
        for i in range(n_individuals):
            for t in range(n_time):
                rows.append(
                    {
                        "tree": f"T{i:03d}",
                        "plot": plots[i],
                        "year": times[t],
                        "dbh": panel["z"][i, t],
                        "increment": panel["y"][i, t],
                    }
                )
        return pd.DataFrame(rows)

    def __repr__(self) -> str:
        return "StateSpaceSimulator()"

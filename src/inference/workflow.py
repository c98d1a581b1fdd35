"""
Analysis runs: one independently owned context per fitted scenario.

Each scenario (full data, thinned data, truncated data, ...) gets its own
AnalysisRun with its own compiled handle. Handles are never reused across
scenarios, so chain state cannot leak from one fit into another.
"""

import logging
from typing import Optional

from assembly.assembler import DataBundle
from inference.sampler import (
    DriverConfig,
    ExplorationReport,
    ModelHandle,
    PosteriorSample,
    SamplingDriver,
)
from statespace.spec import ModelSpec

_log = logging.getLogger("statespace.inference")


class AnalysisRun:
    """
    Everything owned by one fit.

    Attributes
    ----------
    name : str
        Scenario label, e.g. "weekly" or "monthly".
    spec : ModelSpec
        Model graph.
    bundle : DataBundle
        Data the model was fitted to.
    handle : ModelHandle or None
        Compiled model with chain state (None until compiled).
    exploration : ExplorationReport or None
        Diagnostics of the exploratory phase.
    posterior : PosteriorSample or None
        Production draws.
    """

    def __init__(self, name: str, spec: ModelSpec, bundle: DataBundle) -> None:
        self.name = name
        self.spec = spec
        self.bundle = bundle
        self.handle: Optional[ModelHandle] = None
        self.exploration: Optional[ExplorationReport] = None
        self.posterior: Optional[PosteriorSample] = None

    @property
    def converged(self) -> Optional[bool]:
        if self.exploration is None:
            return None
        return self.exploration.converged

    def extend(self, driver: SamplingDriver, iterations: int) -> PosteriorSample:
        """
        Continue the production chains by ``iterations`` draws.

        The new draws replace ``posterior``; the Markov chains continue from
        where the previous request stopped.
        """
        if self.handle is None:
            raise RuntimeError(f"Run '{self.name}' has not been compiled. Call fit() first.")
        self.posterior = driver.produce(self.handle, iterations=iterations)
        return self.posterior

    def __repr__(self) -> str:
        return (
            f"AnalysisRun(name={self.name!r}, spec={self.spec!r}, "
            f"exploration={self.exploration!r}, posterior={self.posterior!r})"
        )


def fit(
    spec: ModelSpec,
    bundle: DataBundle,
    config: Optional[DriverConfig] = None,
    name: str = "analysis",
    driver: Optional[SamplingDriver] = None,
) -> AnalysisRun:
    """
    Compile, explore and produce for one scenario.

    Parameters
    ----------
    spec : ModelSpec
        Model graph.
    bundle : DataBundle
        Data for this scenario.
    config : DriverConfig, optional
        Run lengths. Ignored when ``driver`` is given.
    name : str
        Scenario label.
    driver : SamplingDriver, optional
        Driver to use. If None, one is created from ``config``.

    Returns
    -------
    run : AnalysisRun
        Run context with handle, exploration report and production draws.
    """
    driver = driver or SamplingDriver(config)
    run = AnalysisRun(name, spec, bundle)

    _log.info("Fitting scenario '%s'", name)
    run.handle = driver.compile(spec, bundle)
    run.exploration = driver.explore(run.handle)
    run.posterior = driver.produce(run.handle)
    return run

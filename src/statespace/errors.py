"""
Error taxonomy for state-space model fitting.

- ConfigurationError: model graph or data bundle is inconsistent. Raised
  before any sampling cost is incurred.
- DegenerateStatisticError: a plug-in moment estimate is non-finite.
  Handled inside the chain initializer, never reaches the engine.
- ConvergenceWarning: non-fatal diagnostic, the operator decides whether
  to extend the run.
- EngineFailure: the sampling engine rejected the model or data. Carries
  the engine's message unchanged.
"""


class StateSpaceError(Exception):
    """Base class for all errors raised by this project."""


class ConfigurationError(StateSpaceError, ValueError):
    """Model specification or data bundle is internally inconsistent."""


class DegenerateStatisticError(StateSpaceError, ArithmeticError):
    """A moment estimator produced a non-finite value."""


class EngineFailure(StateSpaceError, RuntimeError):
    """The sampling engine failed on the submitted model or data."""


class ConvergenceWarning(UserWarning):
    """Potential scale reduction above threshold for at least one variable."""

# step_engine/src/step_engine/errors.py
"""Error types and standardized raise helpers for step_engine.

This module centralizes:
- explicit error classes with actionable messages, and
- small helpers that build those messages consistently.

Error kinds:
    ConfigurationError: misconfiguration detected at construction or first use
        (shape mismatch, non-positive dt, invalid tolerances). Never retried.
    NumericalInstabilityError: the adaptive controller ran out of rejections
        or dt underflowed.
    PropagatorError: a semi-implicit propagator could not be constructed
        (singular resolvent, non-finite exponential).
    ArithmeticAnomalyError: NaN/Inf detected in a committed state.

Step rejections inside the adaptive controller are recovered locally and are
not represented here.
"""

from __future__ import annotations

from typing import Final

_SHAPE_MISMATCH_MSG: Final[str] = (
    "{name} has shape {actual}; expected {expected} (fixed by the prototype state)."
)
_DT_INVALID_MSG: Final[str] = "{name} must be a finite float > 0; got {value!r}."
_TOO_MANY_REJECTS_MSG: Final[str] = (
    "Adaptive step at t={t!r} was rejected {rejections} consecutive times "
    "(max_rejections={limit}); last dt={dt!r}, error={error!r}, "
    "tolerance={tolerance!r}. The problem is likely stiff or unstable."
)
_DT_UNDERFLOW_MSG: Final[str] = (
    "Adaptive dt fell below dt_min={dt_min!r} at t={t!r}; proposed dt={dt!r}."
)
_NON_FINITE_STATE_MSG: Final[str] = (
    "Committed state at t={t!r} contains {count} non-finite value(s)."
)


class StepEngineError(Exception):
    """Base exception for step_engine errors."""


class ConfigurationError(StepEngineError, ValueError):
    """Raised when a scheme, model or producer is misconfigured."""


class NumericalInstabilityError(StepEngineError, RuntimeError):
    """Raised when integration cannot proceed for numerical reasons."""


class PropagatorError(NumericalInstabilityError):
    """Raised when a linear propagator cannot be constructed."""


class ArithmeticAnomalyError(StepEngineError, FloatingPointError):
    """Raised when a committed state contains NaN or Inf."""


def raise_shape_mismatch(
    *,
    name: str,
    actual: tuple[int, ...],
    expected: tuple[int, ...],
) -> None:
    """Raise a standardized ConfigurationError for a state shape mismatch.

    Args:
        name: Name of the offending array.
        actual: Observed shape.
        expected: Shape fixed at construction.

    Raises:
        ConfigurationError: Always.
    """
    raise ConfigurationError(
        _SHAPE_MISMATCH_MSG.format(name=name, actual=actual, expected=expected)
    )


def raise_invalid_dt(*, name: str, value: object) -> None:
    """Raise a standardized ConfigurationError for an invalid step size.

    Args:
        name: Name of the parameter.
        value: Offending value.

    Raises:
        ConfigurationError: Always.
    """
    raise ConfigurationError(_DT_INVALID_MSG.format(name=name, value=value))


def raise_too_many_rejections(
    *,
    t: float,
    rejections: int,
    limit: int,
    dt: float,
    error: float,
    tolerance: float,
) -> None:
    """Raise a standardized NumericalInstabilityError for the rejection cap.

    Args:
        t: Time at which the step was attempted.
        rejections: Number of consecutive rejections observed.
        limit: Configured max_rejections.
        dt: Last attempted dt.
        error: Last error estimate.
        tolerance: Last tolerance.

    Raises:
        NumericalInstabilityError: Always.
    """
    raise NumericalInstabilityError(
        _TOO_MANY_REJECTS_MSG.format(
            t=t,
            rejections=rejections,
            limit=limit,
            dt=dt,
            error=error,
            tolerance=tolerance,
        )
    )


def raise_dt_underflow(*, t: float, dt: float, dt_min: float) -> None:
    """Raise a standardized NumericalInstabilityError for dt underflow.

    Args:
        t: Time at which the step was attempted.
        dt: Proposed dt.
        dt_min: Configured lower bound.

    Raises:
        NumericalInstabilityError: Always.
    """
    raise NumericalInstabilityError(
        _DT_UNDERFLOW_MSG.format(t=t, dt=dt, dt_min=dt_min)
    )


def raise_non_finite_state(*, t: float, count: int) -> None:
    """Raise a standardized ArithmeticAnomalyError.

    Args:
        t: Time of the committed state.
        count: Number of non-finite entries.

    Raises:
        ArithmeticAnomalyError: Always.
    """
    raise ArithmeticAnomalyError(_NON_FINITE_STATE_MSG.format(t=t, count=count))

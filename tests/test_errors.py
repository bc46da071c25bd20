"""Unit tests for step_engine.errors."""

from __future__ import annotations

import pytest

from step_engine import errors


def test_error_hierarchy_builtin_mixins() -> None:
    """Error kinds can be caught through their builtin bases."""
    assert issubclass(errors.ConfigurationError, ValueError)
    assert issubclass(errors.NumericalInstabilityError, RuntimeError)
    assert issubclass(errors.PropagatorError, errors.NumericalInstabilityError)
    assert issubclass(errors.ArithmeticAnomalyError, FloatingPointError)
    for exc in (
        errors.ConfigurationError,
        errors.NumericalInstabilityError,
        errors.PropagatorError,
        errors.ArithmeticAnomalyError,
    ):
        assert issubclass(exc, errors.StepEngineError)


def test_raise_shape_mismatch_message() -> None:
    """raise_shape_mismatch reports both shapes."""
    with pytest.raises(errors.ConfigurationError, match=r"state has shape \(2,\); expected \(3,\)"):
        errors.raise_shape_mismatch(name="state", actual=(2,), expected=(3,))


def test_raise_invalid_dt_message() -> None:
    """raise_invalid_dt reports the offending value."""
    with pytest.raises(errors.ConfigurationError, match=r"dt must be a finite float > 0; got -1\.0"):
        errors.raise_invalid_dt(name="dt", value=-1.0)


def test_raise_too_many_rejections_message() -> None:
    """raise_too_many_rejections reports the limit and last attempt."""
    with pytest.raises(errors.NumericalInstabilityError, match="max_rejections=3"):
        errors.raise_too_many_rejections(
            t=1.0, rejections=3, limit=3, dt=1e-3, error=1.0, tolerance=1e-6
        )


def test_raise_dt_underflow_message() -> None:
    """raise_dt_underflow reports dt_min."""
    with pytest.raises(errors.NumericalInstabilityError, match="dt_min=0.001"):
        errors.raise_dt_underflow(t=0.0, dt=1e-4, dt_min=1e-3)


def test_raise_non_finite_state_message() -> None:
    """raise_non_finite_state reports the count of bad entries."""
    with pytest.raises(errors.ArithmeticAnomalyError, match="2 non-finite"):
        errors.raise_non_finite_state(t=0.5, count=2)

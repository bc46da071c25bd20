"""step_engine time-integration package."""

from __future__ import annotations

from .adaptive import (
    TABLEAUS,
    AdaptiveConfig,
    ButcherTableau,
    EmbeddedRK,
    StepAttempt,
)
from .errors import (
    ArithmeticAnomalyError,
    ConfigurationError,
    NumericalInstabilityError,
    PropagatorError,
    StepEngineError,
)
from .explicit import RK4, Euler, Heun
from .lyapunov import Jacobian, clv, exponents
from .matrix_ops import Operator, build_laplacian_tridiag, build_propagator
from .model import FunctionModel, Model, SemiImplicitModel, SplitModel
from .scheme import FixedStepScheme, Scheme, SchemeStats, StepResult
from .semi_implicit import SemiImplicitEuler, SemiImplicitRK4
from .state import Checkpoint, StateSpec
from .time_series import NStep, SamplingConfig, TimeSeries, time_series

__all__ = [
    "RK4",
    "TABLEAUS",
    "AdaptiveConfig",
    "ArithmeticAnomalyError",
    "ButcherTableau",
    "Checkpoint",
    "ConfigurationError",
    "EmbeddedRK",
    "Euler",
    "FixedStepScheme",
    "FunctionModel",
    "Heun",
    "Jacobian",
    "Model",
    "NStep",
    "NumericalInstabilityError",
    "Operator",
    "PropagatorError",
    "SamplingConfig",
    "Scheme",
    "SchemeStats",
    "SemiImplicitEuler",
    "SemiImplicitModel",
    "SemiImplicitRK4",
    "SplitModel",
    "StateSpec",
    "StepAttempt",
    "StepEngineError",
    "StepResult",
    "TimeSeries",
    "build_laplacian_tridiag",
    "build_propagator",
    "clv",
    "exponents",
    "time_series",
]

__version__ = "0.1.0"

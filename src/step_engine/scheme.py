# step_engine/src/step_engine/scheme.py
"""Stepping-scheme abstraction shared by explicit, adaptive and semi-implicit schemes.

Every scheme:

- is constructed from a model and a prototype state, which fixes the state
  shape/dtype and sizes the scheme's private scratch buffers once;
- exposes ``advance``-style kernels that write into a caller-provided ``out``
  buffer (or a freshly allocated array) and never mutate the input state;
- exposes ``step(state, t, dt_limit=..., out=...)``, the uniform entry point
  used by the time series producer, which commits exactly one step and returns
  a StepResult.

Scratch buffers are owned by the scheme instance for its whole lifetime and
are overwritten on every call; nothing carries over between steps except the
adaptive controller's step size.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, ClassVar

import numpy as np

from .errors import raise_invalid_dt, raise_shape_mismatch
from .state import StateArray, StateSpec

if TYPE_CHECKING:
    import numpy.typing as npt

    from .model import Model


_FIELD_NAME = "field(x, t)"


def check_step_size(value: object, *, name: str = "dt") -> float:
    """
    Validate a step size.

    Args:
        value: Candidate step size.
        name: Parameter name for the error message.

    Raises:
        ConfigurationError: If value is not a finite float > 0.

    Returns:
        value as float.
    """
    try:
        value_f = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        raise_invalid_dt(name=name, value=value)
    if not (np.isfinite(value_f) and value_f > 0.0):
        raise_invalid_dt(name=name, value=value)
    return value_f


# =============================================================================
# Result / statistics containers
# =============================================================================


@dataclass(slots=True)
class SchemeStats:
    """Counters accumulated by a scheme over its lifetime.

    Attributes:
        n_steps: Committed (accepted) steps.
        n_rejected: Rejected adaptive attempts.
        n_field_evals: Vector field (or nonlinear term) evaluations.
        n_propagator_builds: Linear propagators constructed.
    """

    n_steps: int = 0
    n_rejected: int = 0
    n_field_evals: int = 0
    n_propagator_builds: int = 0


@dataclass(frozen=True, slots=True)
class StepResult:
    """Outcome of one committed step.

    Attributes:
        t: Time after the step.
        dt: Step size actually used.
        state: New state (the ``out`` buffer when one was provided).
        error: Error estimate of the accepted attempt (adaptive schemes only).
        tolerance: Tolerance the error was compared against (adaptive only).
        rejections: Rejected attempts before this step was accepted.
    """

    t: float
    dt: float
    state: StateArray = field(repr=False)
    error: float | None = None
    tolerance: float | None = None
    rejections: int = 0


# =============================================================================
# Scheme base class
# =============================================================================


class Scheme(ABC):
    """Base class for one-step time integration schemes."""

    name: ClassVar[str]
    order: ClassVar[int]
    adaptive: ClassVar[bool] = False

    def __init__(
        self,
        model: Model,
        prototype: npt.ArrayLike,
        *,
        dt: float,
    ) -> None:
        """
        Initialize the shared scheme state.

        Args:
            model: Model providing the vector field.
            prototype: Prototype state fixing shape/dtype of the run.
            dt: Step size (fixed schemes) or initial step size (adaptive).
        """
        self.model = model
        self.spec = StateSpec.from_prototype(prototype)
        self._dt = check_step_size(dt)
        self.stats = SchemeStats()

    @property
    def dt(self) -> float:
        """Configured (fixed) or current (adaptive) step size."""
        return self._dt

    # ------------------------------------------------------------------
    # Buffer / validation helpers
    # ------------------------------------------------------------------

    def _buffer(self) -> StateArray:
        """Allocate one scratch buffer matching the prototype."""
        return self.spec.zeros()

    def _check_state(self, state: npt.ArrayLike, *, name: str = "state") -> StateArray:
        """Validate state against the prototype spec."""
        return self.spec.validate(state, name=name)

    def _resolve_out(self, out: StateArray | None) -> StateArray:
        """Return out after validation, or a new zeroed state array."""
        if out is None:
            return self.spec.zeros()
        return self.spec.validate_out(out)

    def _resolve_dt(self, dt: float | None) -> float:
        if dt is None:
            return self._dt
        return check_step_size(dt)

    def _limited_dt(self, dt_limit: float | None) -> float:
        if dt_limit is None:
            return self._dt
        return min(self._dt, check_step_size(dt_limit, name="dt_limit"))

    def _field_into(self, out: StateArray, x: StateArray, t: float) -> None:
        """Evaluate the model vector field into out with shape enforcement.

        Args:
            out: Output buffer to write into.
            x: State.
            t: Time.

        Raises:
            ConfigurationError: If the field returns an unexpected shape.
        """
        f = np.asarray(self.model.field(x, float(t)))
        if f.shape != self.spec.shape:
            raise_shape_mismatch(name=_FIELD_NAME, actual=f.shape, expected=self.spec.shape)
        np.copyto(out, f, casting="same_kind")
        self.stats.n_field_evals += 1

    # ------------------------------------------------------------------
    # Stepping API
    # ------------------------------------------------------------------

    @abstractmethod
    def step(
        self,
        state: npt.ArrayLike,
        t: float,
        *,
        dt_limit: float | None = None,
        out: StateArray | None = None,
    ) -> StepResult:
        """Commit exactly one step starting from (state, t).

        Args:
            state: Current state (not mutated unless passed as out).
            t: Current time.
            dt_limit: Optional upper bound on the step size for this step.
            out: Optional buffer receiving the new state.

        Returns:
            StepResult describing the committed step.
        """


class FixedStepScheme(Scheme):
    """Base class for schemes with an immutable step size."""

    @abstractmethod
    def advance(
        self,
        state: npt.ArrayLike,
        t: float,
        dt: float | None = None,
        *,
        out: StateArray | None = None,
    ) -> StateArray:
        """Advance state from t to t + dt.

        Args:
            state: Current state (not mutated unless passed as out).
            t: Current time.
            dt: Step size; None uses the configured step.
            out: Optional buffer receiving the new state.

        Returns:
            New state.
        """

    def step(
        self,
        state: npt.ArrayLike,
        t: float,
        *,
        dt_limit: float | None = None,
        out: StateArray | None = None,
    ) -> StepResult:
        """Advance one fixed step, shortened to dt_limit when it is smaller."""
        h = self._limited_dt(dt_limit)
        y = self.advance(state, t, h, out=out)
        self.stats.n_steps += 1
        return StepResult(t=float(t) + h, dt=h, state=y)

    def iterate(self, state: npt.ArrayLike, t: float = 0.0) -> StateArray:
        """Apply the one-step map with the configured dt; returns a new array."""
        return self.advance(state, t)

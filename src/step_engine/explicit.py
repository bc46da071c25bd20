# step_engine/src/step_engine/explicit.py
"""Fixed-step explicit schemes: Euler, Heun and classical RK4.

Each scheme only evaluates the model vector field. Stage buffers are
preallocated at construction and overwritten on every call; accumulation
happens in the state's own dtype with in-place NumPy ops.

    Euler: x' = x + h f(x, t)
    Heun:  x' = x + h/2 (f(x, t) + f(x + h f(x, t), t + h))
    RK4:   x' = x + h/6 (k1 + 2 k2 + 2 k3 + k4), stages at t, t+h/2, t+h/2, t+h
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import numpy as np

from .scheme import FixedStepScheme

if TYPE_CHECKING:
    import numpy.typing as npt

    from .model import Model
    from .state import StateArray


class Euler(FixedStepScheme):
    """Explicit Euler (order 1), one field evaluation per step."""

    name = "euler"
    order = 1

    def __init__(self, model: Model, prototype: npt.ArrayLike, *, dt: float) -> None:
        """
        Initialize Euler.

        Args:
            model: Model providing field(x, t).
            prototype: Prototype state sizing the scratch buffers.
            dt: Fixed step size.
        """
        super().__init__(model, prototype, dt=dt)
        self._k1 = self._buffer()

    def advance(
        self,
        state: npt.ArrayLike,
        t: float,
        dt: float | None = None,
        *,
        out: StateArray | None = None,
    ) -> StateArray:
        """Return state + dt * f(state, t)."""
        x = self._check_state(state)
        h = self._resolve_dt(dt)
        y = self._resolve_out(out)

        self._field_into(self._k1, x, t)
        self._k1 *= h
        np.add(x, self._k1, out=y, casting="same_kind")
        return y


class Heun(FixedStepScheme):
    """Explicit Heun / trapezoidal RK2 (order 2)."""

    name = "heun"
    order = 2

    def __init__(self, model: Model, prototype: npt.ArrayLike, *, dt: float) -> None:
        """
        Initialize Heun.

        Args:
            model: Model providing field(x, t).
            prototype: Prototype state sizing the scratch buffers.
            dt: Fixed step size.
        """
        super().__init__(model, prototype, dt=dt)
        self._k1 = self._buffer()
        self._k2 = self._buffer()
        self._stage = self._buffer()

    def advance(
        self,
        state: npt.ArrayLike,
        t: float,
        dt: float | None = None,
        *,
        out: StateArray | None = None,
    ) -> StateArray:
        """Return the Heun update of state over one step."""
        x = self._check_state(state)
        h = self._resolve_dt(dt)
        y = self._resolve_out(out)

        self._field_into(self._k1, x, t)
        np.multiply(self._k1, h, out=self._stage)
        self._stage += x
        self._field_into(self._k2, self._stage, t + h)

        np.add(self._k1, self._k2, out=self._stage)
        self._stage *= 0.5 * h
        np.add(x, self._stage, out=y, casting="same_kind")
        return y


class RK4(FixedStepScheme):
    """Classical four-stage Runge-Kutta (order 4)."""

    name = "rk4"
    order = 4

    def __init__(self, model: Model, prototype: npt.ArrayLike, *, dt: float) -> None:
        """
        Initialize RK4.

        Args:
            model: Model providing field(x, t).
            prototype: Prototype state sizing the scratch buffers.
            dt: Fixed step size.
        """
        super().__init__(model, prototype, dt=dt)
        self._k1 = self._buffer()
        self._k2 = self._buffer()
        self._k3 = self._buffer()
        self._k4 = self._buffer()
        self._stage = self._buffer()

    def advance(
        self,
        state: npt.ArrayLike,
        t: float,
        dt: float | None = None,
        *,
        out: StateArray | None = None,
    ) -> StateArray:
        """Return the classical RK4 update of state over one step."""
        x = self._check_state(state)
        h = self._resolve_dt(dt)
        y = self._resolve_out(out)
        half = 0.5 * h

        self._field_into(self._k1, x, t)

        np.multiply(self._k1, half, out=self._stage)
        self._stage += x
        self._field_into(self._k2, self._stage, t + half)

        np.multiply(self._k2, half, out=self._stage)
        self._stage += x
        self._field_into(self._k3, self._stage, t + half)

        np.multiply(self._k3, h, out=self._stage)
        self._stage += x
        self._field_into(self._k4, self._stage, t + h)

        # stage <- h/6 (k1 + 2 k2 + 2 k3 + k4)
        np.add(self._k2, self._k3, out=self._stage)
        self._stage *= 2.0
        self._stage += self._k1
        self._stage += self._k4
        self._stage *= h / 6.0
        np.add(x, self._stage, out=y, casting="same_kind")
        return y

# step_engine/src/step_engine/semi_implicit.py
"""
Semi-implicit schemes for split systems dx/dt = L x + N(x, t).

The linear part is advanced through a precomputed one-step propagator (see
matrix_ops.build_propagator) and the nonlinear part explicitly:

    SemiImplicitEuler: x' = E(h) x + W(h) N(x, t)
    SemiImplicitRK4:   integrating-factor (Lawson) RK4

        k1 = N(x, t)
        k2 = N(E(h/2) (x + h/2 k1), t + h/2)
        k3 = N(E(h/2) x + h/2 k2, t + h/2)
        k4 = N(E(h) x + h E(h/2) k3, t + h)
        x' = E(h) x + h/6 (E(h) k1 + 2 E(h/2) (k2 + k3) + k4)

With N = 0 both schemes reduce to x' = E(h) x.

Propagators are built at construction for the configured dt and cached per
step size in a small LRU cache, so shortened steps never push out the
configured ones. The cache is dropped when the model's ``linear_revision`` changes
or when invalidate_propagators() is called; L is then re-read from the model
on the next step.
"""

from __future__ import annotations

import logging
from collections import OrderedDict
from typing import TYPE_CHECKING

import numpy as np

from .errors import raise_shape_mismatch
from .matrix_ops import (
    OperatorForm,
    Propagator,
    build_propagator,
    classify_operator,
    normalize_propagator_kind,
)
from .model import linear_revision, require_semi_implicit
from .scheme import FixedStepScheme

if TYPE_CHECKING:
    import numpy.typing as npt

    from .model import SemiImplicitModel
    from .state import StateArray

logger = logging.getLogger(__name__)

_NONLINEAR_NAME = "nonlinear(x, t)"

# Distinct step sizes kept per scheme, least recently used evicted first; a run
# normally needs dt (and dt/2) plus the shortened steps of one output interval.
_PROPAGATOR_CACHE_SIZE = 4


class SemiImplicitScheme(FixedStepScheme):
    """Shared propagator management for semi-implicit schemes."""

    def __init__(
        self,
        model: SemiImplicitModel,
        prototype: npt.ArrayLike,
        *,
        dt: float,
        propagator: str = "exponential",
        operator_axis: int | None = None,
        operator_form: OperatorForm | None = None,
    ) -> None:
        """
        Initialize the semi-implicit scheme and build the dt propagator.

        Args:
            model: Model exposing linear() and nonlinear(x, t).
            prototype: Prototype state sizing the scratch buffers.
            dt: Fixed step size.
            propagator: "exponential" or "resolvent".
            operator_axis: State axis along which matrix operators act;
                defaults to the model's ``operator_axis`` (or 0).
            operator_form: Operator form; defaults to the model's
                ``operator_form`` (or "auto").

        Raises:
            ConfigurationError: If the model or operator is incompatible.
            PropagatorError: If the dt propagator cannot be constructed.
        """
        super().__init__(require_semi_implicit(model), prototype, dt=dt)
        self.propagator_kind = normalize_propagator_kind(propagator)
        self.operator_axis = int(
            getattr(model, "operator_axis", 0) if operator_axis is None else operator_axis
        )
        self.operator_form: OperatorForm = (
            getattr(model, "operator_form", "auto")
            if operator_form is None
            else operator_form
        )
        self.spec.axis_index(self.operator_axis)

        self._propagators: OrderedDict[float, Propagator] = OrderedDict()
        self._revision = linear_revision(model)

        self._n_buf = self._buffer()
        self._tmp = self._buffer()

        self.propagator_for(self._dt)

    # ------------------------------------------------------------------
    # Propagator cache
    # ------------------------------------------------------------------

    def invalidate_propagators(self) -> None:
        """Drop every cached propagator; L is re-read on the next step."""
        self._propagators.clear()

    def propagator_for(self, h: float) -> Propagator:
        """
        Return the propagator for step size h, building it if needed.

        Args:
            h: Step size.

        Raises:
            PropagatorError: If the propagator cannot be constructed.

        Returns:
            Cached or freshly built Propagator.
        """
        revision = linear_revision(self.model)
        if revision != self._revision:
            self._revision = revision
            self.invalidate_propagators()

        h = float(h)
        cached = self._propagators.get(h)
        if cached is not None:
            self._propagators.move_to_end(h)
            return cached

        op = self.model.linear()  # type: ignore[attr-defined]
        op_kind = classify_operator(
            op, self.spec, axis=self.operator_axis, form=self.operator_form
        )
        prop = build_propagator(
            op,
            h,
            self.spec,
            kind=self.propagator_kind,
            axis=self.operator_axis,
            form=self.operator_form,
        )
        self.stats.n_propagator_builds += 1
        logger.debug(
            "built %s propagator for %s operator: h=%r revision=%d",
            self.propagator_kind,
            op_kind,
            h,
            revision,
        )

        if len(self._propagators) >= _PROPAGATOR_CACHE_SIZE:
            self._propagators.popitem(last=False)
        self._propagators[h] = prop
        return prop

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _nonlinear_into(self, out: StateArray, x: StateArray, t: float) -> None:
        """Evaluate N(x, t) into out with shape enforcement."""
        n = np.asarray(self.model.nonlinear(x, float(t)))  # type: ignore[attr-defined]
        if n.shape != self.spec.shape:
            raise_shape_mismatch(
                name=_NONLINEAR_NAME, actual=n.shape, expected=self.spec.shape
            )
        np.copyto(out, n, casting="same_kind")
        self.stats.n_field_evals += 1


class SemiImplicitEuler(SemiImplicitScheme):
    """First-order semi-implicit Euler: x' = E(h) x + W(h) N(x, t)."""

    name = "semi-implicit-euler"
    order = 1

    def __init__(
        self,
        model: SemiImplicitModel,
        prototype: npt.ArrayLike,
        *,
        dt: float,
        propagator: str = "exponential",
        operator_axis: int | None = None,
        operator_form: OperatorForm | None = None,
    ) -> None:
        super().__init__(
            model,
            prototype,
            dt=dt,
            propagator=propagator,
            operator_axis=operator_axis,
            operator_form=operator_form,
        )
        self._ex = self._buffer()

    def advance(
        self,
        state: npt.ArrayLike,
        t: float,
        dt: float | None = None,
        *,
        out: StateArray | None = None,
    ) -> StateArray:
        """Return the semi-implicit Euler update of state over one step."""
        x = self._check_state(state)
        h = self._resolve_dt(dt)
        y = self._resolve_out(out)
        prop = self.propagator_for(h)

        self._nonlinear_into(self._n_buf, x, t)
        prop.propagate(x, self._ex)
        prop.weighted(self._n_buf, self._tmp)
        np.add(self._ex, self._tmp, out=y, casting="same_kind")
        return y


class SemiImplicitRK4(SemiImplicitScheme):
    """Integrating-factor RK4 (fourth order for the exponential propagator).

    With the resolvent propagator E(h/2)^2 differs from E(h) and the scheme
    is only first order in the linear part, though it stays stable for stiff
    dissipative L.
    """

    name = "semi-implicit-rk4"
    order = 4

    def __init__(
        self,
        model: SemiImplicitModel,
        prototype: npt.ArrayLike,
        *,
        dt: float,
        propagator: str = "exponential",
        operator_axis: int | None = None,
        operator_form: OperatorForm | None = None,
    ) -> None:
        super().__init__(
            model,
            prototype,
            dt=dt,
            propagator=propagator,
            operator_axis=operator_axis,
            operator_form=operator_form,
        )
        self.propagator_for(0.5 * self._dt)

        self._k1 = self._n_buf
        self._k2 = self._buffer()
        self._k3 = self._buffer()
        self._k4 = self._buffer()
        self._stage = self._buffer()
        self._ex = self._buffer()
        self._ex_half = self._buffer()
        self._acc = self._buffer()

    def advance(
        self,
        state: npt.ArrayLike,
        t: float,
        dt: float | None = None,
        *,
        out: StateArray | None = None,
    ) -> StateArray:
        """Return the Lawson RK4 update of state over one step."""
        x = self._check_state(state)
        h = self._resolve_dt(dt)
        y = self._resolve_out(out)
        half = 0.5 * h
        prop = self.propagator_for(h)
        prop_half = self.propagator_for(half)

        prop.propagate(x, self._ex)
        prop_half.propagate(x, self._ex_half)

        # k1 = N(x, t)
        self._nonlinear_into(self._k1, x, t)

        # k2 = N(E(h/2) (x + h/2 k1), t + h/2)
        np.multiply(self._k1, half, out=self._tmp)
        self._tmp += x
        prop_half.propagate(self._tmp, self._stage)
        self._nonlinear_into(self._k2, self._stage, t + half)

        # k3 = N(E(h/2) x + h/2 k2, t + h/2)
        np.multiply(self._k2, half, out=self._stage)
        self._stage += self._ex_half
        self._nonlinear_into(self._k3, self._stage, t + half)

        # k4 = N(E(h) x + h E(h/2) k3, t + h)
        prop_half.propagate(self._k3, self._stage)
        self._stage *= h
        self._stage += self._ex
        self._nonlinear_into(self._k4, self._stage, t + h)

        # acc = h/6 (E(h) k1 + 2 E(h/2) (k2 + k3) + k4)
        prop.propagate(self._k1, self._acc)
        np.add(self._k2, self._k3, out=self._tmp)
        prop_half.propagate(self._tmp, self._stage)
        self._stage *= 2.0
        self._acc += self._stage
        self._acc += self._k4
        self._acc *= h / 6.0

        np.add(self._ex, self._acc, out=y, casting="same_kind")
        return y

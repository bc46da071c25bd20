# step_engine/src/step_engine/model.py
"""Model contract: vector fields and linear/nonlinear decompositions.

A model computes the vector field ``f(x, t)`` of ``dx/dt = f(x, t)``. Models
used by semi-implicit schemes also expose the decomposition

    f(x, t) = L x + N(x, t)

with a time-independent linear operator ``L`` (see matrix_ops for accepted
operator forms) and a nonlinear remainder ``N``.

A semi-implicit model may expose an integer ``linear_revision`` attribute.
Schemes cache propagators built from ``L`` and rebuild them whenever the
revision changes, so a model whose ``L`` can vary must bump it on every change.

Plain callables are adapted with FunctionModel (field only) and SplitModel
(L plus N).
"""

from __future__ import annotations

from collections.abc import Callable
from typing import TYPE_CHECKING, Protocol, runtime_checkable

import numpy as np

from .errors import ConfigurationError
from .matrix_ops import Operator, OperatorForm, apply_operator
from .state import StateArray, StateSpec

if TYPE_CHECKING:
    import numpy.typing as npt


_FIELD_CALLABLE_ERROR = "field must be callable as field(x, t) -> dx"
_NONLINEAR_CALLABLE_ERROR = "nonlinear must be callable as nonlinear(x, t) -> dx"
_NOT_SEMI_IMPLICIT_ERROR = (
    "Model {model!r} does not implement the semi-implicit contract "
    "(linear() -> L and nonlinear(x, t) -> dx)"
)

FieldFunction = Callable[[StateArray, float], "npt.ArrayLike"]


# =============================================================================
# Protocols
# =============================================================================


@runtime_checkable
class Model(Protocol):
    """Vector field provider consumed by every scheme."""

    def field(self, x: StateArray, t: float) -> npt.ArrayLike:
        """Return dx/dt at (x, t) with the shape of x."""
        ...


@runtime_checkable
class SemiImplicitModel(Model, Protocol):
    """Model exposing f = L x + N(x, t) for semi-implicit schemes."""

    def linear(self) -> Operator:
        """Return the time-independent linear operator L."""
        ...

    def nonlinear(self, x: StateArray, t: float) -> npt.ArrayLike:
        """Return the nonlinear remainder N(x, t) with the shape of x."""
        ...


def linear_revision(model: object) -> int:
    """Return the model's linear operator revision (0 when not tracked)."""
    return int(getattr(model, "linear_revision", 0))


def require_semi_implicit(model: object) -> SemiImplicitModel:
    """
    Check that model implements the semi-implicit contract.

    Args:
        model: Candidate model.

    Raises:
        ConfigurationError: If linear()/nonlinear() are missing.

    Returns:
        The model, typed as SemiImplicitModel.
    """
    if not isinstance(model, SemiImplicitModel):
        raise ConfigurationError(_NOT_SEMI_IMPLICIT_ERROR.format(model=model))
    return model


# =============================================================================
# Callable adapters
# =============================================================================


class FunctionModel:
    """Adapt a plain callable ``field(x, t)`` to the Model protocol."""

    def __init__(self, field: FieldFunction) -> None:
        """
        Initialize FunctionModel.

        Args:
            field: Vector field callable field(x, t) -> dx.

        Raises:
            ConfigurationError: If field is not callable.
        """
        if not callable(field):
            raise ConfigurationError(_FIELD_CALLABLE_ERROR)
        self._field = field

    def field(self, x: StateArray, t: float) -> npt.ArrayLike:
        """Evaluate the wrapped vector field."""
        return self._field(x, t)


class SplitModel:
    """Model assembled from a linear operator L and a nonlinear callable N.

    ``field`` evaluates L x + N(x, t) so the same model also drives explicit
    and adaptive schemes. ``set_linear`` replaces L and bumps
    ``linear_revision``, which invalidates propagators cached by
    semi-implicit schemes.
    """

    def __init__(
        self,
        linear: Operator,
        nonlinear: FieldFunction | None = None,
        *,
        operator_axis: int = 0,
        operator_form: OperatorForm = "auto",
    ) -> None:
        """
        Initialize SplitModel.

        Args:
            linear: Linear operator L (diagonal, dense or sparse).
            nonlinear: Nonlinear remainder N(x, t); None means N = 0.
            operator_axis: State axis along which matrix operators act.
            operator_form: Operator form, see matrix_ops.classify_operator.

        Raises:
            ConfigurationError: If nonlinear is given but not callable.
        """
        if nonlinear is not None and not callable(nonlinear):
            raise ConfigurationError(_NONLINEAR_CALLABLE_ERROR)
        self._linear = linear
        self._nonlinear = nonlinear
        self.operator_axis = int(operator_axis)
        self.operator_form: OperatorForm = operator_form
        self.linear_revision = 0

    def linear(self) -> Operator:
        """Return the current linear operator L."""
        return self._linear

    def set_linear(self, linear: Operator) -> None:
        """Replace L and invalidate propagators derived from the previous one."""
        self._linear = linear
        self.linear_revision += 1

    def nonlinear(self, x: StateArray, t: float) -> npt.ArrayLike:
        """Evaluate N(x, t); zeros when no nonlinear term was given."""
        if self._nonlinear is None:
            return np.zeros_like(x)
        return self._nonlinear(x, t)

    def field(self, x: StateArray, t: float) -> npt.ArrayLike:
        """Evaluate f(x, t) = L x + N(x, t)."""
        x_arr = np.asarray(x)
        spec = StateSpec.from_prototype(x_arr)
        out = apply_operator(
            self._linear,
            x_arr,
            spec,
            axis=self.operator_axis,
            form=self.operator_form,
        )
        out += np.asarray(self.nonlinear(x_arr, t))
        return out

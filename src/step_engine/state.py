# step_engine/src/step_engine/state.py
"""State contract shared by every scheme.

A state is a NumPy array of fixed shape and dtype. Schemes never own the
caller's state; they size their private scratch buffers once from a prototype
described by :class:`StateSpec` and validate every incoming state against it.

This module provides:

- StateSpec: shape/dtype contract derived from a prototype state.
- Norm functions used for error estimates ("rms", "l2", "max").
- Axis reshaping helpers for operators acting along one axis of a tensor.
- Checkpoint: an immutable (t, state, dt) snapshot for restarting a run.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Literal, TypeAlias, cast

import numpy as np
import numpy.typing as npt

from .errors import ConfigurationError, raise_shape_mismatch

# Error / message constants -------------------------------------------------

_PROTOTYPE_EMPTY_ERROR = "prototype state must contain at least one element"
_PROTOTYPE_DTYPE_ERROR = "prototype state must have a floating or complex dtype; got {dtype}"
_AXIS_INDEX_OOB_ERROR = "Axis index out of bounds: {axis} for state rank {ndim}"
_UNKNOWN_NORM_ERROR = "Unknown norm: {norm}; expected one of {allowed}"
_STATE_DTYPE_ERROR = "{name} has dtype {actual}, which cannot be cast to the state dtype {expected}"
_OUT_DTYPE_ERROR = "out has dtype {actual}, which cannot hold the state dtype {expected}"


# Typing helpers ------------------------------------------------------------

StateArray: TypeAlias = npt.NDArray[np.inexact[Any]]
NormName = Literal["rms", "l2", "max"]
NormFunction = Callable[[StateArray], float]


# Norms ---------------------------------------------------------------------


def rms_norm(x: StateArray) -> float:
    """Root-mean-square norm, independent of the number of elements."""
    arr = np.asarray(x)
    return float(np.sqrt(np.mean(np.abs(arr) ** 2)))


def l2_norm(x: StateArray) -> float:
    """Euclidean norm of the flattened state."""
    return float(np.linalg.norm(np.asarray(x).ravel()))


def max_norm(x: StateArray) -> float:
    """Maximum absolute entry."""
    return float(np.max(np.abs(np.asarray(x))))


_NORMS: dict[str, NormFunction] = {
    "rms": rms_norm,
    "l2": l2_norm,
    "max": max_norm,
}


def resolve_norm(norm: str) -> NormFunction:
    """
    Resolve a norm name into a norm function.

    Args:
        norm: One of "rms", "l2", "max" (case-insensitive).

    Raises:
        ConfigurationError: If the name is unknown.

    Returns:
        Callable mapping a state to a non-negative float.
    """
    key = str(norm).strip().lower()
    try:
        return _NORMS[key]
    except KeyError as exc:
        raise ConfigurationError(
            _UNKNOWN_NORM_ERROR.format(norm=norm, allowed=sorted(_NORMS))
        ) from exc


def count_non_finite(x: StateArray) -> int:
    """Return the number of NaN/Inf entries in x."""
    return int(np.size(x) - np.count_nonzero(np.isfinite(x)))


# StateSpec -----------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class StateSpec:
    """Shape and dtype contract fixed by a prototype state.

    Attributes:
        shape: State shape for the lifetime of a run.
        dtype: State dtype (floating or complex).
    """

    shape: tuple[int, ...]
    dtype: np.dtype[Any]

    @classmethod
    def from_prototype(cls, prototype: npt.ArrayLike) -> StateSpec:
        """
        Build a StateSpec from a prototype state.

        Integer prototypes are promoted to float64 so stage arithmetic does not
        truncate.

        Args:
            prototype: Array-like prototype state.

        Raises:
            ConfigurationError: If the prototype is empty or has a non-numeric dtype.

        Returns:
            StateSpec describing the prototype.
        """
        arr = np.asarray(prototype)
        if arr.size == 0:
            raise ConfigurationError(_PROTOTYPE_EMPTY_ERROR)

        dtype = arr.dtype
        if np.issubdtype(dtype, np.integer) or np.issubdtype(dtype, np.bool_):
            dtype = np.dtype(np.float64)
        if not np.issubdtype(dtype, np.inexact):
            raise ConfigurationError(_PROTOTYPE_DTYPE_ERROR.format(dtype=dtype))
        return cls(shape=tuple(int(d) for d in arr.shape), dtype=np.dtype(dtype))

    @property
    def ndim(self) -> int:
        """State tensor rank."""
        return len(self.shape)

    @property
    def size(self) -> int:
        """Number of elements in a state."""
        return int(np.prod(self.shape, dtype=np.int64))

    def zeros(self) -> StateArray:
        """Allocate a zero-filled buffer matching the spec."""
        return cast("StateArray", np.zeros(self.shape, dtype=self.dtype))

    def validate(self, arr: npt.ArrayLike, *, name: str = "state") -> StateArray:
        """
        Validate that arr matches the spec shape and dtype kind.

        Args:
            arr: Array to validate.
            name: Name used in the error message.

        Raises:
            ConfigurationError: If arr does not have the spec shape or its
                dtype cannot be cast to the spec dtype (e.g. complex into
                a real state).

        Returns:
            arr as an ndarray (no copy when already an ndarray).
        """
        x = np.asarray(arr)
        if x.shape != self.shape:
            raise_shape_mismatch(name=name, actual=x.shape, expected=self.shape)
        if not np.can_cast(x.dtype, self.dtype, casting="same_kind"):
            raise ConfigurationError(
                _STATE_DTYPE_ERROR.format(name=name, actual=x.dtype, expected=self.dtype)
            )
        return cast("StateArray", x)

    def validate_out(self, out: npt.ArrayLike) -> StateArray:
        """Validate an output buffer: spec shape and able to hold the spec dtype."""
        y = np.asarray(out)
        if y.shape != self.shape:
            raise_shape_mismatch(name="out", actual=y.shape, expected=self.shape)
        if not np.can_cast(self.dtype, y.dtype, casting="same_kind"):
            raise ConfigurationError(
                _OUT_DTYPE_ERROR.format(actual=y.dtype, expected=self.dtype)
            )
        return cast("StateArray", y)

    def coerce(self, arr: npt.ArrayLike, *, name: str = "state") -> StateArray:
        """Validate shape and return a copy cast to the spec dtype."""
        x = self.validate(arr, name=name)
        return cast("StateArray", np.array(x, dtype=self.dtype, copy=True))

    def axis_index(self, axis: int) -> int:
        """
        Resolve a (possibly negative) axis into a non-negative axis index.

        Args:
            axis: Axis index.

        Raises:
            ConfigurationError: If the axis is out of bounds.

        Returns:
            Axis index in [0, ndim).
        """
        ndim = self.ndim
        idx = int(axis)
        if idx < 0:
            idx += ndim
        if not (0 <= idx < ndim):
            raise ConfigurationError(_AXIS_INDEX_OOB_ERROR.format(axis=axis, ndim=ndim))
        return idx

    def reshape_for_axis(self, x: StateArray, axis: int) -> StateArray:
        """Reshape a state-like tensor into 2D for an axis-local operator.

        Args:
            x: State-like tensor of shape ``shape``.
            axis: Axis along which the operator acts.

        Returns:
            2D view/copy of shape (axis_len, batch).

        Contract:
            - batch is the product of all non-axis dimensions
            - unreshape_from_axis(inverse) reconstructs exactly.
        """
        axis_idx = self.axis_index(axis)
        axis_len = int(self.shape[axis_idx])
        moved = np.moveaxis(np.asarray(x), axis_idx, 0)
        return cast("StateArray", moved.reshape(axis_len, -1))

    def unreshape_from_axis(self, x2d: StateArray, axis: int) -> StateArray:
        """
        Inverse of reshape_for_axis.

        Args:
            x2d: 2D array of shape (axis_len, batch).
            axis: Axis along which the reshape was done.

        Returns:
            Array of shape ``shape``.
        """
        axis_idx = self.axis_index(axis)
        axis_len = int(self.shape[axis_idx])
        trailing = tuple(d for i, d in enumerate(self.shape) if i != axis_idx)
        arr = np.asarray(x2d).reshape((axis_len, *trailing))
        return cast("StateArray", np.moveaxis(arr, 0, axis_idx))


# Checkpoint ----------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class Checkpoint:
    """Immutable snapshot from which a new trajectory can be started.

    Attributes:
        t: Time of the snapshot.
        state: Private copy of the state at ``t``.
        dt: Current adaptive step size, or None for fixed-step schemes.
        sample_origin: Origin of the output-time grid when sampling, else None.
        sample_index: Number of samples already emitted on that grid.
    """

    t: float
    state: StateArray = field(repr=False)
    dt: float | None = None
    sample_origin: float | None = None
    sample_index: int = 0

    @classmethod
    def capture(
        cls,
        t: float,
        state: npt.ArrayLike,
        dt: float | None = None,
        *,
        sample_origin: float | None = None,
        sample_index: int = 0,
    ) -> Checkpoint:
        """Create a checkpoint holding a read-only copy of state."""
        snapshot = np.array(state, copy=True)
        snapshot.setflags(write=False)
        return cls(
            t=float(t),
            state=snapshot,
            dt=None if dt is None else float(dt),
            sample_origin=None if sample_origin is None else float(sample_origin),
            sample_index=int(sample_index),
        )

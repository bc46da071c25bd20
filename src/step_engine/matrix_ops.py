# step_engine/src/step_engine/matrix_ops.py
"""
Linear operators and propagators for semi-implicit time stepping.

This module is the numeric-backend boundary of the semi-implicit schemes. It
provides:

- Classification and application of a linear operator L to a state.
- Construction of one-step linear propagators from (L, h):
    * "exponential": E(h) = exp(h L), W(h) = h * phi1(h L)
    * "resolvent":   E(h) = (I - h L)^-1, W(h) = h * E(h)
- A 1D Laplacian builder for diffusion-type linear parts.

Supported operator forms:
    * diagonal: an ndarray with the state's shape, applied element-wise
      (typical for spectral discretizations, may be complex).
    * dense: a square 2D ndarray acting along one state axis.
    * sparse: a square SciPy sparse matrix acting along one state axis.

Dense/sparse operators act along a configured axis; all other axes are batched,
so a (n, n) operator applies to a state of shape (..., n, ...) column by column.

Design notes:
    * Exponential propagators for matrices are evaluated with a single
      scipy.linalg.expm of the augmented block matrix [[hL, hI], [0, 0]], whose
      upper blocks are exp(hL) and h*phi1(hL). Sparse operators are densified for
      the exponential; the resolvent keeps sparse operators sparse (splu).
    * Propagator construction never returns NaN-poisoned operators: singular
      or non-finite results raise PropagatorError.
"""

from __future__ import annotations

import warnings
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, Literal, TypeAlias, cast

import numpy as np
from numpy.typing import DTypeLike, NDArray
from scipy.linalg import LinAlgWarning, expm, lu_factor, lu_solve
from scipy.sparse import csc_matrix, csr_matrix, diags, issparse
from scipy.sparse.linalg import splu

from .errors import ConfigurationError, PropagatorError

if TYPE_CHECKING:
    from collections.abc import Callable

    from .state import StateArray, StateSpec


# =============================================================================
# Public operator types
# =============================================================================

DenseOperator: TypeAlias = NDArray[np.inexact[Any]]
SparseOperator: TypeAlias = csr_matrix
Operator: TypeAlias = DenseOperator | SparseOperator

OperatorKind = Literal["diagonal", "dense", "sparse"]
OperatorForm = Literal["auto", "diagonal", "matrix"]
PropagatorKind = Literal["exponential", "resolvent"]

OPERATOR_FORMS: tuple[str, ...] = ("auto", "diagonal", "matrix")
PROPAGATOR_KINDS: tuple[str, ...] = ("exponential", "resolvent")

# Below this |z| the diagonal phi1 uses its Taylor series instead of (e^z-1)/z.
_PHI1_SERIES_CUTOFF = 1e-3


# =============================================================================
# Error message constants
# =============================================================================

_OPERATOR_SHAPE_ERROR = (
    "Linear operator shape {shape} is incompatible with state shape {state_shape}: "
    "expected a diagonal of the state's shape or a square ({n}, {n}) matrix "
    "acting along axis {axis}"
)
_OPERATOR_DTYPE_ERROR = (
    "Linear operator dtype {op_dtype} cannot act on state dtype {state_dtype} "
    "without a lossy cast"
)
_OPERATOR_NON_FINITE_ERROR = "Linear operator contains non-finite entries"
_UNKNOWN_FORM_ERROR = "Unknown operator form: {form}; expected one of {allowed}"
_UNKNOWN_PROPAGATOR_ERROR = "Unknown propagator: {kind}; expected one of {allowed}"
_STEP_SCALE_ERROR = "Propagator step h must be a finite float > 0; got {h!r}"
_EXPONENTIAL_NON_FINITE_ERROR = (
    "exp(h L) is not finite for h={h!r}; the linear operator is too large for "
    "this step or has eigenvalues with large positive real part"
)
_RESOLVENT_SINGULAR_ERROR = (
    "Resolvent (I - h L) is singular or ill-conditioned for h={h!r}"
)
_UNKNOWN_BC_ERROR = "Unknown bc: {bc}"


# =============================================================================
# Operator classification / application
# =============================================================================


def classify_operator(
    op: Operator,
    spec: StateSpec,
    *,
    axis: int = 0,
    form: OperatorForm = "auto",
) -> OperatorKind:
    """
    Classify a linear operator against a state spec.

    With form="auto", an ndarray with exactly the state's shape is a diagonal;
    otherwise a square 2D operator whose size matches the state length along
    ``axis`` is a dense or sparse matrix. A square 2D state makes the two
    readings ambiguous; pass form="matrix" to force the matrix reading.

    Args:
        op: Linear operator.
        spec: State spec the operator acts on.
        axis: State axis along which matrices act.
        form: "auto", "diagonal" or "matrix".

    Raises:
        ConfigurationError: If the operator shape, dtype or form is incompatible.

    Returns:
        Operator kind.
    """
    if form not in OPERATOR_FORMS:
        raise ConfigurationError(
            _UNKNOWN_FORM_ERROR.format(form=form, allowed=OPERATOR_FORMS)
        )

    axis_idx = spec.axis_index(axis)
    n = int(spec.shape[axis_idx])

    if issparse(op):
        kind: OperatorKind = "sparse"
        shape = tuple(op.shape)
        op_dtype = np.dtype(op.dtype)
    else:
        arr = np.asarray(op)
        shape = arr.shape
        op_dtype = arr.dtype
        is_diagonal = form == "diagonal" or (form == "auto" and shape == spec.shape)
        kind = "diagonal" if is_diagonal else "dense"

    if kind == "diagonal" and shape != spec.shape:
        raise ConfigurationError(
            _OPERATOR_SHAPE_ERROR.format(
                shape=shape, state_shape=spec.shape, n=n, axis=axis_idx
            )
        )
    if kind != "diagonal" and (form == "diagonal" or shape != (n, n)):
        raise ConfigurationError(
            _OPERATOR_SHAPE_ERROR.format(
                shape=shape, state_shape=spec.shape, n=n, axis=axis_idx
            )
        )

    if not np.can_cast(np.result_type(op_dtype, spec.dtype), spec.dtype, "same_kind"):
        raise ConfigurationError(
            _OPERATOR_DTYPE_ERROR.format(op_dtype=op_dtype, state_dtype=spec.dtype)
        )
    return kind


def _apply_matrix_along_axis(
    mat: Any,
    x: StateArray,
    spec: StateSpec,
    axis: int,
    out: StateArray,
) -> None:
    """Compute out = mat @ x along ``axis``, batching all other axes."""
    x2d = spec.reshape_for_axis(x, axis)
    y2d = np.asarray(mat @ x2d)
    np.copyto(out, spec.unreshape_from_axis(y2d, axis), casting="same_kind")


def apply_operator(
    op: Operator,
    x: StateArray,
    spec: StateSpec,
    *,
    axis: int = 0,
    form: OperatorForm = "auto",
    out: StateArray | None = None,
) -> StateArray:
    """
    Apply a linear operator to a state: out = L x.

    Args:
        op: Linear operator (diagonal, dense or sparse).
        x: State of shape spec.shape.
        spec: State spec.
        axis: State axis along which matrices act.
        form: Operator form, see classify_operator.
        out: Optional output buffer.

    Returns:
        L x, written into out when provided.
    """
    result = spec.zeros() if out is None else out
    kind = classify_operator(op, spec, axis=axis, form=form)
    if kind == "diagonal":
        np.multiply(np.asarray(op), x, out=result, casting="same_kind")
        return result
    _apply_matrix_along_axis(op, x, spec, axis, result)
    return result


def _require_finite_operator(op: Operator) -> None:
    data = op.data if issparse(op) else np.asarray(op)
    if not np.all(np.isfinite(data)):
        raise PropagatorError(_OPERATOR_NON_FINITE_ERROR)


def _validate_step(h: float) -> float:
    h_f = float(h)
    if not (np.isfinite(h_f) and h_f > 0.0):
        raise ConfigurationError(_STEP_SCALE_ERROR.format(h=h))
    return h_f


# =============================================================================
# phi functions (diagonal)
# =============================================================================


def phi1(z: complex | NDArray[np.inexact[Any]]) -> NDArray[np.inexact[Any]]:
    """
    Element-wise phi1(z) = (exp(z) - 1) / z with phi1(0) = 1.

    Small |z| uses a fourth-order Taylor series to avoid cancellation.

    Args:
        z: Scalar or array argument (real or complex).

    Returns:
        phi1(z) with the shape of z.
    """
    z_arr = np.asarray(z)
    if not np.issubdtype(z_arr.dtype, np.inexact):
        z_arr = z_arr.astype(np.float64)

    small = np.abs(z_arr) < _PHI1_SERIES_CUTOFF
    safe_z = np.where(small, 1.0, z_arr)
    with np.errstate(over="ignore", invalid="ignore"):
        direct = np.expm1(safe_z) / safe_z
    series = 1.0 + z_arr * (0.5 + z_arr * (1.0 / 6.0 + z_arr / 24.0))
    return cast("NDArray[np.inexact[Any]]", np.where(small, series, direct))


# =============================================================================
# Propagators
# =============================================================================


class Propagator(ABC):
    """One-step linear propagator for a fixed (L, h).

    ``propagate`` applies E(h), the linear flow over one step, and ``weighted``
    applies W(h), the operator that integrates a frozen forcing over the step
    (h * phi1(hL) for exponential propagators, h * (I - hL)^-1 for resolvents).
    """

    kind: PropagatorKind
    h: float

    @abstractmethod
    def propagate(self, x: StateArray, out: StateArray) -> None:
        """Write E(h) x into out."""

    @abstractmethod
    def weighted(self, x: StateArray, out: StateArray) -> None:
        """Write W(h) x into out."""


class DiagonalPropagator(Propagator):
    """Element-wise propagator for diagonal operators."""

    def __init__(
        self,
        *,
        kind: PropagatorKind,
        h: float,
        factor: NDArray[np.inexact[Any]],
        weight: NDArray[np.inexact[Any]],
    ) -> None:
        self.kind = kind
        self.h = h
        self.factor = factor
        self.weight = weight

    def propagate(self, x: StateArray, out: StateArray) -> None:
        np.multiply(self.factor, x, out=out, casting="same_kind")

    def weighted(self, x: StateArray, out: StateArray) -> None:
        np.multiply(self.weight, x, out=out, casting="same_kind")


class MatrixPropagator(Propagator):
    """Propagator with explicit dense matrices E and W acting along one axis."""

    def __init__(
        self,
        *,
        kind: PropagatorKind,
        h: float,
        factor: DenseOperator,
        weight: DenseOperator,
        spec: StateSpec,
        axis: int,
    ) -> None:
        self.kind = kind
        self.h = h
        self.factor = factor
        self.weight = weight
        self._spec = spec
        self._axis = axis

    def propagate(self, x: StateArray, out: StateArray) -> None:
        _apply_matrix_along_axis(self.factor, x, self._spec, self._axis, out)

    def weighted(self, x: StateArray, out: StateArray) -> None:
        _apply_matrix_along_axis(self.weight, x, self._spec, self._axis, out)


class FactorizedPropagator(Propagator):
    """Resolvent propagator backed by a cached factorization of (I - h L)."""

    def __init__(
        self,
        *,
        h: float,
        solve: Callable[[NDArray[np.inexact[Any]]], NDArray[np.inexact[Any]]],
        spec: StateSpec,
        axis: int,
    ) -> None:
        self.kind = "resolvent"
        self.h = h
        self._solve = solve
        self._spec = spec
        self._axis = axis

    def propagate(self, x: StateArray, out: StateArray) -> None:
        x2d = self._spec.reshape_for_axis(x, self._axis)
        y2d = self._solve(np.ascontiguousarray(x2d))
        np.copyto(
            out, self._spec.unreshape_from_axis(y2d, self._axis), casting="same_kind"
        )

    def weighted(self, x: StateArray, out: StateArray) -> None:
        self.propagate(x, out)
        out *= self.h


# =============================================================================
# Propagator construction
# =============================================================================


def _diagonal_propagator(
    diag: NDArray[np.inexact[Any]],
    h: float,
    kind: PropagatorKind,
) -> DiagonalPropagator:
    z = h * diag
    if kind == "exponential":
        with np.errstate(over="ignore", invalid="ignore"):
            factor = np.exp(z)
            weight = h * phi1(z)
        if not (np.all(np.isfinite(factor)) and np.all(np.isfinite(weight))):
            raise PropagatorError(_EXPONENTIAL_NON_FINITE_ERROR.format(h=h))
        return DiagonalPropagator(kind=kind, h=h, factor=factor, weight=weight)

    denom = 1.0 - z
    tiny = np.finfo(np.result_type(denom.dtype, np.float64)).eps
    if np.any(np.abs(denom) <= tiny):
        raise PropagatorError(_RESOLVENT_SINGULAR_ERROR.format(h=h))
    factor = 1.0 / denom
    return DiagonalPropagator(kind=kind, h=h, factor=factor, weight=h * factor)


def _dense_exponential(
    op: DenseOperator,
    h: float,
    spec: StateSpec,
    axis: int,
) -> MatrixPropagator:
    n = op.shape[0]
    dtype = np.result_type(op.dtype, np.float64)
    aug = np.zeros((2 * n, 2 * n), dtype=dtype)
    aug[:n, :n] = h * op
    aug[:n, n:] = h * np.eye(n, dtype=dtype)

    try:
        block = expm(aug)
    except (ValueError, OverflowError, np.linalg.LinAlgError) as exc:
        raise PropagatorError(_EXPONENTIAL_NON_FINITE_ERROR.format(h=h)) from exc

    if not np.all(np.isfinite(block)):
        raise PropagatorError(_EXPONENTIAL_NON_FINITE_ERROR.format(h=h))

    return MatrixPropagator(
        kind="exponential",
        h=h,
        factor=np.ascontiguousarray(block[:n, :n]),
        weight=np.ascontiguousarray(block[:n, n:]),
        spec=spec,
        axis=axis,
    )


def _dense_resolvent(
    op: DenseOperator,
    h: float,
    spec: StateSpec,
    axis: int,
) -> FactorizedPropagator:
    n = op.shape[0]
    dtype = np.result_type(op.dtype, np.float64)
    left = np.eye(n, dtype=dtype) - h * op

    with warnings.catch_warnings():
        warnings.simplefilter("error", LinAlgWarning)
        try:
            lu, piv = lu_factor(left)
        except (LinAlgWarning, ValueError, np.linalg.LinAlgError) as exc:
            raise PropagatorError(_RESOLVENT_SINGULAR_ERROR.format(h=h)) from exc

    pivots = np.abs(np.diag(lu))
    if pivots.min() <= np.finfo(dtype).eps * max(float(pivots.max()), 1.0):
        raise PropagatorError(_RESOLVENT_SINGULAR_ERROR.format(h=h))

    def dense_solve(x2d: NDArray[np.inexact[Any]]) -> NDArray[np.inexact[Any]]:
        return cast("NDArray[np.inexact[Any]]", lu_solve((lu, piv), x2d))

    return FactorizedPropagator(h=h, solve=dense_solve, spec=spec, axis=axis)


def _sparse_resolvent(
    op: SparseOperator,
    h: float,
    spec: StateSpec,
    axis: int,
) -> FactorizedPropagator:
    n = op.shape[0]
    dtype = np.result_type(op.dtype, np.float64)
    left = csc_matrix(diags(np.ones(n, dtype=dtype)) - h * op, dtype=dtype)

    try:
        factor = splu(left)
    except RuntimeError as exc:
        raise PropagatorError(_RESOLVENT_SINGULAR_ERROR.format(h=h)) from exc

    real_factor = not np.issubdtype(dtype, np.complexfloating)

    def sparse_solve(x2d: NDArray[np.inexact[Any]]) -> NDArray[np.inexact[Any]]:
        # SuperLU solves in the factor's dtype; split complex rhs over a real factor.
        if real_factor and np.iscomplexobj(x2d):
            re = factor.solve(np.ascontiguousarray(x2d.real, dtype=dtype))
            im = factor.solve(np.ascontiguousarray(x2d.imag, dtype=dtype))
            return cast("NDArray[np.inexact[Any]]", re + 1j * im)
        rhs = np.ascontiguousarray(x2d, dtype=dtype)
        return cast("NDArray[np.inexact[Any]]", factor.solve(rhs))

    return FactorizedPropagator(h=h, solve=sparse_solve, spec=spec, axis=axis)


def normalize_propagator_kind(kind: str) -> PropagatorKind:
    """
    Normalize and validate a propagator kind.

    Args:
        kind: "exponential" or "resolvent" (case-insensitive).

    Raises:
        ConfigurationError: If the kind is unknown.

    Returns:
        Normalized propagator kind.
    """
    kind_norm = str(kind).strip().lower()
    if kind_norm not in PROPAGATOR_KINDS:
        raise ConfigurationError(
            _UNKNOWN_PROPAGATOR_ERROR.format(kind=kind, allowed=PROPAGATOR_KINDS)
        )
    return cast("PropagatorKind", kind_norm)


def build_propagator(
    op: Operator,
    h: float,
    spec: StateSpec,
    *,
    kind: str = "exponential",
    axis: int = 0,
    form: OperatorForm = "auto",
) -> Propagator:
    """
    Build a one-step linear propagator for (L, h).

    Args:
        op: Linear operator L (diagonal, dense or sparse).
        h: Step size the propagator advances over.
        spec: State spec the propagator acts on.
        kind: "exponential" or "resolvent".
        axis: State axis along which matrices act.
        form: Operator form, see classify_operator.

    Raises:
        ConfigurationError: If h, kind or the operator shape is invalid.
        PropagatorError: If the propagator cannot be constructed.

    Returns:
        Propagator for (L, h).
    """
    h_f = _validate_step(h)
    kind_norm = normalize_propagator_kind(kind)
    op_kind = classify_operator(op, spec, axis=axis, form=form)
    _require_finite_operator(op)

    if op_kind == "diagonal":
        return _diagonal_propagator(np.asarray(op), h_f, kind_norm)

    if kind_norm == "resolvent":
        if op_kind == "sparse":
            return _sparse_resolvent(cast("SparseOperator", op), h_f, spec, axis)
        return _dense_resolvent(np.asarray(op), h_f, spec, axis)

    dense = np.asarray(op.toarray()) if op_kind == "sparse" else np.asarray(op)
    return _dense_exponential(dense, h_f, spec, axis)


# =============================================================================
# Linear operator builders
# =============================================================================


def build_laplacian_tridiag(
    n: int,
    dx: float,
    coeff: float,
    dtype: DTypeLike = np.float64,
    bc: str = "neumann",
) -> csr_matrix:
    """Build a 1D Laplacian tridiagonal matrix for a given boundary condition.

    The resulting operator corresponds to `coeff * Δ_h`, where `Δ_h` is the
    standard second-order central-difference Laplacian in 1D. No time-step
    scaling is applied here.

    Args:
        n: Number of grid points.
        dx: Grid spacing.
        coeff: Diffusion coefficient D (units length^2 / time).
        dtype: Floating dtype (e.g. np.float64).
        bc: Boundary condition; "neumann", "dirichlet" or "periodic".

    Raises:
        ValueError: If an unknown boundary condition is provided.

    Returns:
        Sparse CSR matrix representing the Laplacian operator.
    """
    dtype_obj = np.dtype(dtype)
    factor = coeff / dx**2

    main_diag = -2.0 * np.ones(n, dtype=dtype_obj)
    off_diag = np.ones(n - 1, dtype=dtype_obj)

    if bc == "neumann":
        main_diag[0] = -1.0
        main_diag[-1] = -1.0
    elif bc not in {"dirichlet", "periodic"}:
        raise ValueError(_UNKNOWN_BC_ERROR.format(bc=bc))

    laplacian = diags(
        [off_diag, main_diag, off_diag],
        [-1, 0, 1],
        shape=(n, n),
        dtype=dtype_obj,
    ).tolil()

    if bc == "periodic":
        laplacian[0, n - 1] = 1.0
        laplacian[n - 1, 0] = 1.0

    return cast("csr_matrix", laplacian.tocsr() * factor)

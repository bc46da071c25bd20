# step_engine/src/step_engine/config.py
"""Pydantic configuration models for step_engine.

These models give YAML/JSON-friendly settings and translate them into the
native objects (AdaptiveConfig, SamplingConfig, schemes, TimeSeries).

Notes:
    - Unknown fields are allowed and ignored (`extra="allow"`), so settings can
      live inside larger application configs.
    - The native dataclasses remain the source of truth for validation; the
      bounds declared here only catch obvious mistakes early.
"""

from __future__ import annotations

import warnings
from typing import TYPE_CHECKING, Literal

from pydantic import BaseModel, ConfigDict, Field

from .adaptive import TABLEAUS, AdaptiveConfig, EmbeddedRK
from .explicit import RK4, Euler, Heun
from .semi_implicit import SemiImplicitEuler, SemiImplicitRK4
from .time_series import SamplingConfig, TimeSeries

if TYPE_CHECKING:
    import numpy.typing as npt

    from .model import Model
    from .scheme import Scheme

MethodName = Literal[
    "euler",
    "heun",
    "rk4",
    "heun-euler",
    "bogacki-shampine",
    "cash-karp",
    "dormand-prince",
    "semi-implicit-euler",
    "semi-implicit-rk4",
]

_EXPLICIT = {"euler": Euler, "heun": Heun, "rk4": RK4}
_SEMI_IMPLICIT = {
    "semi-implicit-euler": SemiImplicitEuler,
    "semi-implicit-rk4": SemiImplicitRK4,
}

_IGNORED_OPTION_MSG = (
    "Method '{method}' does not split L x + N(x, t); {option} ignored. "
    "Use 'semi-implicit-euler' or 'semi-implicit-rk4' for a linear propagator."
)


class SchemeSettings(BaseModel):
    """Scheme selection and step-size settings.

    ``dt`` is the fixed step for explicit and semi-implicit methods and the
    initial step for embedded pairs.
    """

    model_config = ConfigDict(extra="allow")

    method: MethodName = Field(default="rk4", description="Stepping scheme")
    dt: float = Field(default=1e-2, gt=0.0, description="Step size (initial if adaptive)")

    # Adaptive controls
    rtol: float = Field(default=1e-6, ge=0.0)
    atol: float = Field(default=1e-9, ge=0.0)
    safety: float = Field(default=0.9, gt=0.0, le=1.0)
    min_factor: float = Field(default=0.2, gt=0.0)
    max_factor: float = Field(default=5.0, gt=0.0)
    max_rejections: int = Field(default=25, ge=1)
    dt_min: float = Field(default=0.0, ge=0.0)
    dt_max: float = Field(default=float("inf"), gt=0.0)
    norm: Literal["rms", "l2", "max"] = "rms"

    # Semi-implicit controls
    propagator: Literal["exponential", "resolvent"] | None = None
    operator_axis: int | None = None

    @property
    def is_adaptive(self) -> bool:
        """Whether the method is an embedded adaptive pair."""
        return self.method in TABLEAUS

    def to_adaptive_config(self) -> AdaptiveConfig:
        """Convert to a native AdaptiveConfig.

        Returns:
            AdaptiveConfig with dt as the initial step.
        """
        return AdaptiveConfig(
            initial_dt=self.dt,
            rtol=self.rtol,
            atol=self.atol,
            safety=self.safety,
            min_factor=self.min_factor,
            max_factor=self.max_factor,
            max_rejections=self.max_rejections,
            dt_min=self.dt_min,
            dt_max=self.dt_max,
            norm=self.norm,
        )

    def _warn_ignored(self) -> None:
        for option in ("propagator", "operator_axis"):
            if getattr(self, option) is not None:
                warnings.warn(
                    _IGNORED_OPTION_MSG.format(method=self.method, option=option),
                    RuntimeWarning,
                    stacklevel=3,
                )

    def build(self, model: Model, prototype: npt.ArrayLike) -> Scheme:
        """
        Construct the configured scheme.

        Args:
            model: Model for the scheme.
            prototype: Prototype state sizing the scratch buffers.

        Returns:
            Scheme instance.
        """
        if self.method in _SEMI_IMPLICIT:
            return _SEMI_IMPLICIT[self.method](
                model,  # type: ignore[arg-type]
                prototype,
                dt=self.dt,
                propagator=self.propagator or "exponential",
                operator_axis=self.operator_axis,
            )

        self._warn_ignored()
        if self.is_adaptive:
            return EmbeddedRK(
                model, prototype, self.to_adaptive_config(), tableau=self.method
            )
        return _EXPLICIT[self.method](model, prototype, dt=self.dt)


class SamplingSettings(BaseModel):
    """Fixed-interval output sampling settings."""

    model_config = ConfigDict(extra="allow")

    interval: float = Field(gt=0.0, description="Spacing between output times")
    alignment: Literal["exact", "nearest"] = "exact"

    def to_sampling_config(self) -> SamplingConfig:
        """Convert to a native SamplingConfig."""
        return SamplingConfig(interval=self.interval, alignment=self.alignment)


class IntegratorSettings(BaseModel):
    """Complete settings for one trajectory run."""

    model_config = ConfigDict(extra="allow")

    scheme: SchemeSettings = Field(default_factory=SchemeSettings)
    sampling: SamplingSettings | None = None
    t0: float = 0.0
    check_finite: bool = True

    def build_time_series(self, model: Model, x0: npt.ArrayLike) -> TimeSeries:
        """
        Build the scheme and a TimeSeries starting at (x0, t0).

        Args:
            model: Model for the scheme.
            x0: Initial state, also used as the prototype.

        Returns:
            TimeSeries iterator.
        """
        scheme = self.scheme.build(model, x0)
        return TimeSeries(
            scheme,
            x0,
            t0=self.t0,
            sampling=None if self.sampling is None else self.sampling.to_sampling_config(),
            check_finite=self.check_finite,
        )

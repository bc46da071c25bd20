"""Global pytest configuration and shared fixtures for step_engine."""

from __future__ import annotations

import numpy as np
import pytest

from step_engine.model import FunctionModel, SplitModel

# -----------------------------------------------------------------------------
# Vector fields
# -----------------------------------------------------------------------------


def decay_field(x: np.ndarray, t: float) -> np.ndarray:  # noqa: ARG001
    """dx/dt = -x."""
    return -x


def lorenz_field(x: np.ndarray, t: float) -> np.ndarray:  # noqa: ARG001
    """Lorenz-63 with the classical parameters."""
    s, r, b = 10.0, 28.0, 8.0 / 3.0
    return np.array(
        [
            s * (x[1] - x[0]),
            x[0] * (r - x[2]) - x[1],
            x[0] * x[1] - b * x[2],
        ]
    )


# -----------------------------------------------------------------------------
# Fixtures
# -----------------------------------------------------------------------------


@pytest.fixture
def decay_model() -> FunctionModel:
    """Linear decay model dx/dt = -x."""
    return FunctionModel(decay_field)


@pytest.fixture
def lorenz_model() -> FunctionModel:
    """Chaotic Lorenz-63 model."""
    return FunctionModel(lorenz_field)


@pytest.fixture
def diagonal_split_model() -> SplitModel:
    """Stiff diagonal L with a mild cubic nonlinearity on a length-4 state."""
    lam = np.array([-1.0, -10.0, -100.0, -1000.0])
    return SplitModel(lam, lambda x, t: -0.1 * x**3)  # noqa: ARG005

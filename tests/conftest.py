"""Global pytest configuration and shared fixtures for stage_engine."""

from __future__ import annotations

from collections.abc import Callable
from typing import TYPE_CHECKING

import numpy as np
import pytest

from stage_engine.stage_system import StageContext

if TYPE_CHECKING:
    from numpy.typing import NDArray

    ContextFactory = Callable[..., StageContext]


# -----------------------------------------------------------------------------
# Global markers registration safety (for local pytest runs)
# -----------------------------------------------------------------------------


def pytest_configure(config: pytest.Config) -> None:
    """Register custom markers used by the test suite."""
    config.addinivalue_line(
        "markers",
        "end_to_end: mark test as driving a full stage solve through the controller",
    )


# -----------------------------------------------------------------------------
# Shared fixtures
# -----------------------------------------------------------------------------


@pytest.fixture
def make_context() -> ContextFactory:
    """
    Factory for StageContext objects with small, explicit defaults.

    Usage:
        def test_x(make_context):
            ctx = make_context(zpred=[1.0, 2.0], sdata=[0.1, 0.2], gamma=0.5)
    """

    def _make(
        *,
        zpred: NDArray[np.floating] | list[float],
        sdata: NDArray[np.floating] | list[float] | None = None,
        gamma: float = 0.5,
        time: float = 0.0,
        step_size: float = 1.0,
        n_stages: int = 2,
        stage_index: int = 1,
        step_index: int = 0,
        fn_implicit: NDArray[np.floating] | list[float] | None = None,
    ) -> StageContext:
        zp = np.asarray(zpred, dtype=float)
        sd = np.zeros_like(zp) if sdata is None else np.asarray(sdata, dtype=float)
        fn = None if fn_implicit is None else np.asarray(fn_implicit, dtype=float)
        return StageContext(
            time=time,
            step_size=step_size,
            gamma=gamma,
            zpred=zp,
            sdata=sd,
            fi=np.zeros((n_stages, zp.size), dtype=float),
            stage_index=stage_index,
            step_index=step_index,
            fn_implicit=fn,
        )

    return _make


@pytest.fixture
def unit_weights() -> Callable[[int], NDArray[np.floating]]:
    """Return a factory for all-ones error weights of a given size."""

    def _make(n: int) -> NDArray[np.floating]:
        return np.ones(n, dtype=float)

    return _make

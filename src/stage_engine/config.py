# src/stage_engine/config.py
"""Configuration for the implicit-stage solve engine.

Two layers, separating the native run configuration from the YAML-facing
schema:

- Native frozen dataclasses (`NonlinearSolveConfig`, `StageProblemConfig`) that
  the engine consumes directly.
- A pydantic model (`StageSolverSettings`) with field bounds, suitable for
  dict/YAML input, that converts into the native objects.

Notes:
    - The numeric defaults (crdown, rdiv, dgmax, msbp, nlscoef, maxcor) match the
      conventional ARK integrator defaults; they are tunables, not constants.
    - `StageSolverSettings` allows and ignores unknown fields (`extra="allow"`)
      so it can be embedded in larger integrator configs.
"""

from __future__ import annotations

import math
import warnings
from dataclasses import dataclass, replace
from enum import StrEnum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from .errors import raise_invalid_config

_CRDOWN_RANGE_MSG = "crdown must be in (0, 1); got {value}"
_RDIV_RANGE_MSG = "rdiv must be > 1; got {value}"
_DGMAX_RANGE_MSG = "dgmax must be a positive finite float; got {value}"
_NLSCOEF_RANGE_MSG = "nlscoef must be a positive finite float; got {value}"
_MAXCOR_RANGE_MSG = "maxcor must be >= 1; got {value}"
_TRIVIAL_TDEP_MSG = (
    "The trivial-predictor fast path is not available with a time-dependent mass "
    "matrix; the implicit RHS is always re-evaluated."
)


class MassKind(StrEnum):
    """Mass-matrix regime of the governing equations."""

    IDENTITY = "identity"
    FIXED = "fixed"
    TIME_DEPENDENT = "time_dependent"


class SolverCategory(StrEnum):
    """Whether the nonlinear solver drives a residual to zero or iterates a map."""

    ROOT_FINDING = "root_finding"
    FIXED_POINT = "fixed_point"


@dataclass(slots=True, frozen=True)
class NonlinearSolveConfig:
    """Tunables for the nonlinear stage solve.

    Attributes:
        crdown: Damping applied to the previous convergence-rate estimate.
        rdiv: Divergence threshold on successive correction-norm growth.
        dgmax: Tolerance on |gamma/gammap - 1| before a fresh setup is recommended.
        msbp: Max steps between setups; negative means set up on every attempt.
        nlscoef: Nonlinear convergence tolerance.
        maxcor: Maximum nonlinear iterations per solve.
    """

    crdown: float = 0.3
    rdiv: float = 2.3
    dgmax: float = 0.2
    msbp: int = 20
    nlscoef: float = 0.1
    maxcor: int = 3

    def __post_init__(self) -> None:
        """Validate ranges.

        Raises:
            ConfigurationError: If any tunable is out of range.
        """
        if not (0.0 < self.crdown < 1.0):
            raise_invalid_config(_CRDOWN_RANGE_MSG.format(value=self.crdown))
        if not (self.rdiv > 1.0 and math.isfinite(self.rdiv)):
            raise_invalid_config(_RDIV_RANGE_MSG.format(value=self.rdiv))
        if not (self.dgmax > 0.0 and math.isfinite(self.dgmax)):
            raise_invalid_config(_DGMAX_RANGE_MSG.format(value=self.dgmax))
        if not (self.nlscoef > 0.0 and math.isfinite(self.nlscoef)):
            raise_invalid_config(_NLSCOEF_RANGE_MSG.format(value=self.nlscoef))
        if self.maxcor < 1:
            raise_invalid_config(_MAXCOR_RANGE_MSG.format(value=self.maxcor))


@dataclass(slots=True, frozen=True)
class StageProblemConfig:
    """Structural description of the implicit problem.

    Attributes:
        mass_kind: Identity, fixed or time-dependent mass matrix.
        linear: Implicit RHS is linear in the unknown (skip convergence testing).
        linear_timedep: For linear problems, whether the Jacobian is time
            dependent (forces a setup on every attempt).
        autonomous: Implicit RHS does not depend explicitly on time.
        trivial_predictor: The stage predictor is the start-of-step state.
        strict: If True, inconsistent settings raise; otherwise they warn and
            are downshifted.
    """

    mass_kind: MassKind = MassKind.IDENTITY
    linear: bool = False
    linear_timedep: bool = True
    autonomous: bool = False
    trivial_predictor: bool = False
    strict: bool = True

    @property
    def reuse_start_rhs(self) -> bool:
        """Return True if the cached start-of-step RHS may seed iteration 0."""
        return (
            self.autonomous
            and self.trivial_predictor
            and self.mass_kind is not MassKind.TIME_DEPENDENT
        )

    def resolved(self) -> StageProblemConfig:
        """Return a consistent copy, raising or warning on conflicts.

        Returns:
            A configuration with conflicting options dropped.
        """
        cfg = self
        if (
            cfg.autonomous
            and cfg.trivial_predictor
            and cfg.mass_kind is MassKind.TIME_DEPENDENT
        ):
            if cfg.strict:
                raise_invalid_config(_TRIVIAL_TDEP_MSG)
            warnings.warn(_TRIVIAL_TDEP_MSG, RuntimeWarning, stacklevel=2)
            cfg = replace(cfg, trivial_predictor=False)
        return cfg


class StageSolverSettings(BaseModel):
    """Dict/YAML-friendly schema for the stage solve engine.

    Mirrors `NonlinearSolveConfig` and `StageProblemConfig` with validated
    defaults.
    """

    model_config = ConfigDict(extra="allow")

    mass_kind: Literal["identity", "fixed", "time_dependent"] = Field(
        default="identity",
        description="Mass-matrix regime",
    )
    linear: bool = Field(
        default=False,
        description="Implicit RHS is linear in the unknown",
    )
    linear_timedep: bool = Field(
        default=True,
        description="Linear Jacobian varies in time (forces setup every attempt)",
    )
    autonomous: bool = Field(default=False)
    trivial_predictor: bool = Field(default=False)
    strict: bool = Field(
        default=True,
        description="Fail fast on inconsistent configurations",
    )

    crdown: float = Field(default=0.3, gt=0.0, lt=1.0)
    rdiv: float = Field(default=2.3, gt=1.0)
    dgmax: float = Field(default=0.2, gt=0.0)
    msbp: int = Field(default=20)
    nlscoef: float = Field(default=0.1, gt=0.0)
    maxcor: int = Field(default=3, ge=1)

    def to_configs(self) -> tuple[NonlinearSolveConfig, StageProblemConfig]:
        """Convert to native configuration objects.

        Returns:
            Tuple of (NonlinearSolveConfig, StageProblemConfig).
        """
        nls_cfg = NonlinearSolveConfig(
            crdown=self.crdown,
            rdiv=self.rdiv,
            dgmax=self.dgmax,
            msbp=self.msbp,
            nlscoef=self.nlscoef,
            maxcor=self.maxcor,
        )
        problem_cfg = StageProblemConfig(
            mass_kind=MassKind(self.mass_kind),
            linear=self.linear,
            linear_timedep=self.linear_timedep,
            autonomous=self.autonomous,
            trivial_predictor=self.trivial_predictor,
            strict=self.strict,
        )
        return nls_cfg, problem_cfg.resolved()

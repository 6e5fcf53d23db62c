"""
Solver service.

Wraps the pulp solver backends behind one call: hand it a problem and a
SolverConfig, get back a SolveResult with the mapped status, the objective
and every variable value by name.
"""

import logging
import os
import time as time_module
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional

import pulp

from busflow.config import ConfigurationError, SolverConfig
from busflow.models import SolverStatus
from busflow.type_defs import VariableValues

logger = logging.getLogger(__name__)


@dataclass
class SolveResult:
    status: SolverStatus
    objective_value: Optional[float] = None
    values: VariableValues = field(default_factory=dict)
    solve_time: float = 0.0
    raw_status: int = pulp.constants.LpStatusNotSolved

    @property
    def is_optimal(self) -> bool:
        return self.status is SolverStatus.OPTIMAL


# ============================================================
# SOLVER FACTORIES
# ============================================================

def _resolve_cbc_executable(config: SolverConfig) -> Optional[str]:
    """Explicit CBC path from the config or PULP_CBC_PATH, if it exists."""
    for candidate in (config.cbc_path, os.getenv("PULP_CBC_PATH", "").strip()):
        if candidate and os.path.isfile(candidate):
            return os.path.abspath(candidate)
    return None


def _build_cbc_solver(config: SolverConfig):
    kwargs = {
        "msg": config.msg,
        "timeLimit": config.time_limit_seconds,
        "gapRel": config.mip_gap,
        "threads": config.threads,
    }
    cbc_path = _resolve_cbc_executable(config)
    if cbc_path:
        kwargs["path"] = cbc_path
    return pulp.PULP_CBC_CMD(**kwargs)


def _build_highs_solver(config: SolverConfig):
    return pulp.HiGHS_CMD(
        msg=config.msg,
        timeLimit=config.time_limit_seconds,
        gapRel=config.mip_gap,
        threads=config.threads,
    )


SOLVER_FACTORIES: Dict[str, Callable[[SolverConfig], object]] = {
    "cbc": _build_cbc_solver,
    "highs": _build_highs_solver,
}


def build_solver(config: SolverConfig):
    factory = SOLVER_FACTORIES.get(config.solver)
    if factory is None:
        raise ConfigurationError(
            f"Unknown solver {config.solver!r}, expected one of {sorted(SOLVER_FACTORIES)}"
        )
    solver = factory(config)
    if not solver.available():
        raise ConfigurationError(f"Solver {config.solver!r} is not available on this machine")
    return solver


# ============================================================
# STATUS MAPPING
# ============================================================

def map_status(status: int, sol_status: int, limit_reached: bool) -> SolverStatus:
    """
    Map pulp's (status, sol_status) pair onto SolverStatus.

    An optimal status whose solution is only integer-feasible means the time
    limit stopped the search with an incumbent. A not-solved status counts as
    a time limit only when the solve actually ran for the configured limit.
    """
    if status == pulp.constants.LpStatusOptimal:
        if sol_status == pulp.constants.LpSolutionIntegerFeasible:
            return SolverStatus.TIME_LIMIT
        return SolverStatus.OPTIMAL
    if status == pulp.constants.LpStatusInfeasible:
        return SolverStatus.INFEASIBLE
    if status == pulp.constants.LpStatusNotSolved and limit_reached:
        return SolverStatus.TIME_LIMIT
    return SolverStatus.OTHER


def solve(problem: pulp.LpProblem, config: Optional[SolverConfig] = None) -> SolveResult:
    """Solve *problem* and return status, objective and variable values."""
    config = config or SolverConfig.from_env()
    solver = build_solver(config)

    logger.info(
        f"Solving {problem.name}: {len(problem.variables())} variables, "
        f"{len(problem.constraints)} constraints with {config.solver}"
    )
    started_at = time_module.perf_counter()
    problem.solve(solver)
    elapsed = max(0.0, time_module.perf_counter() - started_at)

    limit_reached = config.time_limit_seconds is not None and elapsed >= config.time_limit_seconds
    status = map_status(problem.status, problem.sol_status, limit_reached)
    logger.info(
        f"Solver finished with {pulp.LpStatus.get(problem.status, problem.status)} "
        f"-> {status.value} in {elapsed:.2f}s"
    )

    result = SolveResult(status=status, solve_time=round(elapsed, 3), raw_status=problem.status)
    if status is SolverStatus.OPTIMAL:
        result.objective_value = pulp.value(problem.objective)
        result.values = {
            var.name: (var.value() if var.value() is not None else 0.0)
            for var in problem.variables()
        }
    return result

"""
Configuration module for busflow.

Centralizes solver settings, travel-time sources and logging level.
Every value can be overridden through environment variables.
"""

import os
from dataclasses import dataclass
from typing import Any, Dict, Optional


class ConfigurationError(ValueError):
    """Raised for invalid setting/mode combinations or unusable inputs."""


def _env_int(name: str, default: int) -> int:
    """Read an integer from environment, falling back to *default*."""
    raw = os.environ.get(name, "").strip()
    if raw:
        try:
            return int(raw)
        except ValueError:
            pass
    return default


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name, "").strip()
    if raw:
        try:
            return float(raw)
        except ValueError:
            pass
    return default


class Config:
    """Application configuration loaded from environment variables."""

    # Solver Configuration
    SOLVER: str = os.getenv("BUSFLOW_SOLVER", "cbc").strip().lower() or "cbc"
    TIME_LIMIT_SECONDS: int = _env_int("BUSFLOW_TIME_LIMIT", 3600)
    MIP_GAP: float = _env_float("BUSFLOW_MIP_GAP", 0.0)
    THREADS: int = _env_int("BUSFLOW_THREADS", 1)
    SOLVER_MSG: bool = os.getenv("BUSFLOW_SOLVER_MSG", "false").lower() == "true"
    CBC_PATH: str = os.getenv("BUSFLOW_CBC_PATH", "").strip()

    # Travel Time Configuration
    AVERAGE_SPEED_KMH: float = _env_float("BUSFLOW_AVERAGE_SPEED_KMH", 30.0)
    OSRM_TABLE_URL: str = os.getenv(
        "BUSFLOW_OSRM_TABLE_URL",
        "https://router.project-osrm.org/table/v1/driving"
    )
    OSRM_TIMEOUT: int = _env_int("BUSFLOW_OSRM_TIMEOUT", 10)

    # Logging
    LOG_LEVEL: str = os.getenv("BUSFLOW_LOG_LEVEL", "INFO").upper()

    @classmethod
    def get_config_dict(cls) -> dict:
        """Return configuration as dictionary (for debugging)."""
        return {
            "SOLVER": cls.SOLVER,
            "TIME_LIMIT_SECONDS": cls.TIME_LIMIT_SECONDS,
            "MIP_GAP": cls.MIP_GAP,
            "THREADS": cls.THREADS,
            "SOLVER_MSG": cls.SOLVER_MSG,
            "CBC_PATH": cls.CBC_PATH or None,
            "AVERAGE_SPEED_KMH": cls.AVERAGE_SPEED_KMH,
            "OSRM_TABLE_URL": cls.OSRM_TABLE_URL,
            "LOG_LEVEL": cls.LOG_LEVEL,
        }


@dataclass
class SolverConfig:
    """Explicit solver settings passed to the solve service."""
    solver: str = "cbc"
    time_limit_seconds: Optional[int] = None
    mip_gap: Optional[float] = None
    threads: Optional[int] = None
    msg: bool = False
    cbc_path: Optional[str] = None

    @classmethod
    def from_env(cls) -> "SolverConfig":
        return cls(
            solver=Config.SOLVER,
            time_limit_seconds=Config.TIME_LIMIT_SECONDS or None,
            mip_gap=Config.MIP_GAP or None,
            threads=Config.THREADS or None,
            msg=Config.SOLVER_MSG,
            cbc_path=Config.CBC_PATH or None,
        )

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "SolverConfig":
        if not isinstance(data, dict):
            return cls()
        time_limit = data.get("time_limit_seconds")
        mip_gap = data.get("mip_gap")
        threads = data.get("threads")
        return cls(
            solver=str(data.get("solver", "cbc")).strip().lower(),
            time_limit_seconds=max(1, int(time_limit)) if time_limit else None,
            mip_gap=float(mip_gap) if mip_gap is not None else None,
            threads=max(1, int(threads)) if threads else None,
            msg=bool(data.get("msg", False)),
            cbc_path=data.get("cbc_path") or None,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "solver": self.solver,
            "time_limit_seconds": self.time_limit_seconds,
            "mip_gap": self.mip_gap,
            "threads": self.threads,
            "msg": self.msg,
            "cbc_path": self.cbc_path,
        }


# Global configuration instance
config = Config()

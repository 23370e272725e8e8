"""Engine settings loaded from the environment.

Environment variables:
- STACKCRAFT_HOME: Base directory for state, logs and audit (default: ~/.stackcraft)
- STACKCRAFT_LOCK_TIMEOUT: Seconds to wait for the state lock (default: 30)
- STACKCRAFT_CONCURRENCY: Max provider operations in flight (default: 4)
- STACKCRAFT_MAX_ATTEMPTS: Attempts per provider call, first included (default: 4)
- STACKCRAFT_BACKOFF_MIN / STACKCRAFT_BACKOFF_MAX: Retry backoff bounds in seconds
- STACKCRAFT_OPERATION_TIMEOUT: Seconds allowed per provider call (default: 300)
- STACKCRAFT_STATE_GIT: Set to "0" to disable git versioning of state snapshots
"""
import os
from dataclasses import dataclass, field
from pathlib import Path

DEFAULT_HOME = Path.home() / ".stackcraft"


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}")


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")


@dataclass
class EngineSettings:
    """Tunables for a plan/apply run."""
    home: Path = field(default_factory=lambda: DEFAULT_HOME)
    lock_timeout: float = 30.0
    concurrency: int = 4
    max_attempts: int = 4
    backoff_min: float = 1.0
    backoff_max: float = 30.0
    operation_timeout: float = 300.0
    state_git: bool = True

    def __post_init__(self):
        self.home = Path(self.home)
        if self.concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.lock_timeout < 0:
            raise ValueError("lock_timeout cannot be negative")

    @property
    def state_dir(self) -> Path:
        return self.home / "state"

    @classmethod
    def from_env(cls) -> "EngineSettings":
        """Load settings from STACKCRAFT_* environment variables."""
        home = os.environ.get("STACKCRAFT_HOME")
        return cls(
            home=Path(home).expanduser() if home else DEFAULT_HOME,
            lock_timeout=_env_float("STACKCRAFT_LOCK_TIMEOUT", 30.0),
            concurrency=_env_int("STACKCRAFT_CONCURRENCY", 4),
            max_attempts=_env_int("STACKCRAFT_MAX_ATTEMPTS", 4),
            backoff_min=_env_float("STACKCRAFT_BACKOFF_MIN", 1.0),
            backoff_max=_env_float("STACKCRAFT_BACKOFF_MAX", 30.0),
            operation_timeout=_env_float("STACKCRAFT_OPERATION_TIMEOUT", 300.0),
            state_git=os.environ.get("STACKCRAFT_STATE_GIT", "1") != "0",
        )

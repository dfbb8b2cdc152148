# Copyright 2025 Softwell S.r.l.
# Licensed under the Apache License, Version 2.0

"""Executor configuration - merges defaults, config file, environment and arguments."""

from __future__ import annotations

from pathlib import Path
from typing import Any

from genro_toolbox import SmartOptions  # type: ignore[import-untyped]

from .exceptions import ExecutorError

__all__ = ["ConfigError", "ExecutorConfig"]

DEFAULTS = {
    "name": "default",
    "workers": 4,
    "batchsize": 64,
    "maxpending": 256,
    "priorities": 3,
    "pool": "thread",
    "strict": False,
}

POOL_TYPES = ("thread", "priority")


def _executor_opts_spec(
    name: str,
    workers: int,
    batchsize: int,
    maxpending: int,
    priorities: int,
    pool: str,
    strict: bool,
) -> None:
    """Reference function for SmartOptions type extraction (no defaults)."""


class ConfigError(ExecutorError):
    """Invalid executor configuration."""


class ExecutorConfig:
    """Resolved executor settings."""

    __slots__ = ("_opts",)

    def __init__(
        self,
        name: str | None = None,
        workers: int | None = None,
        batch_size: int | None = None,
        max_pending: int | None = None,
        priorities: int | None = None,
        pool: str | None = None,
        strict: bool | None = None,
        config_file: str | Path | None = None,
        argv: list[str] | None = None,
    ) -> None:
        self._opts = self._build_config(
            caller=dict(
                name=name,
                workers=workers,
                batchsize=batch_size,
                maxpending=max_pending,
                priorities=priorities,
                pool=pool,
                strict=strict,
            ),
            config_file=config_file,
            argv=argv or [],
        )
        self._validate()

    def _build_config(
        self,
        caller: dict[str, Any],
        config_file: str | Path | None,
        argv: list[str],
    ) -> SmartOptions:
        """Build executor configuration from multiple sources.

        Config precedence (later overrides earlier):
        1. Built-in DEFAULTS
        2. Config file, ``executor`` section
        3. Environment variables: LOOPEXEC_*
        4. Command line arguments
        5. Explicit constructor parameters
        """
        env_argv_opts = SmartOptions(_executor_opts_spec, env="LOOPEXEC", argv=argv)
        caller_opts = SmartOptions(caller, ignore_none=True)

        file_opts = SmartOptions({})
        if config_file is not None:
            path = Path(config_file)
            if not path.exists():
                raise ConfigError(f"Config file not found: {path}")
            file_opts = SmartOptions(str(path))["executor"] or SmartOptions({})

        return SmartOptions(DEFAULTS) + file_opts + env_argv_opts + caller_opts

    def _validate(self) -> None:
        for key in ("workers", "batchsize", "maxpending", "priorities"):
            value = self._int(key)
            if value < 1:
                raise ConfigError(f"{key} must be >= 1, got {value}")
        if self.pool not in POOL_TYPES:
            raise ConfigError(f"Unknown pool type {self.pool!r}, expected one of {', '.join(POOL_TYPES)}")

    def _int(self, key: str) -> int:
        value = self._opts[key]
        try:
            return int(value)
        except (TypeError, ValueError):
            raise ConfigError(f"{key} must be an integer, got {value!r}") from None

    @property
    def name(self) -> str:
        return str(self._opts["name"])

    @property
    def workers(self) -> int:
        """Worker threads of the pool the executor creates."""
        return self._int("workers")

    @property
    def batch_size(self) -> int:
        """Maximum polls per run_one_batch() call."""
        return self._int("batchsize")

    @property
    def max_pending(self) -> int:
        """Maximum blocking calls handed to the pool at once."""
        return self._int("maxpending")

    @property
    def priorities(self) -> int:
        return self._int("priorities")

    @property
    def pool(self) -> str:
        return str(self._opts["pool"])

    @property
    def strict(self) -> bool:
        """Raise ProtocolViolation instead of logging it."""
        value = self._opts["strict"]
        if isinstance(value, str):
            return value.strip().lower() in ("1", "true", "yes", "on")
        return bool(value)

    def as_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "workers": self.workers,
            "batch_size": self.batch_size,
            "max_pending": self.max_pending,
            "priorities": self.priorities,
            "pool": self.pool,
            "strict": self.strict,
        }

    def __getitem__(self, name: str) -> Any:
        """Proxy bracket access to underlying opts."""
        return self._opts[name]

    def __repr__(self) -> str:
        return f"ExecutorConfig({self.as_dict()})"

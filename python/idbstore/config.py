# -*- encoding: utf-8 -*-
"""
Open options and package settings.

``OpenOptions`` validates the arguments of one open and orders the migration
plan for a version window. ``Settings`` is read from the ``[idbstore]`` table
of a TOML file (``pyscript.toml`` works, the table sits beside PyScript's own
keys):

    [idbstore]
    log_level = "info"
    engine = "memory"
    default_version = 1
"""

from __future__ import annotations

import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Optional, Union

from . import ui_log

ENGINES = ("browser", "memory")


def _check_version(version: Any, what: str = "version") -> int:
    if isinstance(version, bool) or not isinstance(version, int) or version < 1:
        raise ValueError(f"{what} must be a positive integer, got {version!r}")
    return version


@dataclass
class OpenOptions:
    """Arguments of one open: target version, migration plan, blocked handler."""

    version: int = 1
    migration: Optional[dict[int, Callable]] = None
    on_blocked: Optional[Callable[[Any], None]] = None

    def validate(self) -> "OpenOptions":
        """
        Check the options.

        Raises:
            ValueError: version or a migration key is not a positive integer
            TypeError: migration is not a mapping or a procedure is not callable
        """
        _check_version(self.version)
        if self.migration is not None:
            if not isinstance(self.migration, dict):
                raise TypeError("migration must be a dict of {version: procedure}")
            for version, procedure in self.migration.items():
                _check_version(version, "migration key")
                if not callable(procedure):
                    raise TypeError(f"migration procedure for version {version} is not callable")
        if self.on_blocked is not None and not callable(self.on_blocked):
            raise TypeError("on_blocked must be callable")
        return self

    def plan(self, old_version: int, new_version: int) -> list[tuple[int, Callable]]:
        """
        Procedures for versions ``old_version+1 .. new_version``, ascending.

        Versions without a procedure are skipped; every other version runs
        exactly once.
        """
        if not self.migration:
            return []
        return [
            (version, self.migration[version])
            for version in range(old_version + 1, new_version + 1)
            if version in self.migration
        ]


@dataclass
class Settings:
    log_level: str = "warn"
    engine: str = "browser"
    default_version: int = 1
    extra: dict = field(default_factory=dict)

    def __post_init__(self):
        if self.log_level not in ui_log.LEVELS:
            raise ValueError(f"log_level must be one of {ui_log.LEVELS}, got {self.log_level!r}")
        if self.engine not in ENGINES:
            raise ValueError(f"engine must be one of {ENGINES}, got {self.engine!r}")
        _check_version(self.default_version, "default_version")

    @classmethod
    def from_dict(cls, table: dict) -> "Settings":
        known = {"log_level", "engine", "default_version"}
        kwargs = {k: v for k, v in table.items() if k in known}
        extra = {k: v for k, v in table.items() if k not in known}
        return cls(extra=extra, **kwargs)

    def apply(self) -> None:
        """Apply process-wide settings (the log level)."""
        ui_log.set_level(self.log_level)

    def make_engine(self):
        if self.engine == "memory":
            from .memory import MemoryEngine

            return MemoryEngine()
        from .browser import BrowserEngine

        return BrowserEngine()

    def make_orchestrator(self, engine: Any = None):
        """
        Orchestrator over ``engine`` (the configured one when None) whose
        opens target ``default_version`` unless the caller names a version.
        """
        from .orchestrator import Orchestrator

        return Orchestrator(engine if engine is not None else self.make_engine(), self.default_version)


def load_settings(path: Union[str, Path]) -> Settings:
    """
    Read settings from the ``[idbstore]`` table of a TOML file.

    A missing table gives the defaults; a missing file raises FileNotFoundError.
    """
    cfg = tomllib.loads(Path(path).read_text(encoding="utf-8"))
    table = cfg.get("idbstore", {})
    if not isinstance(table, dict):
        raise ValueError("Invalid settings: [idbstore] must be a table")
    return Settings.from_dict(table)

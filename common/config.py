"""
PEScope Configuration Management
=================================

Centralized configuration for the PEScope toolkit using Python
dataclasses and TOML-based persistence.

Architecture follows the Twelve-Factor App methodology for configuration
management (Wiggins, 2011), separating config from code.

References:
    - Wiggins, A. (2011). The Twelve-Factor App. https://12factor.net/
    - PEP 681 -- Data Class Transforms (2022).
    - TOML v1.0.0 Specification. https://toml.io/en/v1.0.0
"""

from __future__ import annotations

import sys
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Any

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib


# ---------------------------------------------------------------------------
# Default configuration file path relative to the PEScope root
# ---------------------------------------------------------------------------
_DEFAULT_CONFIG_PATH: Path = Path(__file__).resolve().parent.parent / "config.toml"


# ========================== Tool-Specific Configs ==========================


@dataclass(frozen=False, slots=True)
class ImportsConfig:
    """Configuration for the import directory parser.

    Every limit here bounds a loop that an adversarial binary could
    otherwise stretch until end-of-file.  Exceeding a limit aborts the
    import parse with ``TABLE_TOO_LARGE`` rather than truncating silently.

    Reference:
        Microsoft. (2024). PE Format -- The .idata Section. Microsoft Learn.
    """

    max_file_size: int = 209_715_200  # 200 MiB
    max_libraries: int = 1000
    max_entries_per_library: int = 10_000
    max_string_length: int = 4096  # MSVC decorated names reach 4096
    name_offset_fallback: bool = True
    case_sensitive_search: bool = True


# =========================== Global Settings ===============================


@dataclass(frozen=False, slots=True)
class GlobalConfig:
    """Global settings shared across all PEScope components.

    Controls logging verbosity and the size of the worker pool used for
    batch analysis.
    """

    log_level: str = "INFO"
    log_file: str = ""
    log_json: bool = False
    max_workers: int = 4
    debug: bool = False
    version: str = "1.0.0"


# =========================== Master Config =================================


@dataclass(frozen=False, slots=True)
class ScopeConfig:
    """Master configuration aggregating global and parser settings.

    Usage:
        >>> config = ScopeConfig.load()                  # from default path
        >>> config = ScopeConfig.load("custom.toml")     # from custom path
        >>> print(config.imports.max_libraries)
        1000
    """

    global_settings: GlobalConfig = field(default_factory=GlobalConfig)
    imports: ImportsConfig = field(default_factory=ImportsConfig)

    # ------------------------------------------------------------------ #
    #  TOML Loading
    # ------------------------------------------------------------------ #

    @classmethod
    def load(cls, path: str | Path | None = None) -> ScopeConfig:
        """Load configuration from a TOML file.

        If *path* is ``None`` the loader looks for ``config.toml`` in the
        project root.  Missing keys gracefully fall back to dataclass
        defaults -- no ``KeyError`` is raised.

        Args:
            path: Filesystem path to a TOML configuration file.
                  Defaults to ``<project_root>/config.toml``.

        Returns:
            A fully-populated :class:`ScopeConfig` instance.

        Raises:
            FileNotFoundError: If the specified path does not exist
                *and* was explicitly provided by the caller.
        """
        config_path = Path(path) if path is not None else _DEFAULT_CONFIG_PATH

        if not config_path.exists():
            if path is not None:
                raise FileNotFoundError(
                    f"Configuration file not found: {config_path}"
                )
            return cls()

        with open(config_path, "rb") as fh:
            raw: dict[str, Any] = tomllib.load(fh)

        return cls(
            global_settings=cls._build_section(GlobalConfig, raw.get("global", {})),
            imports=cls._build_section(ImportsConfig, raw.get("imports", {})),
        )

    # ------------------------------------------------------------------ #
    #  Serialisation helpers
    # ------------------------------------------------------------------ #

    def to_dict(self) -> dict[str, Any]:
        """Serialise the entire configuration tree to a plain dictionary."""
        return asdict(self)

    # ------------------------------------------------------------------ #
    #  Internal helpers
    # ------------------------------------------------------------------ #

    @staticmethod
    def _build_section(cls: type, data: dict[str, Any]) -> Any:
        """Instantiate a dataclass *cls* using only the keys it declares.

        Unknown keys in the TOML source are silently ignored so that
        forward-compatible config files do not break older code.
        """
        valid_keys = {f.name for f in cls.__dataclass_fields__.values()}  # type: ignore[attr-defined]
        filtered = {k: v for k, v in data.items() if k in valid_keys}
        return cls(**filtered)


"""Configuration file loading for hardening and trace parsing options."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, FrozenSet, Optional

import yaml

logger = logging.getLogger("config")

MODES = ("safe", "aggressive")

FALLBACK_DEFAULTS = {
    'mode': 'aggressive',
    'filesystem_exceptions': True,
    'merge_paths_threshold': 8,
    'max_iterations': 16,
    'syscall_error_number': 'EPERM',
    'disabled_directives': [],
    'warning_samples': 5,
    'strace_string_limit': 256,
}


def load_config(config_path: Optional[str]) -> Dict[str, Any]:
    """Load the 'shh' section of a YAML configuration file, filling gaps with defaults."""
    if config_path:
        config_file = Path(config_path)
        if not config_file.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")
    else:
        return dict(FALLBACK_DEFAULTS)

    logger.info("Loading config from: %s", config_file)
    with open(config_file, 'r') as f:
        user_config = yaml.safe_load(f)

    if not isinstance(user_config, dict) or not isinstance(user_config.get('shh'), dict):
        logger.warning("Config file has no 'shh' section. Using defaults.")
        return dict(FALLBACK_DEFAULTS)

    config = dict(user_config['shh'])
    for key in sorted(set(config) - set(FALLBACK_DEFAULTS)):
        logger.warning("Ignoring unknown config key: %s", key)
        del config[key]
    for key, default_val in FALLBACK_DEFAULTS.items():
        # null is meaningful only for syscall_error_number (no companion line)
        if key not in config or (config[key] is None and key != 'syscall_error_number'):
            config[key] = default_val

    return config


@dataclass(frozen=True)
class HardeningOptions:
    mode: str = 'aggressive'
    filesystem_exceptions: bool = True
    merge_paths_threshold: int = 8
    max_iterations: int = 16
    syscall_error_number: Optional[str] = 'EPERM'
    disabled_directives: FrozenSet[str] = frozenset()

    def __post_init__(self):
        if self.mode not in MODES:
            raise ValueError(f"Invalid mode {self.mode!r}, expected one of {', '.join(MODES)}")
        if self.max_iterations < 1:
            raise ValueError("max_iterations must be at least 1")
        object.__setattr__(self, 'disabled_directives', frozenset(self.disabled_directives))

    @property
    def aggressive(self) -> bool:
        return self.mode == 'aggressive'

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "HardeningOptions":
        return cls(
            mode=str(config['mode']),
            filesystem_exceptions=bool(config['filesystem_exceptions']),
            merge_paths_threshold=int(config['merge_paths_threshold']),
            max_iterations=int(config['max_iterations']),
            syscall_error_number=config['syscall_error_number'] or None,
            disabled_directives=config['disabled_directives'] or (),
        )


@dataclass(frozen=True)
class ParserOptions:
    warning_samples: int = 5
    strace_string_limit: int = 256

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "ParserOptions":
        return cls(
            warning_samples=int(config['warning_samples']),
            strace_string_limit=int(config['strace_string_limit']),
        )

"""Global configuration manager using YAML."""
from __future__ import annotations

import copy
import os
from typing import Any, Optional

import yaml

DEFAULT_CONFIG = {
    "app": {"name": "ArcWeldMaster", "version": "0.1.0"},
    "logging": {"level": "INFO"},
    "parallel": {"workers": 1},
    "solver": {
        "thermal": {
            "dt": 0.5,
            "cooling_dt": None,
            "end_time": None,
            "cooling_end_temp": 100.0,
            "theta": 0.5,
            "tolerance": 0.1,
            "max_picard_iterations": 10,
            "relaxation": 1.0,
            "max_timestep_retries": 4,
            "divergence_temperature": 1.0e5,
            "lumped_capacity": True,
            "normalize_source_power": False,
            "max_steps": 100000,
        },
        "metallurgy": {
            "reheat_policy": "error",
            "reheat_tolerance": 10.0,
        },
        "mechanical": {
            "stride": 1,
            "tolerance": 1.0e-5,
            "atol": 1.0e-8,
            "max_newton_iterations": 25,
            "max_load_bisections": 6,
            "reference_temperature": None,
            "rigid_body_constraint": "auto",
        },
        "boundary": {
            "convection_htc": 15.0,
            "ambient_temp": 20.0,
            "emissivity": 0.0,
        },
        "initial_temp": None,
        "clamps": [],
    },
}


class AppConfig:
    def __init__(self, config_path: Optional[str] = None):
        self._data: dict = {}
        self._deep_merge(self._data, copy.deepcopy(DEFAULT_CONFIG))
        if config_path and os.path.exists(config_path):
            with open(config_path, "r", encoding="utf-8") as f:
                file_data = yaml.safe_load(f) or {}
            self._deep_merge(self._data, file_data)

    def _deep_merge(self, base: dict, override: dict) -> None:
        for key, value in override.items():
            if key in base and isinstance(base[key], dict) and isinstance(value, dict):
                self._deep_merge(base[key], value)
            else:
                base[key] = value

    def get(self, dotted_key: str, default: Any = None) -> Any:
        keys = dotted_key.split(".")
        node = self._data
        for k in keys:
            if isinstance(node, dict) and k in node:
                node = node[k]
            else:
                return default
        return node

    def set(self, dotted_key: str, value: Any) -> None:
        keys = dotted_key.split(".")
        node = self._data
        for k in keys[:-1]:
            if k not in node or not isinstance(node[k], dict):
                node[k] = {}
            node = node[k]
        node[keys[-1]] = value

    def save(self, path: str) -> None:
        """Write the merged configuration back out as YAML."""
        with open(path, "w", encoding="utf-8") as f:
            yaml.safe_dump(self._data, f, sort_keys=False)

    @property
    def data(self) -> dict:
        return self._data

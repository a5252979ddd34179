"""YAML config loading for fit runs."""

from __future__ import annotations

import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml

from .schema import AppConfig

ConfigPaths = str | Path | list[str | Path]


def merge_layers(*layers: Mapping[str, Any]) -> dict[str, Any]:
    """Fold config layers left to right; nested sections merge key by key."""
    result: dict[str, Any] = {}
    for layer in layers:
        for key, value in layer.items():
            current = result.get(key)
            if isinstance(current, dict) and isinstance(value, Mapping):
                result[key] = merge_layers(current, value)
            elif isinstance(value, Mapping):
                result[key] = merge_layers(value)
            else:
                result[key] = value
    return result


def _substitute_env(node: Any) -> Any:
    # $VAR / ${VAR}; unset variables stay as written
    if isinstance(node, str):
        return os.path.expandvars(node)
    if isinstance(node, Mapping):
        return {key: _substitute_env(item) for key, item in node.items()}
    if isinstance(node, list):
        return [_substitute_env(item) for item in node]
    return node


def _read_layer(path: str | Path) -> dict[str, Any]:
    text = Path(path).read_text(encoding="utf-8")
    layer = yaml.safe_load(text)
    if layer is None:
        return {}
    if not isinstance(layer, Mapping):
        raise ValueError(f"Config file {path} must hold a mapping at the top level")
    return dict(layer)


def load_config_data(paths: ConfigPaths) -> dict[str, Any]:
    """Read one or more YAML files into a single raw mapping.

    Files later in the list take precedence. Environment variables are
    substituted after merging.
    """
    path_list = [paths] if isinstance(paths, (str, Path)) else list(paths)
    return _substitute_env(merge_layers(*(_read_layer(p) for p in path_list)))


def load_config(
    paths: ConfigPaths,
    overrides: Mapping[str, Any] | None = None,
) -> AppConfig:
    """Load YAML layers, apply command-line overrides, and validate.

    Raises:
        FileNotFoundError: If a config path does not exist.
        pydantic.ValidationError: If the merged mapping is not a valid AppConfig.
    """
    data = load_config_data(paths)
    if overrides:
        data = merge_layers(data, overrides)
    return AppConfig.model_validate(data)

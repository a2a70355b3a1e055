# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""YAML loader for message template catalogs.

Schools extend or override the built-in template catalog with YAML files.
Each file maps template ids to template definitions; a directory of such
files is merged in filename order so later files win.

Example:
    >>> from pathlib import Path
    >>> from src.core.config.yaml_loader import load_yaml, load_yaml_directory
    >>> catalog = load_yaml(Path("config/templates/base.yaml"))
    >>> per_file = load_yaml_directory(Path("config/templates"))
"""

from pathlib import Path
from typing import Any

import yaml


class YAMLLoadError(Exception):
    """Raised when a YAML file cannot be read or parsed."""

    def __init__(self, path: Path, reason: str) -> None:
        self.path = path
        self.reason = reason
        super().__init__(f"Failed to load YAML file '{path}': {reason}")


def load_yaml(path: Path | str) -> dict[str, Any]:
    """Load a single YAML mapping.

    Args:
        path: Path to the YAML file.

    Returns:
        The parsed mapping, or an empty dict for an empty file.

    Raises:
        YAMLLoadError: If the file is missing, unreadable, malformed,
            or its root is not a mapping.
    """
    path = Path(path)
    if not path.is_file():
        raise YAMLLoadError(path, "File does not exist")

    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise YAMLLoadError(path, f"Cannot read file: {e}") from e

    try:
        parsed = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise YAMLLoadError(path, f"Invalid YAML syntax: {e}") from e

    if parsed is None:
        return {}

    if not isinstance(parsed, dict):
        raise YAMLLoadError(
            path, f"YAML root must be a mapping, got {type(parsed).__name__}"
        )

    return parsed


def load_yaml_directory(path: Path | str) -> dict[str, dict[str, Any]]:
    """Load every ``.yaml``/``.yml`` file of a directory keyed by file stem.

    Raises:
        YAMLLoadError: If the path is not a directory or any file fails.
    """
    path = Path(path)
    if not path.is_dir():
        raise YAMLLoadError(path, "Directory does not exist")

    files = sorted([*path.glob("*.yaml"), *path.glob("*.yml")])
    return {yaml_file.stem: load_yaml(yaml_file) for yaml_file in files if yaml_file.is_file()}


def deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge ``override`` into a copy of ``base``.

    Example:
        >>> deep_merge({"a": {"b": 1, "c": 2}}, {"a": {"b": 10}})
        {'a': {'b': 10, 'c': 2}}
    """
    merged = dict(base)
    for key, value in override.items():
        current = merged.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            merged[key] = deep_merge(current, value)
        else:
            merged[key] = value
    return merged

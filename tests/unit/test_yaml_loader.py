# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Unit tests for YAML loader utilities."""

from pathlib import Path

import pytest

from src.core.config.yaml_loader import (
    YAMLLoadError,
    deep_merge,
    load_yaml,
    load_yaml_directory,
)

CLOSURE_TEMPLATE = """\
school_closure:
  category: emergency
  subject: "{school_name} is closed"
  body: "{school_name} will be CLOSED on {date}."
"""


class TestLoadYaml:
    """Tests for load_yaml function."""

    def test_load_template_catalog(self, tmp_path: Path) -> None:
        """Test loading a template catalog file."""
        yaml_file = tmp_path / "templates.yaml"
        yaml_file.write_text(CLOSURE_TEMPLATE)

        result = load_yaml(yaml_file)

        assert result["school_closure"]["category"] == "emergency"
        assert result["school_closure"]["subject"] == "{school_name} is closed"

    def test_comment_only_file_returns_empty_dict(self, tmp_path: Path) -> None:
        yaml_file = tmp_path / "comments.yaml"
        yaml_file.write_text("# no overrides for this school\n")

        assert load_yaml(yaml_file) == {}

    def test_list_root_raises_error(self, tmp_path: Path) -> None:
        yaml_file = tmp_path / "list.yaml"
        yaml_file.write_text("- attendance\n- announcement\n")

        with pytest.raises(YAMLLoadError, match="YAML root must be a mapping"):
            load_yaml(yaml_file)

    def test_missing_file_raises_error(self, tmp_path: Path) -> None:
        with pytest.raises(YAMLLoadError) as exc_info:
            load_yaml(tmp_path / "missing.yaml")

        assert exc_info.value.reason == "File does not exist"

    def test_invalid_syntax_raises_error(self, tmp_path: Path) -> None:
        yaml_file = tmp_path / "invalid.yaml"
        yaml_file.write_text("attendance:\n  subject: [unclosed\n")

        with pytest.raises(YAMLLoadError, match="Invalid YAML syntax"):
            load_yaml(yaml_file)


class TestLoadYamlDirectory:
    """Tests for load_yaml_directory function."""

    def test_files_keyed_by_stem_in_name_order(self, tmp_path: Path) -> None:
        (tmp_path / "20-school.yml").write_text("attendance:\n  subject: Absence\n")
        (tmp_path / "10-base.yaml").write_text(CLOSURE_TEMPLATE)
        (tmp_path / "notes.txt").write_text("ignored")

        result = load_yaml_directory(tmp_path)

        assert list(result) == ["10-base", "20-school"]

    def test_missing_directory_raises_error(self, tmp_path: Path) -> None:
        with pytest.raises(YAMLLoadError, match="Directory does not exist"):
            load_yaml_directory(tmp_path / "templates")


class TestDeepMerge:
    """Tests for deep_merge function."""

    def test_school_override_keeps_base_fields(self) -> None:
        base = {"attendance": {"subject": "Attendance", "body": "Base body"}}
        override = {"attendance": {"subject": "Absence notice"}, "extra": {"body": "x"}}

        merged = deep_merge(base, override)

        assert merged == {
            "attendance": {"subject": "Absence notice", "body": "Base body"},
            "extra": {"body": "x"},
        }
        assert base["attendance"]["subject"] == "Attendance"

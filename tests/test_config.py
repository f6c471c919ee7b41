"""Tests for wheelwright.config."""

from __future__ import annotations

import pytest

from tests._fixtures.project_builder import ProjectBuilder
from wheelwright.config import DEFAULT_SOURCE_DATE_EPOCH, load_config
from wheelwright.errors import ConfigError


def test_missing_pyproject_gives_defaults(project: ProjectBuilder) -> None:
    config = load_config(project.path(), env={})

    assert config.project_dir == project.path().resolve()
    assert config.compression == "deflated"
    assert config.compression_level is None
    assert config.merge_symbols == "exact"
    assert config.fail_fast is False
    assert config.jobs >= 1
    assert config.library_search_paths == ()
    assert config.source_date_epoch == DEFAULT_SOURCE_DATE_EPOCH


def test_tool_table_is_parsed(project: ProjectBuilder) -> None:
    project.pyproject(
        """
        [project]
        name = "demo-ext"
        version = "1.2.0"

        [tool.wheelwright]
        module-name = "demo_ext._native"
        python-source = "python"
        compatibility = "manylinux_2_28"
        compression = "stored"
        jobs = 3
        fail-fast = true
        library-search-paths = ["deps", "vendor/lib"]
        merge-symbols = "subset"
        include = ["extra/*.txt"]
        exclude = ["*.bak"]
        data = "data"
        source-date-epoch = 1700000000
        strip-rpath = true
        abi = "abi3"
        unknown-key = 1
        """
    )
    root = project.path().resolve()

    config = load_config(project.path(), env={})

    assert config.module_name == "demo_ext._native"
    assert config.python_source == root / "python"
    assert config.compatibility == "manylinux_2_28"
    assert config.compression == "stored"
    assert config.jobs == 3
    assert config.fail_fast is True
    assert config.library_search_paths == (root / "deps", root / "vendor" / "lib")
    assert config.merge_symbols == "subset"
    assert config.include == ("extra/*.txt",)
    assert config.exclude == ("*.bak",)
    assert config.data == root / "data"
    assert config.source_date_epoch == 1700000000
    assert config.strip_rpath is True
    assert config.abi == "abi3"


def test_environment_overrides_file(project: ProjectBuilder) -> None:
    project.pyproject(
        """
        [tool.wheelwright]
        source-date-epoch = 1600000000
        macos-deployment-target = "10.13"
        """
    )

    config = load_config(
        project.path(), env={"SOURCE_DATE_EPOCH": "1700000000", "MACOSX_DEPLOYMENT_TARGET": "11.0"}
    )

    assert config.source_date_epoch == 1700000000
    assert config.macos_deployment_target == "11.0"


def test_invalid_source_date_epoch_in_environment(project: ProjectBuilder) -> None:
    with pytest.raises(ConfigError, match="SOURCE_DATE_EPOCH must be an integer"):
        load_config(project.path(), env={"SOURCE_DATE_EPOCH": "yesterday"})


@pytest.mark.parametrize(
    ("line", "message"),
    [
        ("module-name = 1", "must be a string"),
        ("jobs = \"2\"", "must be an integer"),
        ("jobs = true", "must be an integer"),
        ("fail-fast = 1", "must be true or false"),
        ("library-search-paths = \"deps\"", "must be a list of strings"),
        ("exclude = [1]", "must be a list of strings"),
    ],
)
def test_wrong_value_types(project: ProjectBuilder, line: str, message: str) -> None:
    project.pyproject(f"[tool.wheelwright]\n{line}\n")

    with pytest.raises(ConfigError, match=message):
        load_config(project.path(), env={})


@pytest.mark.parametrize(
    ("line", "message"),
    [
        ("compression = \"zstd\"", "Invalid compression"),
        ("compression-level = 12", "Invalid compression-level"),
        ("jobs = 0", "Invalid jobs"),
        ("merge-symbols = \"loose\"", "Invalid merge-symbols"),
        ("source-date-epoch = 0", "predates 1980"),
    ],
)
def test_out_of_range_values(project: ProjectBuilder, line: str, message: str) -> None:
    project.pyproject(f"[tool.wheelwright]\n{line}\n")

    with pytest.raises(ConfigError, match=message):
        load_config(project.path(), env={})


def test_tool_must_be_a_table(project: ProjectBuilder) -> None:
    project.pyproject("[tool]\nwheelwright = 1\n")

    with pytest.raises(ConfigError, match="must be a table"):
        load_config(project.path(), env={})


def test_invalid_toml(project: ProjectBuilder) -> None:
    project.pyproject("[tool.wheelwright\n")

    with pytest.raises(ConfigError, match="not valid TOML"):
        load_config(project.path(), env={})


def test_with_overrides(project: ProjectBuilder) -> None:
    config = load_config(project.path(), env={})

    updated = config.with_overrides(jobs=2, compression=None, merge_symbols="subset")

    assert updated.jobs == 2
    assert updated.compression == "deflated"
    assert updated.merge_symbols == "subset"
    assert config.merge_symbols == "exact"

    with pytest.raises(ConfigError, match="Unknown setting"):
        config.with_overrides(colour="blue")
    with pytest.raises(ConfigError, match="Invalid jobs"):
        config.with_overrides(jobs=0)

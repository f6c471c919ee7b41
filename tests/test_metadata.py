"""Tests for wheelwright.metadata."""

from __future__ import annotations

from pathlib import Path

import pytest

from tests._fixtures.binaries import make_elf, write_binary
from tests._fixtures.project_builder import ProjectBuilder
from wheelwright.binary import inspect_binary
from wheelwright.errors import InvalidNameError, InvalidVersionError, MetadataError, MissingFieldError, NameMismatchError
from wheelwright.metadata import cargo_version_to_pep440, check_module_name, load_metadata


def test_basic_project(project: ProjectBuilder) -> None:
    project.pyproject()

    meta = load_metadata(project.path())

    assert meta.name == "demo-ext"
    assert meta.version == "1.2.0"
    assert meta.module_name == "demo_ext"
    assert meta.module_name_explicit is False
    assert meta.dist_info_dir == "demo_ext-1.2.0.dist-info"
    assert meta.data_dir == "demo_ext-1.2.0.data"
    assert meta.libs_dir == "demo_ext.libs"
    assert meta.to_file_contents() == (
        "Metadata-Version: 2.1\nName: demo-ext\nVersion: 1.2.0\nSummary: Demo extension\n"
    )
    assert meta.entry_points_text() is None


def test_version_is_normalized(project: ProjectBuilder) -> None:
    project.pyproject('[project]\nname = "Demo.Ext"\nversion = "01.02.0-RC1"\n')

    meta = load_metadata(project.path())

    assert meta.version == "1.2.0rc1"
    assert meta.dist_name == "demo_ext"


def test_dependencies_and_extras(project: ProjectBuilder) -> None:
    project.pyproject(
        """
        [project]
        name = "demo-ext"
        version = "1.2.0"
        requires-python = ">=3.9"
        dependencies = ["numpy>=1.22"]
        classifiers = ["Programming Language :: Rust"]
        keywords = ["fast", "native"]

        [project.optional-dependencies]
        test = ["pytest>=7"]

        [project.urls]
        Source = "https://example.invalid/demo"
        """
    )

    text = load_metadata(project.path()).to_file_contents()

    assert "Classifier: Programming Language :: Rust\n" in text
    assert "Requires-Dist: numpy>=1.22\n" in text
    assert 'Requires-Dist: pytest>=7; extra == "test"\n' in text
    assert "Provides-Extra: test\n" in text
    assert "Requires-Python: >=3.9\n" in text
    assert "Keywords: fast,native\n" in text
    assert "Project-URL: Source, https://example.invalid/demo\n" in text


def test_scripts_and_entry_points(project: ProjectBuilder) -> None:
    project.pyproject(
        """
        [project]
        name = "demo-ext"
        version = "1.2.0"

        [project.scripts]
        demo = "demo_ext.cli:main"

        [project.entry-points."demo.plugins"]
        native = "demo_ext:plugin"
        """
    )

    meta = load_metadata(project.path())

    assert meta.entry_points_text() == (
        "[console_scripts]\ndemo=demo_ext.cli:main\n\n[demo.plugins]\nnative=demo_ext:plugin\n"
    )


def test_reserved_entry_point_group_is_rejected(project: ProjectBuilder) -> None:
    project.pyproject(
        """
        [project]
        name = "demo-ext"
        version = "1.2.0"

        [project.entry-points.console_scripts]
        demo = "demo_ext.cli:main"
        """
    )

    with pytest.raises(MetadataError, match="use \\[project.scripts\\]"):
        load_metadata(project.path())


def test_readme_and_license_files(project: ProjectBuilder) -> None:
    project.pyproject('[project]\nname = "demo-ext"\nversion = "1.2.0"\nreadme = "README.md"\nlicense = "MIT"\n')
    project.write({"README.md": "# Demo\n\nNative code.\n", "LICENSE": "MIT License\n", "NOTICE.txt": "notice\n"})

    meta = load_metadata(project.path())
    root = project.path().resolve()

    assert meta.description_content_type == "text/markdown"
    assert meta.license == "MIT"
    assert meta.license_files == (root / "LICENSE", root / "NOTICE.txt")
    assert meta.to_file_contents().endswith("Description-Content-Type: text/markdown\n\n# Demo\n\nNative code.\n")


def test_cargo_fallback(project: ProjectBuilder) -> None:
    project.write(
        {
            "Cargo.toml": """
            [package]
            name = "demo-ext"
            version = "1.0.0-beta.3"
            description = "From Cargo"
            authors = ["Jane Doe <jane@example.invalid>", "Build Bot"]
            repository = "https://example.invalid/demo"

            [lib]
            name = "demo_native"
            """
        }
    )

    meta = load_metadata(project.path())

    assert meta.version == "1.0.0b3"
    assert meta.module_name == "demo_native"
    assert meta.summary == "From Cargo"
    assert meta.author == "Build Bot"
    assert meta.author_email == "Jane Doe <jane@example.invalid>"
    assert meta.project_urls == (("Source Code", "https://example.invalid/demo"),)


def test_dynamic_version_comes_from_cargo(project: ProjectBuilder) -> None:
    project.pyproject('[project]\nname = "demo-ext"\ndynamic = ["version"]\n')
    project.write({"Cargo.toml": '[package]\nname = "demo_ext"\nversion = "2.1.0"\n'})

    meta = load_metadata(project.path())

    assert meta.name == "demo-ext"
    assert meta.version == "2.1.0"


def test_dynamic_field_cannot_also_be_static(project: ProjectBuilder) -> None:
    project.pyproject('[project]\nname = "demo-ext"\nversion = "1.0"\ndynamic = ["version"]\n')
    project.write({"Cargo.toml": '[package]\nname = "demo_ext"\nversion = "2.1.0"\n'})

    with pytest.raises(MetadataError, match="also set statically"):
        load_metadata(project.path())


def test_no_metadata_source(project: ProjectBuilder) -> None:
    with pytest.raises(MissingFieldError, match="no Cargo.toml"):
        load_metadata(project.path())


def test_missing_version(project: ProjectBuilder) -> None:
    project.pyproject('[project]\nname = "demo-ext"\n')

    with pytest.raises(MissingFieldError, match="'version'"):
        load_metadata(project.path())


def test_invalid_version(project: ProjectBuilder) -> None:
    project.pyproject('[project]\nname = "demo-ext"\nversion = "not a version"\n')

    with pytest.raises(InvalidVersionError, match="PEP 440"):
        load_metadata(project.path())


def test_invalid_name(project: ProjectBuilder) -> None:
    project.pyproject('[project]\nname = "-demo-"\nversion = "1.0"\n')

    with pytest.raises(InvalidNameError):
        load_metadata(project.path())


def test_invalid_requires_python(project: ProjectBuilder) -> None:
    project.pyproject('[project]\nname = "demo-ext"\nversion = "1.0"\nrequires-python = ">=three"\n')

    with pytest.raises(MetadataError, match="requires-python"):
        load_metadata(project.path())


def test_module_name_override(project: ProjectBuilder) -> None:
    project.pyproject()

    meta = load_metadata(project.path(), module_name="demo_ext._native")

    assert meta.module_name == "demo_ext._native"
    assert meta.module_leaf == "_native"
    assert meta.module_name_explicit is True

    with pytest.raises(InvalidNameError, match="Invalid module name"):
        load_metadata(project.path(), module_name="demo-ext.native")


def test_check_module_name(project: ProjectBuilder, tmp_path: Path) -> None:
    project.pyproject()
    meta = load_metadata(project.path())
    good = inspect_binary(write_binary(tmp_path / "good.so", make_elf(exports=["PyInit_demo_ext"])))
    other = inspect_binary(write_binary(tmp_path / "other.so", make_elf(exports=["PyInit_other"])))
    plain = inspect_binary(write_binary(tmp_path / "plain.so", make_elf(exports=["helper"])))

    assert check_module_name(meta, good) == "demo_ext"
    with pytest.raises(NameMismatchError, match="defines module other but the package expects 'demo_ext'; set module-name"):
        check_module_name(meta, other)
    with pytest.raises(NameMismatchError, match="exports no PyInit_"):
        check_module_name(meta, plain)


@pytest.mark.parametrize(
    ("cargo", "expected"),
    [
        ("1.2.3", "1.2.3"),
        ("1.0.0-beta.3", "1.0.0b3"),
        ("1.0.0-alpha", "1.0.0a0"),
        ("1.0.0-rc.1", "1.0.0rc1"),
        ("0.1.0-dev.2", "0.1.0.dev2"),
        ("1.0.0+build.5", "1.0.0+build.5"),
        ("1.0.0-nightly", "1.0.0-nightly"),
    ],
)
def test_cargo_version_to_pep440(cargo: str, expected: str) -> None:
    assert cargo_version_to_pep440(cargo) == expected

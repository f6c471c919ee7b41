"""Package metadata from ``pyproject.toml`` (PEP 621) with a ``Cargo.toml`` fallback.

:func:`load_metadata` parses and validates the project once per batch; the
resulting :class:`PackageMetadata` is immutable and shared by every target
build. :func:`check_module_name` ties it to a compiled artifact.
"""

from collections.abc import Mapping
from dataclasses import dataclass, field
import logging
import pathlib
import re
import types

from packaging.markers import InvalidMarker, Marker
from packaging.requirements import InvalidRequirement, Requirement
from packaging.specifiers import InvalidSpecifier, SpecifierSet
from packaging.utils import canonicalize_name
from packaging.version import InvalidVersion, Version

from wheelwright.binary import BinaryArtifact
from wheelwright.config import read_toml
from wheelwright.errors import (
    InvalidNameError,
    InvalidVersionError,
    MetadataError,
    MissingFieldError,
    NameMismatchError,
)


# PEP 508 distribution name.
_NAME_RE: re.Pattern[str] = re.compile(r"^([A-Z0-9]|[A-Z0-9][A-Z0-9._-]*[A-Z0-9])$", re.IGNORECASE)
_MODULE_PART_RE: re.Pattern[str] = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_SEMVER_PRE_RE: re.Pattern[str] = re.compile(r"^(?P<kind>alpha|beta|rc|dev|a|b|c|pre|preview)\.?(?P<num>\d*)$")
_AUTHOR_RE: re.Pattern[str] = re.compile(r"^(?P<name>[^<]*?)\s*<(?P<email>[^>]+)>\s*$")

_README_TYPES: dict[str, str] = {
    ".md": "text/markdown",
    ".markdown": "text/markdown",
    ".rst": "text/x-rst",
    ".txt": "text/plain",
}

_LICENSE_GLOBS: tuple[str, ...] = ("LICEN[CS]E*", "COPYING*", "NOTICE*", "AUTHORS*")

_RESERVED_ENTRY_GROUPS: frozenset[str] = frozenset({"console_scripts", "gui_scripts"})


@dataclass(frozen=True, slots=True)
class PackageMetadata:
    """Normalized project metadata.

    :ivar name: Distribution name as declared.
    :ivar version: Normalized PEP 440 version.
    :ivar module_name: Dotted import path of the extension module.
    :ivar module_name_explicit: ``module_name`` was configured rather than derived.
    :ivar project_dir: Project root.
    """

    name: str
    version: str
    module_name: str
    module_name_explicit: bool = False
    project_dir: pathlib.Path = pathlib.Path(".")
    summary: str | None = None
    description: str | None = None
    description_content_type: str | None = None
    requires_python: str | None = None
    license: str | None = None
    license_files: tuple[pathlib.Path, ...] = ()
    author: str | None = None
    author_email: str | None = None
    maintainer: str | None = None
    maintainer_email: str | None = None
    keywords: tuple[str, ...] = ()
    classifiers: tuple[str, ...] = ()
    home_page: str | None = None
    project_urls: tuple[tuple[str, str], ...] = ()
    requires_dist: tuple[str, ...] = ()
    provides_extra: tuple[str, ...] = ()
    scripts: Mapping[str, str] = field(default_factory=lambda: types.MappingProxyType({}))
    gui_scripts: Mapping[str, str] = field(default_factory=lambda: types.MappingProxyType({}))
    entry_points: Mapping[str, Mapping[str, str]] = field(default_factory=lambda: types.MappingProxyType({}))

    @property
    def dist_name(self) -> str:
        """Distribution name escaped for file names (``my-pkg`` -> ``my_pkg``)."""

        return escape_name(self.name)

    @property
    def dist_version(self) -> str:
        return self.version.replace("-", "_")

    @property
    def dist_info_dir(self) -> str:
        return f"{self.dist_name}-{self.dist_version}.dist-info"

    @property
    def data_dir(self) -> str:
        return f"{self.dist_name}-{self.dist_version}.data"

    @property
    def libs_dir(self) -> str:
        return f"{self.dist_name}.libs"

    @property
    def module_leaf(self) -> str:
        return self.module_name.rsplit(".", 1)[-1]

    def to_file_contents(self) -> str:
        """Render core metadata 2.1 (``METADATA`` / ``PKG-INFO``)."""

        lines: list[str] = [
            "Metadata-Version: 2.1",
            f"Name: {self.name}",
            f"Version: {self.version}",
        ]
        lines.extend(f"Classifier: {c}" for c in self.classifiers)
        lines.extend(f"Requires-Dist: {r}" for r in self.requires_dist)
        lines.extend(f"Provides-Extra: {e}" for e in self.provides_extra)

        optional: list[tuple[str, str | None]] = [
            ("Summary", self.summary),
            ("Keywords", ",".join(self.keywords) if len(self.keywords) > 0 else None),
            ("Home-Page", self.home_page),
            ("Author", self.author),
            ("Author-email", self.author_email),
            ("Maintainer", self.maintainer),
            ("Maintainer-email", self.maintainer_email),
            ("License", self.license),
            ("Requires-Python", self.requires_python),
            ("Description-Content-Type", self.description_content_type),
        ]
        for key, value in optional:
            if value is None:
                continue
            # Continuation lines of multi-line fields are indented.
            lines.append(f"{key}: {value.strip().replace(chr(10), chr(10) + ' ' * 8)}")
        lines.extend(f"Project-URL: {label}, {url}" for label, url in self.project_urls)

        text: str = "\n".join(lines) + "\n"
        if self.description is not None:
            text += "\n" + self.description.rstrip("\n") + "\n"
        return text

    def entry_points_text(self) -> str | None:
        """Render ``entry_points.txt``, or ``None`` when there are no entry points."""

        groups: list[tuple[str, Mapping[str, str]]] = []
        if len(self.scripts) > 0:
            groups.append(("console_scripts", self.scripts))
        if len(self.gui_scripts) > 0:
            groups.append(("gui_scripts", self.gui_scripts))
        for group in sorted(self.entry_points):
            if len(self.entry_points[group]) > 0:
                groups.append((group, self.entry_points[group]))
        if len(groups) == 0:
            return None

        chunks: list[str] = []
        for group, entries in groups:
            body: str = "".join(f"{name}={entries[name]}\n" for name in sorted(entries))
            chunks.append(f"[{group}]\n{body}")
        return "\n".join(chunks)


def escape_name(name: str) -> str:
    return canonicalize_name(name).replace("-", "_")


def cargo_version_to_pep440(version: str) -> str:
    """Convert a Cargo (semver) version to PEP 440.

    ``1.0.0-beta.3`` becomes ``1.0.0b3``, ``-alpha`` becomes ``a``, ``-rc``
    stays ``rc`` and ``-dev.N`` becomes ``.devN``. Build metadata is kept as
    a local version label.

    :param version: Cargo package version.
    :returns: PEP 440 version string (not yet validated).
    """

    core: str = version
    local: str = ""
    if "+" in core:
        core, build = core.split("+", 1)
        local = "+" + re.sub(r"[^A-Za-z0-9.]", ".", build)
    if "-" not in core:
        return core + local

    release, pre = core.split("-", 1)
    m = _SEMVER_PRE_RE.match(pre.lower())
    if m is None:
        # Leave it to the PEP 440 check to reject.
        return version
    kind: str = m.group("kind")
    num: str = m.group("num") or "0"
    if kind == "dev":
        return f"{release}.dev{num}{local}"
    if kind in {"alpha", "a"}:
        return f"{release}a{num}{local}"
    if kind in {"beta", "b"}:
        return f"{release}b{num}{local}"
    return f"{release}rc{num}{local}"


def load_metadata(
    project_dir: pathlib.Path,
    *,
    module_name: str | None = None,
    logger: logging.Logger | None = None,
) -> PackageMetadata:
    """Read and validate the project metadata.

    ``[project]`` in ``pyproject.toml`` is authoritative; ``Cargo.toml``
    supplies fields listed in ``dynamic`` and is the only source when there
    is no ``[project]`` table.

    :param project_dir: Project root.
    :param module_name: Configured ``module-name`` override.
    :param logger: Optional logger.
    :returns: Validated metadata.
    :raises MissingFieldError: If ``name`` or ``version`` cannot be determined.
    :raises InvalidNameError: If the name is not a valid distribution name.
    :raises InvalidVersionError: If the version is not PEP 440 compliant.
    :raises MetadataError: For any other malformed field.
    """

    log: logging.Logger = logger if logger is not None else logging.getLogger("wheelwright")
    root: pathlib.Path = project_dir.resolve()

    project: dict = {}
    pyproject_path: pathlib.Path = root / "pyproject.toml"
    if pyproject_path.is_file() is True:
        doc: dict = read_toml(pyproject_path, error=MetadataError)
        raw_project = doc.get("project", {})
        if isinstance(raw_project, dict) is False:
            raise MetadataError("[project] in pyproject.toml must be a table")
        project = raw_project

    cargo: dict = {}
    cargo_lib: dict = {}
    cargo_path: pathlib.Path = root / "Cargo.toml"
    if cargo_path.is_file() is True:
        cargo_doc: dict = read_toml(cargo_path, error=MetadataError)
        package = cargo_doc.get("package", {})
        lib = cargo_doc.get("lib", {})
        cargo = package if isinstance(package, dict) is True else {}
        cargo_lib = lib if isinstance(lib, dict) is True else {}

    if len(project) == 0 and len(cargo) == 0:
        raise MissingFieldError(f"No [project] table in {pyproject_path} and no Cargo.toml [package] to fall back to")

    dynamic: list[str] = _str_list(project, "dynamic")
    from_cargo: bool = len(project) == 0

    def take(key: str) -> bool:
        """Whether ``key`` is sourced from Cargo.toml."""

        if from_cargo is True:
            return True
        if key in dynamic:
            if key in project:
                raise MetadataError(f"{key!r} is listed in [project] dynamic but also set statically")
            return True
        return False

    name: str | None = _opt_str(cargo if take("name") is True else project, "name")
    if name is None:
        raise MissingFieldError("Missing required metadata field 'name'")
    if _NAME_RE.match(name) is None:
        raise InvalidNameError(f"Invalid distribution name {name!r}")

    raw_version: str | None
    if take("version") is True:
        raw_version = _opt_str(cargo, "version")
        if raw_version is not None:
            raw_version = cargo_version_to_pep440(raw_version)
    else:
        raw_version = _opt_str(project, "version")
    if raw_version is None:
        raise MissingFieldError("Missing required metadata field 'version'")
    try:
        version: str = str(Version(raw_version))
    except InvalidVersion as e:
        raise InvalidVersionError(f"Version {raw_version!r} is not a valid PEP 440 version") from e

    explicit: bool = module_name is not None
    resolved_module: str
    if module_name is not None:
        resolved_module = module_name
    else:
        lib_name: str | None = _opt_str(cargo_lib, "name")
        resolved_module = lib_name if lib_name is not None else escape_name(name)
    for part in resolved_module.split("."):
        if _MODULE_PART_RE.match(part) is None:
            raise InvalidNameError(f"Invalid module name {resolved_module!r}")

    summary: str | None = _opt_str(cargo if take("description") is True else project, "description")

    description: str | None = None
    content_type: str | None = None
    if take("readme") is True:
        readme_file: str | None = _opt_str(cargo, "readme")
        if readme_file is not None:
            description, content_type = _read_readme(root / readme_file)
    elif "readme" in project:
        description, content_type = _readme_from_project(root, project["readme"])

    requires_python: str | None = _opt_str(project, "requires-python")
    if requires_python is not None:
        try:
            SpecifierSet(requires_python)
        except InvalidSpecifier as e:
            raise MetadataError(f"Invalid requires-python {requires_python!r}") from e

    license_text: str | None = None
    license_files: list[pathlib.Path] = []
    if take("license") is True:
        license_text = _opt_str(cargo, "license")
        cargo_license_file: str | None = _opt_str(cargo, "license-file")
        if cargo_license_file is not None:
            license_files.append(root / cargo_license_file)
    elif "license" in project:
        license_text, declared = _license_from_project(root, project["license"])
        license_files.extend(declared)
    for pattern in _LICENSE_GLOBS:
        for candidate in sorted(root.glob(pattern)):
            if candidate.is_file() is True and candidate not in license_files:
                license_files.append(candidate)
    for lf in license_files:
        if lf.is_file() is False:
            raise MetadataError(f"License file {lf} does not exist")

    author: str | None
    author_email: str | None
    if take("authors") is True:
        author, author_email = _people_from_cargo(_str_list(cargo, "authors"))
    else:
        author, author_email = _people_from_project(project.get("authors", []), field_name="authors")
    maintainer, maintainer_email = _people_from_project(project.get("maintainers", []), field_name="maintainers")

    keywords: list[str] = _str_list(cargo if take("keywords") is True else project, "keywords")
    classifiers: list[str] = _str_list(project, "classifiers")

    home_page: str | None = None
    urls: list[tuple[str, str]] = []
    if take("urls") is True:
        home_page = _opt_str(cargo, "homepage")
        repository: str | None = _opt_str(cargo, "repository")
        documentation: str | None = _opt_str(cargo, "documentation")
        if repository is not None:
            urls.append(("Source Code", repository))
        if documentation is not None:
            urls.append(("Documentation", documentation))
    else:
        raw_urls = project.get("urls", {})
        if isinstance(raw_urls, dict) is False:
            raise MetadataError("[project.urls] must be a table")
        for label, url in raw_urls.items():
            if isinstance(url, str) is False:
                raise MetadataError(f"[project.urls] {label} must be a string")
            urls.append((label, url))

    requires_dist: list[str] = [_format_requirement(r, extra=None) for r in _str_list(project, "dependencies")]
    provides_extra: list[str] = []
    optional = project.get("optional-dependencies", {})
    if isinstance(optional, dict) is False:
        raise MetadataError("[project.optional-dependencies] must be a table")
    for extra in sorted(optional):
        reqs = optional[extra]
        if isinstance(reqs, list) is False or any(isinstance(r, str) is False for r in reqs):
            raise MetadataError(f"[project.optional-dependencies] {extra} must be a list of strings")
        if _NAME_RE.match(extra) is None:
            raise MetadataError(f"Invalid extra name {extra!r}")
        provides_extra.append(extra)
        requires_dist.extend(_format_requirement(r, extra=extra) for r in reqs)

    scripts: dict[str, str] = _entry_table(project, "scripts")
    gui_scripts: dict[str, str] = _entry_table(project, "gui-scripts")
    entry_points: dict[str, Mapping[str, str]] = {}
    raw_groups = project.get("entry-points", {})
    if isinstance(raw_groups, dict) is False:
        raise MetadataError("[project.entry-points] must be a table")
    for group in sorted(raw_groups):
        if group in _RESERVED_ENTRY_GROUPS:
            raise MetadataError(
                f"[project.entry-points.{group}] is not allowed; use [project.scripts] or [project.gui-scripts]"
            )
        entry_points[group] = types.MappingProxyType(_entry_table(raw_groups, group, prefix="entry-points."))

    meta: PackageMetadata = PackageMetadata(
        name=name,
        version=version,
        module_name=resolved_module,
        module_name_explicit=explicit,
        project_dir=root,
        summary=summary,
        description=description,
        description_content_type=content_type,
        requires_python=requires_python,
        license=license_text,
        license_files=tuple(license_files),
        author=author,
        author_email=author_email,
        maintainer=maintainer,
        maintainer_email=maintainer_email,
        keywords=tuple(keywords),
        classifiers=tuple(classifiers),
        home_page=home_page,
        project_urls=tuple(urls),
        requires_dist=tuple(requires_dist),
        provides_extra=tuple(provides_extra),
        scripts=types.MappingProxyType(scripts),
        gui_scripts=types.MappingProxyType(gui_scripts),
        entry_points=types.MappingProxyType(entry_points),
    )
    log.info(f"wheelwright: metadata {meta.name} {meta.version} (module {meta.module_name})")
    return meta


def check_module_name(metadata: PackageMetadata, artifact: BinaryArtifact) -> str:
    """Verify that ``artifact`` is the extension module ``metadata`` describes.

    Without a ``module-name`` override the ``PyInit_<name>`` symbol must match
    the normalized distribution name (or the Cargo ``[lib] name``); with an
    override it must match the last component of the override.

    :param metadata: Project metadata.
    :param artifact: Compiled extension module.
    :returns: The module's leaf name.
    :raises NameMismatchError: If no matching entry symbol is exported.
    """

    expected: str = metadata.module_leaf
    if artifact.has_entry_symbol(expected) is True:
        return expected

    found: tuple[str, ...] = artifact.entry_modules()
    if len(found) == 0:
        raise NameMismatchError(f"{artifact.path} exports no PyInit_* symbol; is it a Python extension module?")
    hint: str = "" if metadata.module_name_explicit is True else "; set module-name in [tool.wheelwright] to override"
    raise NameMismatchError(
        f"{artifact.path} defines module {', '.join(found)} but the package expects {expected!r}{hint}"
    )


def _opt_str(table: dict, key: str) -> str | None:
    value = table.get(key)
    if value is None:
        return None
    if isinstance(value, str) is False:
        raise MetadataError(f"Metadata field {key!r} must be a string")
    return value


def _str_list(table: dict, key: str) -> list[str]:
    value = table.get(key, [])
    if isinstance(value, list) is False or any(isinstance(v, str) is False for v in value):
        raise MetadataError(f"Metadata field {key!r} must be a list of strings")
    return list(value)


def _entry_table(table: dict, key: str, *, prefix: str = "") -> dict[str, str]:
    value = table.get(key, {})
    if isinstance(value, dict) is False or any(isinstance(v, str) is False for v in value.values()):
        raise MetadataError(f"[project.{prefix}{key}] must map names to 'module:object' strings")
    return dict(value)


def _read_readme(path: pathlib.Path, content_type: str | None = None) -> tuple[str, str]:
    try:
        text: str = path.read_text(encoding="utf-8")
    except OSError as e:
        raise MetadataError(f"Cannot read readme {path}: {e}") from e
    if content_type is None:
        content_type = _README_TYPES.get(path.suffix.lower(), "text/plain")
    return text, content_type


def _readme_from_project(root: pathlib.Path, readme: object) -> tuple[str, str]:
    if isinstance(readme, str) is True:
        return _read_readme(root / readme)
    if isinstance(readme, dict) is False:
        raise MetadataError("[project] readme must be a path or a table")
    content_type = readme.get("content-type")
    if content_type is not None and isinstance(content_type, str) is False:
        raise MetadataError("readme content-type must be a string")
    if "file" in readme and "text" in readme:
        raise MetadataError("readme must set either 'file' or 'text', not both")
    if isinstance(readme.get("file"), str) is True:
        return _read_readme(root / readme["file"], content_type)
    if isinstance(readme.get("text"), str) is True:
        if content_type is None:
            raise MetadataError("readme with inline 'text' needs a 'content-type'")
        return readme["text"], content_type
    raise MetadataError("readme table must set 'file' or 'text'")


def _license_from_project(root: pathlib.Path, license_value: object) -> tuple[str | None, list[pathlib.Path]]:
    if isinstance(license_value, str) is True:
        return license_value, []
    if isinstance(license_value, dict) is False:
        raise MetadataError("[project] license must be a string or a table")
    if isinstance(license_value.get("text"), str) is True:
        return license_value["text"], []
    if isinstance(license_value.get("file"), str) is True:
        path: pathlib.Path = root / license_value["file"]
        try:
            return path.read_text(encoding="utf-8"), [path]
        except OSError as e:
            raise MetadataError(f"Cannot read license file {path}: {e}") from e
    raise MetadataError("license table must set 'text' or 'file'")


def _people_from_project(people: object, *, field_name: str) -> tuple[str | None, str | None]:
    if isinstance(people, list) is False:
        raise MetadataError(f"[project] {field_name} must be a list of tables")
    names: list[str] = []
    emails: list[str] = []
    for person in people:
        if isinstance(person, dict) is False:
            raise MetadataError(f"[project] {field_name} entries must be tables")
        name = person.get("name")
        email = person.get("email")
        if name is not None and isinstance(name, str) is False:
            raise MetadataError(f"[project] {field_name} name must be a string")
        if email is not None and isinstance(email, str) is False:
            raise MetadataError(f"[project] {field_name} email must be a string")
        if email is not None:
            emails.append(f"{name} <{email}>" if name is not None else email)
        elif name is not None:
            names.append(name)
    return (", ".join(names) or None), (", ".join(emails) or None)


def _people_from_cargo(authors: list[str]) -> tuple[str | None, str | None]:
    people: list[dict[str, str]] = []
    for entry in authors:
        m = _AUTHOR_RE.match(entry)
        if m is None:
            people.append({"name": entry.strip()})
        elif len(m.group("name")) > 0:
            people.append({"name": m.group("name"), "email": m.group("email")})
        else:
            people.append({"email": m.group("email")})
    return _people_from_project(people, field_name="authors")


def _format_requirement(text: str, *, extra: str | None) -> str:
    try:
        req: Requirement = Requirement(text)
    except InvalidRequirement as e:
        raise MetadataError(f"Invalid dependency {text!r}: {e}") from e
    if extra is None:
        return str(req)

    marker: str = f'extra == "{extra}"'
    if req.marker is not None:
        marker = f"({req.marker}) and {marker}"
    try:
        req.marker = Marker(marker)
    except InvalidMarker as e:
        raise MetadataError(f"Invalid marker on {text!r}: {e}") from e
    return str(req)

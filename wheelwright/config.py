"""``[tool.wheelwright]`` configuration.

Settings come from ``pyproject.toml`` and are overridden by the
environment (``SOURCE_DATE_EPOCH``, ``MACOSX_DEPLOYMENT_TARGET``) and then
by command-line flags via :meth:`BuildConfig.with_overrides`.
"""

from collections.abc import Mapping
from dataclasses import dataclass, fields, replace
import logging
import os
import pathlib
import tomllib

from wheelwright.errors import ConfigError, WheelwrightError


COMPRESSION_METHODS: tuple[str, ...] = ("stored", "deflated", "bzip2", "lzma")
MERGE_SYMBOL_MODES: tuple[str, ...] = ("exact", "subset")

# 1980-01-01T00:00:00Z, the earliest timestamp a zip entry can carry.
DEFAULT_SOURCE_DATE_EPOCH: int = 315532800


@dataclass(frozen=True, slots=True)
class BuildConfig:
    """Resolved build settings.

    :ivar project_dir: Directory holding ``pyproject.toml``.
    :ivar module_name: Dotted import path of the extension module.
    :ivar python_source: Directory containing a mixed Python package.
    :ivar compatibility: Requested Linux policy (``manylinux_2_28``, ``linux``...).
    :ivar compression: Wheel compression method name.
    :ivar compression_level: Compression level (0-9) for deflate/bzip2.
    :ivar jobs: Maximum number of targets built concurrently.
    :ivar fail_fast: Cancel pending targets after the first failure.
    :ivar policy: Alternative policy JSON file.
    :ivar library_search_paths: Extra directories searched for dependencies.
    :ivar merge_symbols: Entry-symbol comparison for universal merges.
    :ivar macos_deployment_target: Minimum macOS version.
    :ivar include: Extra glob patterns added to the sdist.
    :ivar exclude: Gitignore-style patterns removed from the sdist.
    :ivar data: Directory shipped as the wheel ``.data`` directory.
    :ivar source_date_epoch: Timestamp stored for every archive entry.
    :ivar strip_rpath: Drop absolute run paths from the extension module.
    :ivar python_version: Target Python ``MAJOR.MINOR`` (defaults to the running one).
    :ivar implementation: Python implementation tag (``cp``, ``pp``).
    :ivar abi: ABI tag, ``abi3`` for the stable ABI.
    """

    project_dir: pathlib.Path
    module_name: str | None = None
    python_source: pathlib.Path | None = None
    compatibility: str | None = None
    compression: str = "deflated"
    compression_level: int | None = None
    jobs: int = 1
    fail_fast: bool = False
    policy: pathlib.Path | None = None
    library_search_paths: tuple[pathlib.Path, ...] = ()
    merge_symbols: str = "exact"
    macos_deployment_target: str | None = None
    include: tuple[str, ...] = ()
    exclude: tuple[str, ...] = ()
    data: pathlib.Path | None = None
    source_date_epoch: int = DEFAULT_SOURCE_DATE_EPOCH
    strip_rpath: bool = False
    python_version: str | None = None
    implementation: str | None = None
    abi: str | None = None

    def with_overrides(self, **overrides: object) -> "BuildConfig":
        """Return a copy with every non-``None`` override applied and validated."""

        known: set[str] = {f.name for f in fields(self)}
        changes: dict[str, object] = {}
        for key, value in overrides.items():
            if key not in known:
                raise ConfigError(f"Unknown setting {key!r}")
            if value is not None:
                changes[key] = value
        updated: BuildConfig = replace(self, **changes)
        _validate(updated)
        return updated


def default_jobs() -> int:
    return min(4, os.cpu_count() or 1)


def read_toml(path: pathlib.Path, *, error: type[WheelwrightError] = ConfigError) -> dict:
    """Parse a TOML file, reporting problems as ``error``.

    :param path: File to read.
    :param error: Exception class raised on failure.
    :returns: Parsed document.
    """

    try:
        with open(path, "rb") as f:
            return tomllib.load(f)
    except OSError as e:
        raise error(f"Cannot read {path}: {e}") from e
    except tomllib.TOMLDecodeError as e:
        raise error(f"{path} is not valid TOML: {e}") from e


def load_config(
    project_dir: pathlib.Path,
    *,
    env: Mapping[str, str] | None = None,
    logger: logging.Logger | None = None,
) -> BuildConfig:
    """Load ``[tool.wheelwright]`` from ``project_dir/pyproject.toml``.

    A missing ``pyproject.toml`` yields the defaults.

    :param project_dir: Project root.
    :param env: Environment for ``SOURCE_DATE_EPOCH``/``MACOSX_DEPLOYMENT_TARGET``.
    :param logger: Optional logger.
    :returns: Validated configuration.
    :raises ConfigError: If a value has the wrong type or is out of range.
    """

    log: logging.Logger = logger if logger is not None else logging.getLogger("wheelwright")
    environ: Mapping[str, str] = env if env is not None else os.environ
    root: pathlib.Path = project_dir.resolve()

    table: dict = {}
    pyproject: pathlib.Path = root / "pyproject.toml"
    if pyproject.is_file() is True:
        doc: dict = read_toml(pyproject)
        tool = doc.get("tool", {})
        if isinstance(tool, dict) is False:
            raise ConfigError("[tool] in pyproject.toml must be a table")
        raw = tool.get("wheelwright", {})
        if isinstance(raw, dict) is False:
            raise ConfigError("[tool.wheelwright] in pyproject.toml must be a table")
        table = raw

    for key in sorted(table):
        if key not in _KEYS:
            log.debug(f"wheelwright: ignoring unknown [tool.wheelwright] key {key!r}")

    def path_value(key: str) -> pathlib.Path | None:
        value: str | None = _get_str(table, key)
        if value is None:
            return None
        return (root / value).resolve()

    search_paths: tuple[pathlib.Path, ...] = tuple(
        (root / p).resolve() for p in _get_str_list(table, "library-search-paths")
    )

    epoch: int = DEFAULT_SOURCE_DATE_EPOCH
    configured_epoch: int | None = _get_int(table, "source-date-epoch")
    if configured_epoch is not None:
        epoch = configured_epoch
    env_epoch: str | None = environ.get("SOURCE_DATE_EPOCH")
    if env_epoch is not None and len(env_epoch.strip()) > 0:
        try:
            epoch = int(env_epoch.strip())
        except ValueError as e:
            raise ConfigError(f"SOURCE_DATE_EPOCH must be an integer, got {env_epoch!r}") from e

    deployment: str | None = _get_str(table, "macos-deployment-target")
    env_deployment: str | None = environ.get("MACOSX_DEPLOYMENT_TARGET")
    if env_deployment is not None and len(env_deployment.strip()) > 0:
        deployment = env_deployment.strip()

    jobs: int | None = _get_int(table, "jobs")
    fail_fast: bool | None = _get_bool(table, "fail-fast")
    strip_rpath: bool | None = _get_bool(table, "strip-rpath")

    config: BuildConfig = BuildConfig(
        project_dir=root,
        module_name=_get_str(table, "module-name"),
        python_source=path_value("python-source"),
        compatibility=_get_str(table, "compatibility"),
        compression=_get_str(table, "compression") or "deflated",
        compression_level=_get_int(table, "compression-level"),
        jobs=jobs if jobs is not None else default_jobs(),
        fail_fast=fail_fast if fail_fast is not None else False,
        policy=path_value("policy"),
        library_search_paths=search_paths,
        merge_symbols=_get_str(table, "merge-symbols") or "exact",
        macos_deployment_target=deployment,
        include=tuple(_get_str_list(table, "include")),
        exclude=tuple(_get_str_list(table, "exclude")),
        data=path_value("data"),
        source_date_epoch=epoch,
        strip_rpath=strip_rpath if strip_rpath is not None else False,
        python_version=_get_str(table, "python-version"),
        implementation=_get_str(table, "implementation"),
        abi=_get_str(table, "abi"),
    )
    _validate(config)
    return config


_KEYS: frozenset[str] = frozenset(
    {
        "module-name",
        "python-source",
        "compatibility",
        "compression",
        "compression-level",
        "jobs",
        "fail-fast",
        "policy",
        "library-search-paths",
        "merge-symbols",
        "macos-deployment-target",
        "include",
        "exclude",
        "data",
        "source-date-epoch",
        "strip-rpath",
        "python-version",
        "implementation",
        "abi",
    }
)


def _validate(config: BuildConfig) -> None:
    if config.compression not in COMPRESSION_METHODS:
        raise ConfigError(
            f"Invalid compression {config.compression!r}; expected one of {', '.join(COMPRESSION_METHODS)}"
        )
    level: int | None = config.compression_level
    if level is not None and (level < 0 or level > 9):
        raise ConfigError(f"Invalid compression-level={level}; expected 0-9.")
    if config.jobs < 1:
        raise ConfigError(f"Invalid jobs={config.jobs}; expected at least 1.")
    if config.merge_symbols not in MERGE_SYMBOL_MODES:
        raise ConfigError(
            f"Invalid merge-symbols {config.merge_symbols!r}; expected one of {', '.join(MERGE_SYMBOL_MODES)}"
        )
    if config.source_date_epoch < DEFAULT_SOURCE_DATE_EPOCH:
        raise ConfigError(
            f"source-date-epoch {config.source_date_epoch} predates 1980-01-01, which zip cannot represent"
        )


def _get_str(table: dict, key: str) -> str | None:
    value = table.get(key)
    if value is None:
        return None
    if isinstance(value, str) is False:
        raise ConfigError(f"[tool.wheelwright] {key} must be a string, got {type(value).__name__}")
    return value


def _get_int(table: dict, key: str) -> int | None:
    value = table.get(key)
    if value is None:
        return None
    if isinstance(value, bool) is True or isinstance(value, int) is False:
        raise ConfigError(f"[tool.wheelwright] {key} must be an integer, got {type(value).__name__}")
    return value


def _get_bool(table: dict, key: str) -> bool | None:
    value = table.get(key)
    if value is None:
        return None
    if isinstance(value, bool) is False:
        raise ConfigError(f"[tool.wheelwright] {key} must be true or false, got {type(value).__name__}")
    return value


def _get_str_list(table: dict, key: str) -> list[str]:
    value = table.get(key)
    if value is None:
        return []
    if isinstance(value, list) is False or any(isinstance(v, str) is False for v in value):
        raise ConfigError(f"[tool.wheelwright] {key} must be a list of strings")
    return list(value)

"""Command line interface for wheelwright."""

import argparse
import logging
import pathlib
import sys

from wheelwright import __version__
from wheelwright.binary import BinaryArtifact, inspect_binary
from wheelwright.build import BatchContext, BuildRequest, BuildResult, build_sdist, build_wheels, prepare_batch
from wheelwright.config import COMPRESSION_METHODS, MERGE_SYMBOL_MODES, BuildConfig, load_config
from wheelwright.errors import ConfigError, PolicyViolationError, WheelwrightError
from wheelwright.policy import PolicySet, load_policies
from wheelwright.repair import AuditReport, DependencyGraph, audit, build_dependency_graph
from wheelwright.search import LibrarySearcher
from wheelwright.target import ResolvedTarget, resolve_target


def _configure_logging(*, verbose: int, quiet: int) -> logging.Logger:
    """Set up the ``wheelwright`` logger from ``-v`` / ``-q`` counts.

    ``-q`` keeps warnings, ``-qq`` only errors; ``-v`` turns on debug
    output, prefixed with the level name.
    """

    level: int = logging.INFO
    fmt: str = "%(message)s"
    if quiet >= 2:
        level = logging.ERROR
    elif quiet == 1:
        level = logging.WARNING
    elif verbose > 0:
        level = logging.DEBUG
        fmt = "%(levelname)s %(message)s"

    logger: logging.Logger = logging.getLogger("wheelwright")
    logger.setLevel(level)
    logger.propagate = False
    logger.handlers.clear()

    handler: logging.Handler = logging.StreamHandler(stream=sys.stderr)
    handler.setFormatter(logging.Formatter(fmt))
    logger.addHandler(handler)
    return logger


def _parse_artifact_spec(spec: str) -> tuple[str, tuple[pathlib.Path, ...]]:
    """Split ``TARGET=PATH[,PATH]``.

    :param spec: Command-line value.
    :returns: Target spec and artifact paths.
    :raises ConfigError: If the value is malformed.
    """

    target, sep, paths = spec.partition("=")
    if len(sep) == 0 or len(target.strip()) == 0 or len(paths.strip()) == 0:
        raise ConfigError(f"Invalid --artifact {spec!r}; expected TARGET=PATH[,PATH]")
    return target.strip(), tuple(pathlib.Path(p) for p in paths.split(",") if len(p) > 0)


def _build_parser() -> argparse.ArgumentParser:
    common: argparse.ArgumentParser = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Enable verbose logging. Pass multiple times for more detail.",
    )
    common.add_argument(
        "-q",
        "--quiet",
        action="count",
        default=0,
        help="Reduce logging. Pass multiple times to suppress more output.",
    )

    parser: argparse.ArgumentParser = argparse.ArgumentParser(
        prog="wheelwright",
        description="Package compiled Python extension modules into portable wheels and sdists.",
    )
    parser.add_argument("--version", action="version", version=f"wheelwright {__version__}")
    subparsers = parser.add_subparsers(dest="command", required=True)

    p_build = subparsers.add_parser("build", parents=[common], help="Build wheels from compiled artifacts.")
    p_build.add_argument(
        "artifacts",
        type=pathlib.Path,
        nargs="*",
        help="Compiled extension module(s) for --target (two thin Mach-O files for universal2).",
    )
    p_build.add_argument(
        "--target",
        type=str,
        default="native",
        help=(
            "Target triple (e.g. x86_64-unknown-linux-gnu), pip platform tag "
            "(e.g. manylinux_2_17_x86_64) or 'native' for the current host."
        ),
    )
    p_build.add_argument(
        "--artifact",
        dest="artifact_specs",
        action="append",
        default=[],
        metavar="TARGET=PATH[,PATH]",
        help="Build one wheel per occurrence; may be repeated.",
    )
    p_build.add_argument("-m", "--project-dir", type=pathlib.Path, default=pathlib.Path("."), help="Project root.")
    p_build.add_argument("-o", "--out", type=pathlib.Path, default=None, help="Output directory (default: <project>/dist).")
    p_build.add_argument("--compatibility", type=str, default=None, help="Linux policy, e.g. manylinux_2_28 or linux.")
    p_build.add_argument("--jobs", "-j", type=int, default=None, help="Maximum number of targets built concurrently.")
    p_build.add_argument(
        "--fail-fast",
        action="store_true",
        default=None,
        help="Cancel targets that have not started after the first failure.",
    )
    p_build.add_argument("--compression", choices=COMPRESSION_METHODS, default=None, help="Wheel compression method.")
    p_build.add_argument("--compression-level", type=int, default=None, help="Compression level (0-9).")
    p_build.add_argument("--module-name", type=str, default=None, help="Dotted import path of the extension module.")
    p_build.add_argument("--policy", type=pathlib.Path, default=None, help="Alternative policy JSON file.")
    p_build.add_argument(
        "--library-search-path",
        dest="library_search_paths",
        type=pathlib.Path,
        action="append",
        default=[],
        help="Extra directory searched for dependencies; may be repeated.",
    )
    p_build.add_argument("--merge-symbols", choices=MERGE_SYMBOL_MODES, default=None, help="universal2 symbol check.")
    p_build.add_argument(
        "--strip-rpath",
        action="store_true",
        default=None,
        help="Drop absolute run paths from the extension module.",
    )
    p_build.add_argument("--python-version", type=str, default=None, help="Target Python 'MAJOR.MINOR'.")
    p_build.add_argument("--implementation", type=str, default=None, help="Implementation tag (cp, pp).")
    p_build.add_argument("--abi", type=str, default=None, help="ABI tag (e.g. cp312, abi3).")

    p_sdist = subparsers.add_parser("sdist", parents=[common], help="Build a source distribution.")
    p_sdist.add_argument("-m", "--project-dir", type=pathlib.Path, default=pathlib.Path("."), help="Project root.")
    p_sdist.add_argument("-o", "--out", type=pathlib.Path, default=None, help="Output directory (default: <project>/dist).")

    p_inspect = subparsers.add_parser("inspect", parents=[common], help="Show what a compiled artifact links against.")
    p_inspect.add_argument("artifact", type=pathlib.Path, help="Shared library or extension module.")
    p_inspect.add_argument(
        "--target",
        type=str,
        default=None,
        help="Also audit the dependency graph against this target's policies.",
    )
    p_inspect.add_argument("--policy", type=pathlib.Path, default=None, help="Alternative policy JSON file.")
    p_inspect.add_argument(
        "--library-search-path",
        dest="library_search_paths",
        type=pathlib.Path,
        action="append",
        default=[],
        help="Extra directory searched for dependencies; may be repeated.",
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    """Run the wheelwright CLI.

    :param argv: Optional argv list (excluding program name).
    :returns: Exit code (0 only when every target passed).
    """

    parser: argparse.ArgumentParser = _build_parser()
    ns = parser.parse_args(argv)
    logger: logging.Logger = _configure_logging(verbose=ns.verbose, quiet=ns.quiet)

    try:
        if ns.command == "build":
            return _cmd_build(ns, logger=logger)
        if ns.command == "sdist":
            return _cmd_sdist(ns, logger=logger)
        if ns.command == "inspect":
            return _cmd_inspect(ns, logger=logger)
    except WheelwrightError as e:
        logger.error(f"wheelwright: error: {e}")
        return 1

    raise AssertionError(f"Unhandled command: {ns.command}")


def _cmd_build(ns: argparse.Namespace, *, logger: logging.Logger) -> int:
    config: BuildConfig = load_config(ns.project_dir, logger=logger).with_overrides(
        compatibility=ns.compatibility,
        jobs=ns.jobs,
        fail_fast=ns.fail_fast,
        compression=ns.compression,
        compression_level=ns.compression_level,
        module_name=ns.module_name,
        policy=ns.policy.resolve() if ns.policy is not None else None,
        merge_symbols=ns.merge_symbols,
        strip_rpath=ns.strip_rpath,
        python_version=ns.python_version,
        implementation=ns.implementation,
        abi=ns.abi,
    )
    if len(ns.library_search_paths) > 0:
        config = config.with_overrides(
            library_search_paths=(*(p.resolve() for p in ns.library_search_paths), *config.library_search_paths)
        )

    out_dir: pathlib.Path = ns.out.resolve() if ns.out is not None else config.project_dir / "dist"
    requests: list[BuildRequest] = []
    for spec in ns.artifact_specs:
        target, paths = _parse_artifact_spec(spec)
        requests.append(BuildRequest(target=target, artifacts=paths, out_dir=out_dir))
    if len(ns.artifacts) > 0:
        requests.append(BuildRequest(target=ns.target, artifacts=tuple(ns.artifacts), out_dir=out_dir))
    if len(requests) == 0:
        raise ConfigError("Nothing to build; pass artifact paths or --artifact TARGET=PATH")

    context: BatchContext = prepare_batch(config, logger=logger)
    results: list[BuildResult] = build_wheels(requests, context=context, logger=logger)

    for r in results:
        if r.cancelled is True:
            logger.error(f"wheelwright: {r.request.target}: CANCELLED")
        elif r.error is not None:
            logger.error(f"wheelwright: {r.request.target}: FAIL")
            if isinstance(r.error, PolicyViolationError) is True:
                for v in r.error.violations:
                    logger.error(f"wheelwright:   {v.describe()}")
        elif r.outcome is not None:
            logger.info(f"wheelwright: {r.request.target}: {r.outcome.value.upper()} {r.archive_path}")
    return 0 if all(r.ok is True for r in results) else 1


def _cmd_sdist(ns: argparse.Namespace, *, logger: logging.Logger) -> int:
    config: BuildConfig = load_config(ns.project_dir, logger=logger)
    out_dir: pathlib.Path = ns.out.resolve() if ns.out is not None else config.project_dir / "dist"
    build_sdist(config, out_dir=out_dir, logger=logger)
    return 0


def _cmd_inspect(ns: argparse.Namespace, *, logger: logging.Logger) -> int:
    artifact: BinaryArtifact = inspect_binary(ns.artifact)
    lines: list[str] = [
        f"path: {artifact.path}",
        f"format: {artifact.format.value}",
        f"architecture: {artifact.architecture}",
        f"install name: {artifact.install_name or '-'}",
        f"entry modules: {', '.join(artifact.entry_modules()) or '-'}",
        f"needed: {', '.join(artifact.needed_libraries) or '-'}",
    ]
    if len(artifact.rpaths) > 0:
        lines.append(f"rpaths: {', '.join(artifact.rpaths)}")
    if len(artifact.runpaths) > 0:
        lines.append(f"runpaths: {', '.join(artifact.runpaths)}")
    if artifact.min_os_version is not None:
        lines.append(f"minimum os: {artifact.min_os_version[0]}.{artifact.min_os_version[1]}")
    for lib in sorted(artifact.version_requirements):
        lines.append(f"versions from {lib}: {', '.join(artifact.version_requirements[lib])}")

    status: int = 0
    if ns.target is not None:
        policies: PolicySet = load_policies(ns.policy.resolve() if ns.policy is not None else None)
        resolved: ResolvedTarget = resolve_target(ns.target, policies=policies)
        searcher: LibrarySearcher = LibrarySearcher(
            target=resolved.target,
            extra_paths=tuple(p.resolve() for p in ns.library_search_paths),
            logger=logger,
        )
        graph: DependencyGraph = build_dependency_graph(artifact, searcher=searcher, logger=logger)
        report: AuditReport = audit(graph, resolved=resolved, policies=policies, logger=logger)
        lines.append(f"audit: {report.outcome.value} ({report.platform_tag})")
        for key in sorted(report.nodes, key=lambda k: (report.nodes[k].depth, report.nodes[k].name)):
            node = report.nodes[key]
            where: str = str(node.path) if node.path is not None else "not found"
            lines.append(f"  {node.name}: {node.classification.value} ({where})")
        for v in report.violations:
            lines.append(f"  violation: {v.describe()}")
        for w in report.warnings:
            lines.append(f"  warning: {w}")
        if len(report.violations) > 0:
            status = 1

    sys.stdout.write("\n".join(lines) + "\n")
    return status

"""Per-target build pipeline and the bounded parallel batch runner."""

from collections.abc import Mapping
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
import logging
import os
import pathlib
import time

from wheelwright import __version__
from wheelwright.archive import (
    ArchiveEntry,
    WheelLayout,
    plan_layout,
    render_tar_gz,
    render_zip,
    sdist_entries,
    sdist_filename,
    wheel_entries,
    wheel_filename,
    wheel_tags,
    write_atomic,
)
from wheelwright.binary import BinaryArtifact, check_architecture, inspect_binary, inspect_bytes
from wheelwright.config import BuildConfig
from wheelwright.errors import InvalidBinaryError, WheelwrightError
from wheelwright.metadata import PackageMetadata, check_module_name, load_metadata
from wheelwright.policy import PolicySet, load_policies
from wheelwright.repair import Outcome, RepairResult, repair
from wheelwright.search import LibrarySearcher
from wheelwright.target import PythonTarget, ResolvedTarget, resolve_python_target, resolve_target
from wheelwright.universal import merge_universal


@dataclass(frozen=True, slots=True)
class BuildRequest:
    """One wheel to build.

    :ivar target: Target triple, pip platform tag or ``native``.
    :ivar artifacts: Compiled extension module; two thin Mach-O files for ``universal2``.
    :ivar out_dir: Directory the wheel is written to.
    """

    target: str
    artifacts: tuple[pathlib.Path, ...]
    out_dir: pathlib.Path


@dataclass(frozen=True, slots=True)
class BuildResult:
    """Outcome of one :class:`BuildRequest`.

    :ivar request: The request.
    :ivar outcome: Repair outcome; ``None`` when the build was cancelled.
    :ivar archive_path: Written wheel, if any.
    :ivar platform_tag: Chosen platform tag, if any.
    :ivar warnings: Non-fatal findings.
    :ivar error: Failure, if any.
    :ivar cancelled: The build never started because of ``fail_fast``.
    """

    request: BuildRequest
    outcome: Outcome | None
    archive_path: pathlib.Path | None = None
    platform_tag: str | None = None
    warnings: tuple[str, ...] = ()
    error: WheelwrightError | None = None
    cancelled: bool = False

    @property
    def ok(self) -> bool:
        return self.cancelled is False and self.error is None and self.outcome != Outcome.FAIL


@dataclass(frozen=True, slots=True)
class BatchContext:
    """State shared read-only by every target of a batch."""

    config: BuildConfig
    metadata: PackageMetadata
    policies: PolicySet
    python: PythonTarget
    env: Mapping[str, str]


def prepare_batch(
    config: BuildConfig,
    *,
    env: Mapping[str, str] | None = None,
    logger: logging.Logger | None = None,
) -> BatchContext:
    """Load policies, metadata and interpreter tags once for a batch.

    :raises WheelwrightError: If any of them is invalid.
    """

    log: logging.Logger = logger if logger is not None else logging.getLogger("wheelwright")
    policies: PolicySet = load_policies(config.policy)
    if log.isEnabledFor(logging.DEBUG) is True:
        log.debug(f"wheelwright: policy data {policies.version} from {policies.source}")
    metadata: PackageMetadata = load_metadata(config.project_dir, module_name=config.module_name, logger=log)
    python: PythonTarget = resolve_python_target(
        python_version_override=config.python_version,
        implementation_override=config.implementation,
        abi_override=config.abi,
    )
    return BatchContext(
        config=config,
        metadata=metadata,
        policies=policies,
        python=python,
        env=env if env is not None else dict(os.environ),
    )


def build_wheels(
    requests: list[BuildRequest],
    *,
    context: BatchContext,
    logger: logging.Logger | None = None,
) -> list[BuildResult]:
    """Build every request, at most ``config.jobs`` at a time.

    Failures become failed results and do not stop sibling builds unless
    ``config.fail_fast`` is set; then builds that have not started yet are
    cancelled and reported as such.

    :param requests: Wheels to build.
    :param context: Shared batch state from :func:`prepare_batch`.
    :param logger: Optional logger.
    :returns: One result per request, in request order.
    """

    log: logging.Logger = logger if logger is not None else logging.getLogger("wheelwright")
    if len(requests) == 0:
        return []

    t0: float = time.perf_counter()
    jobs: int = min(context.config.jobs, len(requests))
    results: list[BuildResult | None] = [None] * len(requests)

    with ThreadPoolExecutor(max_workers=jobs, thread_name_prefix="wheelwright") as pool:
        futures: dict[Future[BuildResult], int] = {
            pool.submit(_run_one, request, context=context, logger=log): i for i, request in enumerate(requests)
        }
        pending: set[Future[BuildResult]] = set(futures)
        stop: bool = False
        while len(pending) > 0:
            done, pending = wait(pending, return_when=FIRST_COMPLETED)
            for fut in done:
                if fut.cancelled() is True:
                    continue
                result: BuildResult = fut.result()
                results[futures[fut]] = result
                if result.ok is False and context.config.fail_fast is True:
                    stop = True
            if stop is True:
                for fut in pending:
                    fut.cancel()

    out: list[BuildResult] = []
    for i, request in enumerate(requests):
        r: BuildResult | None = results[i]
        if r is None:
            r = BuildResult(request=request, outcome=None, cancelled=True)
            log.warning(f"wheelwright: {request.target}: cancelled")
        out.append(r)

    t1: float = time.perf_counter()
    passed: int = sum(1 for r in out if r.ok is True)
    log.info(f"wheelwright: {passed}/{len(out)} targets built in {t1 - t0:.2f}s")
    return out


def _run_one(request: BuildRequest, *, context: BatchContext, logger: logging.Logger) -> BuildResult:
    try:
        return build_wheel(request, context=context, logger=logger)
    except WheelwrightError as e:
        logger.error(f"wheelwright: {request.target}: {e}")
        return BuildResult(request=request, outcome=Outcome.FAIL, error=e)


def build_wheel(
    request: BuildRequest,
    *,
    context: BatchContext,
    logger: logging.Logger | None = None,
) -> BuildResult:
    """Resolve, inspect, repair and package one target.

    :param request: What to build.
    :param context: Shared batch state.
    :param logger: Optional logger.
    :returns: Successful result.
    :raises WheelwrightError: On any failure.
    """

    log: logging.Logger = logger if logger is not None else logging.getLogger("wheelwright")
    config: BuildConfig = context.config
    t0: float = time.perf_counter()

    resolved: ResolvedTarget = resolve_target(
        request.target,
        policies=context.policies,
        compatibility=config.compatibility,
        macos_deployment_target=config.macos_deployment_target,
    )
    log.info(f"wheelwright: {request.target}: candidate tags {', '.join(resolved.candidate_tags)}")

    artifact: BinaryArtifact
    merged: bytes | None
    artifact, merged = _load_artifact(request, resolved=resolved, config=config, logger=log)
    check_architecture(artifact, resolved.target)
    check_module_name(context.metadata, artifact)

    layout: WheelLayout = plan_layout(
        context.metadata,
        resolved=resolved,
        python=context.python,
        python_source=config.python_source,
    )
    searcher: LibrarySearcher = LibrarySearcher(
        target=resolved.target,
        extra_paths=config.library_search_paths,
        env=context.env,
        logger=log,
    )
    repaired: RepairResult = repair(
        artifact,
        resolved=resolved,
        policies=context.policies,
        searcher=searcher,
        libs_dir=context.metadata.libs_dir,
        module_dir=layout.module_dir,
        strip_rpath=config.strip_rpath,
        content=merged,
        logger=log,
    )

    platform_tags: tuple[str, ...] = context.policies.expand_tag(repaired.platform_tag)
    entries: list[ArchiveEntry] = wheel_entries(
        context.metadata,
        layout=layout,
        extension=repaired.root_content,
        bundled=repaired.bundled,
        tags=wheel_tags(context.python, platform_tags),
        is_windows=resolved.target.is_windows,
        python_source=config.python_source,
        data_dir=config.data,
        generator_version=__version__,
    )
    out_path: pathlib.Path = request.out_dir / wheel_filename(context.metadata, context.python, platform_tags)
    write_atomic(
        out_path,
        lambda: render_zip(
            entries,
            compression=config.compression,
            compresslevel=config.compression_level,
            epoch=config.source_date_epoch,
        ),
        logger=log,
    )

    for w in repaired.warnings:
        log.warning(f"wheelwright: {request.target}: {w}")
    t1: float = time.perf_counter()
    log.info(f"wheelwright: wrote {out_path} ({len(entries)} entries) in {t1 - t0:.2f}s")
    return BuildResult(
        request=request,
        outcome=repaired.outcome,
        archive_path=out_path,
        platform_tag=repaired.platform_tag,
        warnings=repaired.warnings,
    )


def _load_artifact(
    request: BuildRequest,
    *,
    resolved: ResolvedTarget,
    config: BuildConfig,
    logger: logging.Logger,
) -> tuple[BinaryArtifact, bytes | None]:
    """Inspect the request's artifacts, merging thin slices for universal2.

    The merged image is inspected in memory under the first input's path so
    that @loader_path references resolve against the build tree.
    """

    if len(request.artifacts) == 0:
        raise InvalidBinaryError(f"No artifact given for {request.target}")

    if resolved.target.is_universal is True and len(request.artifacts) > 1:
        thin: list[BinaryArtifact] = [inspect_binary(p) for p in request.artifacts]
        merged: bytes = merge_universal(thin, mode=config.merge_symbols, logger=logger)
        return inspect_bytes(merged, path=request.artifacts[0]), merged

    if len(request.artifacts) > 1:
        raise InvalidBinaryError(
            f"{request.target} takes one artifact; {len(request.artifacts)} were given "
            "(only universal2 targets merge several)"
        )
    return inspect_binary(request.artifacts[0]), None


def build_sdist(
    config: BuildConfig,
    *,
    out_dir: pathlib.Path,
    metadata: PackageMetadata | None = None,
    logger: logging.Logger | None = None,
) -> pathlib.Path:
    """Write ``<dist>-<version>.tar.gz`` for the project.

    :param config: Build settings.
    :param out_dir: Destination directory (never included in the archive).
    :param metadata: Pre-loaded metadata.
    :param logger: Optional logger.
    :returns: Archive path.
    :raises WheelwrightError: If metadata is invalid or writing fails.
    """

    log: logging.Logger = logger if logger is not None else logging.getLogger("wheelwright")
    t0: float = time.perf_counter()
    meta: PackageMetadata = (
        metadata if metadata is not None else load_metadata(config.project_dir, module_name=config.module_name, logger=log)
    )
    entries: list[ArchiveEntry] = sdist_entries(
        meta,
        include=config.include,
        exclude=config.exclude,
        skip_paths=[out_dir],
        logger=log,
    )
    out_path: pathlib.Path = out_dir / sdist_filename(meta)
    write_atomic(out_path, lambda: render_tar_gz(entries, epoch=config.source_date_epoch), logger=log)
    t1: float = time.perf_counter()
    log.info(f"wheelwright: wrote {out_path} ({len(entries)} files) in {t1 - t0:.2f}s")
    return out_path

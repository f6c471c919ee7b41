"""Dependency graph walking, policy classification and bundling.

The repairer works in three steps:

1. :func:`build_dependency_graph` walks every needed library from the
   extension module, breadth first. Nodes live in an arena keyed by their
   resolved path (``unresolved:<name>`` when the library cannot be found),
   so diamonds are visited once and cycles simply close.
2. :func:`audit` classifies the reachable nodes for each candidate platform
   tag (oldest Linux policy first) and keeps the first tag whose graph has
   no ``DENY`` node.
3. :func:`repair` copies every ``BUNDLE`` node into ``<dist>.libs/`` under a
   content-hashed name and rewrites the references of the extension module
   and of the bundled libraries. All patching happens on in-memory bytes;
   nothing under the build tree is modified.
"""

from collections import deque
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
import enum
import hashlib
import logging
import pathlib
import posixpath
import time

from wheelwright.binary import BinaryArtifact, BinaryFormat, patch_references
from wheelwright.errors import InvalidBinaryError, PolicyViolation, PolicyViolationError
from wheelwright.policy import (
    LinuxPolicy,
    PolicySet,
    format_version_tuple,
    parse_symbol_version,
)
from wheelwright.search import LibrarySearcher
from wheelwright.target import ResolvedTarget, Target, macos_platform_tag


class Classification(enum.Enum):
    ALWAYS_PRESENT = "always-present"
    BUNDLE = "bundle"
    DENY = "deny"


class Outcome(enum.Enum):
    PASS = "pass"
    PASS_WITH_BUNDLED = "pass-with-bundled"
    FAIL = "fail"


@dataclass(slots=True)
class GraphNode:
    """Arena entry for one library.

    :ivar key: Resolved absolute path, or ``unresolved:<name>``.
    :ivar name: Name under which the library was first referenced.
    :ivar path: Resolved path, ``None`` when unresolved.
    :ivar depth: Shortest distance from the extension module.
    :ivar artifact: Parsed library (``None`` when unresolved).
    :ivar referrers: Keys of the nodes that reference this one.
    """

    key: str
    name: str
    path: pathlib.Path | None
    depth: int
    artifact: BinaryArtifact | None
    referrers: list[str] = field(default_factory=list)


@dataclass(frozen=True, slots=True)
class DependencyGraph:
    """Dependency arena rooted at the extension module.

    :ivar root_key: Key of the extension module.
    :ivar nodes: Every node, by key.
    :ivar edges: Referrer key -> ``(declared name, child key)`` in load order.
    """

    root_key: str
    nodes: Mapping[str, GraphNode]
    edges: Mapping[str, tuple[tuple[str, str], ...]]

    @property
    def root(self) -> GraphNode:
        return self.nodes[self.root_key]


@dataclass(frozen=True, slots=True)
class DependencyNode:
    """A reachable dependency and its classification under the chosen policy."""

    name: str
    path: pathlib.Path | None
    classification: Classification
    depth: int
    reason: str | None = None


@dataclass(frozen=True, slots=True)
class AuditReport:
    """Outcome of classifying a graph.

    :ivar outcome: ``PASS``, ``PASS_WITH_BUNDLED`` or ``FAIL``.
    :ivar platform_tag: Chosen tag (for ``FAIL``: the most lenient tag tried).
    :ivar policy: Name of the policy the tag belongs to.
    :ivar nodes: Classified reachable dependencies, by key.
    :ivar violations: Offending dependencies (empty unless ``FAIL``).
    :ivar warnings: Non-fatal findings.
    """

    outcome: Outcome
    platform_tag: str
    policy: str
    nodes: Mapping[str, DependencyNode]
    violations: tuple[PolicyViolation, ...]
    warnings: tuple[str, ...]

    def bundled_keys(self) -> list[str]:
        return [k for k, n in self.nodes.items() if n.classification == Classification.BUNDLE]


@dataclass(frozen=True, slots=True)
class BundledLibrary:
    """One library copied into the wheel.

    :ivar original_name: Name the library was referenced by.
    :ivar source: File it was copied from.
    :ivar archive_path: Destination inside the wheel.
    :ivar content: Patched bytes.
    :ivar sha256: Hex digest of the unpatched bytes.
    """

    original_name: str
    source: pathlib.Path
    archive_path: str
    content: bytes
    sha256: str


@dataclass(frozen=True, slots=True)
class RepairResult:
    """A repaired extension module.

    :ivar outcome: ``PASS`` or ``PASS_WITH_BUNDLED``.
    :ivar platform_tag: Platform tag the wheel may carry.
    :ivar root_content: Extension module bytes (patched when needed).
    :ivar bundled: Bundled libraries, sorted by archive path.
    :ivar report: The audit the repair was based on.
    :ivar warnings: Non-fatal findings to surface to the user.
    """

    outcome: Outcome
    platform_tag: str
    root_content: bytes
    bundled: tuple[BundledLibrary, ...]
    report: AuditReport
    warnings: tuple[str, ...]


@dataclass(frozen=True, slots=True)
class _PolicyView:
    """The parts of a platform policy the classifier needs."""

    name: str
    allow: Callable[[str], bool]
    deny: Callable[[str], bool]
    symbol_versions: Mapping[str, tuple[int, ...]]

    def allows(self, name: str) -> bool:
        return self.allow(name)

    def denies(self, name: str) -> bool:
        return self.deny(name)


def build_dependency_graph(
    root: BinaryArtifact,
    *,
    searcher: LibrarySearcher,
    logger: logging.Logger | None = None,
) -> DependencyGraph:
    """Walk the transitive dependencies of ``root``.

    :param root: Inspected extension module.
    :param searcher: Library searcher for the target.
    :param logger: Optional logger.
    :returns: Dependency arena.
    """

    log: logging.Logger = logger if logger is not None else logging.getLogger("wheelwright")
    root_key: str = str(root.path.resolve())
    nodes: dict[str, GraphNode] = {
        root_key: GraphNode(key=root_key, name=root.path.name, path=root.path.resolve(), depth=0, artifact=root)
    }
    edges: dict[str, list[tuple[str, str]]] = {}

    queue: deque[str] = deque([root_key])
    while len(queue) > 0:
        key: str = queue.popleft()
        node: GraphNode = nodes[key]
        if node.artifact is None:
            continue
        node_edges: list[tuple[str, str]] = []
        for name in node.artifact.needed_libraries:
            path: pathlib.Path | None = searcher.resolve(name, referrer=node.artifact, root=root)
            child_key: str = str(path) if path is not None else f"unresolved:{name}"
            node_edges.append((name, child_key))
            existing: GraphNode | None = nodes.get(child_key)
            if existing is not None:
                # Already seen: diamond or cycle.
                existing.referrers.append(key)
                continue
            artifact: BinaryArtifact | None = searcher.inspect(path) if path is not None else None
            nodes[child_key] = GraphNode(
                key=child_key,
                name=name,
                path=path,
                depth=node.depth + 1,
                artifact=artifact,
                referrers=[key],
            )
            queue.append(child_key)
            if log.isEnabledFor(logging.DEBUG) is True:
                log.debug(f"wheelwright: {node.name} -> {name} ({path if path is not None else 'not found'})")
        edges[key] = node_edges

    return DependencyGraph(
        root_key=root_key,
        nodes=nodes,
        edges={k: tuple(v) for k, v in edges.items()},
    )


def audit(
    graph: DependencyGraph,
    *,
    resolved: ResolvedTarget,
    policies: PolicySet,
    logger: logging.Logger | None = None,
) -> AuditReport:
    """Classify a dependency graph and choose the platform tag.

    Linux candidate tags are tried in order (oldest policy first); the
    first one without ``DENY`` nodes wins. When none passes, the report is
    ``FAIL`` with the violations measured against the last (most lenient)
    candidate.

    :param graph: Dependency arena.
    :param resolved: Resolved target and candidate tags.
    :param policies: Loaded platform policies.
    :param logger: Optional logger.
    :returns: Audit report.
    """

    log: logging.Logger = logger if logger is not None else logging.getLogger("wheelwright")
    target: Target = resolved.target

    if target.is_linux is True:
        last: AuditReport | None = None
        for tag in resolved.candidate_tags:
            linux_policy: LinuxPolicy | None = policies.linux_policy_for_tag(tag)
            if linux_policy is None:
                return AuditReport(
                    outcome=Outcome.PASS,
                    platform_tag=tag,
                    policy="linux",
                    nodes={},
                    violations=(),
                    warnings=(f"{tag} is not accepted by package indexes; dependencies were not audited",),
                )
            view: _PolicyView = _linux_view(linux_policy)
            report: AuditReport = _classify(graph, view, tag=tag, root_archs=())
            if report.outcome != Outcome.FAIL:
                log.info(f"wheelwright: {graph.root.name} satisfies {tag}")
                return report
            if log.isEnabledFor(logging.DEBUG) is True:
                log.debug(f"wheelwright: {tag} rejected ({len(report.violations)} violation(s))")
            last = report
        if last is None:
            raise InvalidBinaryError(f"No candidate platform tags for target {resolved.spec!r}")
        return last

    if target.is_macos is True:
        mac_view: _PolicyView = _PolicyView(
            name="macos",
            allow=policies.macos.allows_library,
            deny=policies.macos.denies_library,
            symbol_versions={},
        )
        root_archs: tuple[str, ...] = graph.root.artifact.architectures if graph.root.artifact is not None else ()
        mac_report: AuditReport = _classify(graph, mac_view, tag=resolved.candidate_tags[0], root_archs=root_archs)
        if mac_report.outcome == Outcome.FAIL:
            return mac_report
        observed: tuple[int, int] | None = _max_min_os(graph, mac_report, arch=target.arch)
        tag_str: str = macos_platform_tag(target, observed=observed)
        return AuditReport(
            outcome=mac_report.outcome,
            platform_tag=tag_str,
            policy=mac_report.policy,
            nodes=mac_report.nodes,
            violations=mac_report.violations,
            warnings=mac_report.warnings,
        )

    win_view: _PolicyView = _PolicyView(
        name="windows",
        allow=policies.windows.allows_library,
        deny=policies.windows.denies_library,
        symbol_versions={},
    )
    return _classify(graph, win_view, tag=resolved.candidate_tags[0], root_archs=())


def repair(
    artifact: BinaryArtifact,
    *,
    resolved: ResolvedTarget,
    policies: PolicySet,
    searcher: LibrarySearcher,
    libs_dir: str,
    module_dir: str,
    strip_rpath: bool = False,
    content: bytes | None = None,
    logger: logging.Logger | None = None,
) -> RepairResult:
    """Audit ``artifact`` and bundle/patch what the chosen policy requires.

    :param artifact: Inspected extension module.
    :param resolved: Resolved target.
    :param policies: Loaded platform policies.
    :param searcher: Library searcher for the target.
    :param libs_dir: Wheel directory for bundled libraries (``<dist>.libs``).
    :param module_dir: Wheel directory that will hold the extension module.
    :param strip_rpath: Drop non-``$ORIGIN`` run paths from the extension module.
    :param content: Extension module bytes when they differ from ``artifact.path``
        (a freshly merged universal binary).
    :param logger: Optional logger.
    :returns: Repaired bytes and bundled libraries.
    :raises PolicyViolationError: If no candidate tag can be satisfied.
    :raises InvalidBinaryError: If a file cannot be read or patched.
    """

    log: logging.Logger = logger if logger is not None else logging.getLogger("wheelwright")
    t0: float = time.perf_counter()

    graph: DependencyGraph = build_dependency_graph(artifact, searcher=searcher, logger=log)
    report: AuditReport = audit(graph, resolved=resolved, policies=policies, logger=log)
    if report.outcome == Outcome.FAIL:
        raise PolicyViolationError(list(report.violations), policy=report.policy)

    root_bytes: bytes = content if content is not None else _read(artifact.path)
    bundle_keys: list[str] = report.bundled_keys()
    warnings: list[str] = list(report.warnings)

    # Content-hash dedupe: one physical copy per distinct file content.
    new_names: dict[str, str] = {}
    originals: dict[str, bytes] = {}
    by_digest: dict[str, str] = {}
    digests: dict[str, str] = {}
    for key in bundle_keys:
        node: GraphNode = graph.nodes[key]
        if node.path is None:
            raise InvalidBinaryError(f"Internal error: bundling unresolved library {node.name}")
        lib_bytes: bytes = _read(node.path)
        digest: str = hashlib.sha256(lib_bytes).hexdigest()
        digests[key] = digest
        if digest in by_digest:
            new_names[key] = new_names[by_digest[digest]]
            continue
        by_digest[digest] = key
        originals[key] = lib_bytes
        new_names[key] = hashed_library_name(pathlib.PurePosixPath(node.name).name, digest)

    fmt: BinaryFormat = artifact.format
    rel_libs: str = posixpath.relpath(libs_dir, module_dir if len(module_dir) > 0 else ".")

    def references(referrer_key: str, *, from_root: bool) -> dict[str, str]:
        mapping: dict[str, str] = {}
        for name, child_key in graph.edges.get(referrer_key, ()):
            if child_key not in new_names:
                continue
            new_name: str = new_names[child_key]
            if fmt == BinaryFormat.MACHO:
                location: str = f"{rel_libs}/{new_name}" if from_root is True else new_name
                mapping[name] = f"@loader_path/{location}"
            else:
                mapping[name] = new_name
        return mapping

    bundled: list[BundledLibrary] = []
    for key, original in originals.items():
        node = graph.nodes[key]
        new_name = new_names[key]
        replace: dict[str, str] = references(key, from_root=False)
        patched: bytes
        if fmt == BinaryFormat.ELF:
            patched = patch_references(original, fmt, replace=replace, install_name=new_name, runpath=("$ORIGIN",))
        elif fmt == BinaryFormat.MACHO:
            patched = patch_references(original, fmt, replace=replace, install_name=f"@rpath/{new_name}")
            if node.artifact is not None and node.artifact.has_code_signature is True:
                warnings.append(f"code signature of {node.name} is invalidated by patching; re-sign before release")
        else:
            patched = patch_references(original, fmt, replace=replace)
        bundled.append(
            BundledLibrary(
                original_name=node.name,
                source=node.path if node.path is not None else pathlib.Path(node.name),
                archive_path=f"{libs_dir}/{new_name}",
                content=patched,
                sha256=digests[key],
            )
        )
        warnings.append(f"bundled {node.name} as {libs_dir}/{new_name}")

    root_replace: dict[str, str] = references(graph.root_key, from_root=True)
    root_content: bytes = root_bytes
    if fmt == BinaryFormat.ELF:
        runpath: tuple[str, ...] | None = _root_runpath(
            artifact, rel_libs=rel_libs, bundling=len(bundled) > 0, strip_rpath=strip_rpath
        )
        if len(root_replace) > 0 or runpath is not None:
            root_content = patch_references(root_bytes, fmt, replace=root_replace, runpath=runpath)
    elif fmt == BinaryFormat.MACHO:
        remove: tuple[str, ...] = ()
        if strip_rpath is True:
            remove = tuple(r for r in artifact.rpaths if r.startswith("/") is True)
        if len(root_replace) > 0 or len(remove) > 0:
            root_content = patch_references(root_bytes, fmt, replace=root_replace, remove_rpaths=remove)
            if artifact.has_code_signature is True:
                warnings.append(
                    f"code signature of {artifact.path.name} is invalidated by patching; re-sign before release"
                )
    elif len(root_replace) > 0:
        root_content = patch_references(root_bytes, fmt, replace=root_replace)

    bundled.sort(key=lambda b: b.archive_path)
    outcome: Outcome = Outcome.PASS_WITH_BUNDLED if len(bundled) > 0 else Outcome.PASS
    t1: float = time.perf_counter()
    log.info(
        f"wheelwright: repaired {artifact.path.name} for {report.platform_tag} "
        f"({len(bundled)} bundled) in {t1 - t0:.2f}s"
    )
    return RepairResult(
        outcome=outcome,
        platform_tag=report.platform_tag,
        root_content=root_content,
        bundled=tuple(bundled),
        report=report,
        warnings=tuple(warnings),
    )


def hashed_library_name(name: str, digest: str) -> str:
    """Insert the first 8 hex digits of ``digest`` after the library stem.

    ``libfoo.so.1`` becomes ``libfoo-0123abcd.so.1`` and ``foo.dll``
    becomes ``foo-0123abcd.dll``.

    :param name: Library file name.
    :param digest: Hex digest of the library content.
    :returns: Collision-free file name.
    """

    short: str = digest[0:8]
    dot: int = name.find(".")
    if dot <= 0:
        return f"{name}-{short}"
    return f"{name[0:dot]}-{short}{name[dot:]}"


def _classify(
    graph: DependencyGraph,
    view: _PolicyView,
    *,
    tag: str,
    root_archs: tuple[str, ...],
) -> AuditReport:
    classified: dict[str, DependencyNode] = {}
    violations: list[PolicyViolation] = []

    queue: deque[str] = deque([graph.root_key])
    expanded: set[str] = {graph.root_key}
    while len(queue) > 0:
        key: str = queue.popleft()
        node: GraphNode = graph.nodes[key]
        if node.artifact is not None:
            violations.extend(_symbol_version_violations(node, view))
        for name, child_key in graph.edges.get(key, ()):
            if child_key == graph.root_key or child_key in classified:
                continue
            child: GraphNode = graph.nodes[child_key]
            cls, reason = _decide(name, child, view, root_archs=root_archs)
            classified[child_key] = DependencyNode(
                name=name,
                path=child.path,
                classification=cls,
                depth=child.depth,
                reason=reason,
            )
            if cls == Classification.DENY:
                violations.append(PolicyViolation(library=name, reason=reason or "denied", referrer=node.name))
            elif cls == Classification.BUNDLE and child_key not in expanded:
                expanded.add(child_key)
                queue.append(child_key)

    outcome: Outcome
    if len(violations) > 0:
        outcome = Outcome.FAIL
    elif any(n.classification == Classification.BUNDLE for n in classified.values()):
        outcome = Outcome.PASS_WITH_BUNDLED
    else:
        outcome = Outcome.PASS
    return AuditReport(
        outcome=outcome,
        platform_tag=tag,
        policy=view.name,
        nodes=classified,
        violations=tuple(violations),
        warnings=(),
    )


def _decide(
    name: str,
    child: GraphNode,
    view: _PolicyView,
    *,
    root_archs: tuple[str, ...],
) -> tuple[Classification, str | None]:
    if view.denies(name) is True:
        return (Classification.DENY, f"linking against {name} is forbidden by {view.name}")
    if view.allows(name) is True:
        return (Classification.ALWAYS_PRESENT, None)
    if child.path is None or child.artifact is None:
        return (Classification.DENY, "library not found in the search path; cannot bundle it")
    missing: list[str] = [a for a in root_archs if a not in child.artifact.architectures]
    if len(missing) > 0:
        return (Classification.DENY, f"bundled copy lacks architecture(s) {', '.join(missing)}")
    return (Classification.BUNDLE, None)


def _symbol_version_violations(node: GraphNode, view: _PolicyView) -> list[PolicyViolation]:
    if node.artifact is None or len(view.symbol_versions) == 0:
        return []
    out: list[PolicyViolation] = []
    for library, versions in node.artifact.version_requirements.items():
        for version_name in versions:
            parsed = parse_symbol_version(version_name)
            if parsed is None:
                continue
            family, version = parsed
            maximum: tuple[int, ...] | None = view.symbol_versions.get(family)
            if maximum is None:
                continue
            allowed: str = f"{family}_{format_version_tuple(maximum)}"
            if version is None:
                out.append(
                    PolicyViolation(
                        library=library,
                        reason="requires a private symbol version",
                        required=version_name,
                        allowed=allowed,
                        referrer=node.name,
                    )
                )
            elif version > maximum:
                out.append(
                    PolicyViolation(
                        library=library,
                        reason="requires a symbol version newer than the policy allows",
                        required=version_name,
                        allowed=allowed,
                        referrer=node.name,
                    )
                )
    return out


def _linux_view(policy: LinuxPolicy) -> _PolicyView:
    return _PolicyView(
        name=policy.name,
        allow=policy.allows_library,
        deny=policy.denies_library,
        symbol_versions=policy.symbol_versions,
    )


def _max_min_os(graph: DependencyGraph, report: AuditReport, *, arch: str) -> tuple[int, int] | None:
    """Highest minimum macOS version among the wheel's images, read per ``arch``."""

    observed: tuple[int, int] | None = None
    keys: list[str] = [graph.root_key, *report.bundled_keys()]
    for key in keys:
        artifact: BinaryArtifact | None = graph.nodes[key].artifact
        if artifact is None:
            continue
        version: tuple[int, int] | None = artifact.min_os_for(arch)
        if version is None:
            continue
        if observed is None or version > observed:
            observed = version
    return observed


def _root_runpath(
    artifact: BinaryArtifact,
    *,
    rel_libs: str,
    bundling: bool,
    strip_rpath: bool,
) -> tuple[str, ...] | None:
    """New RUNPATH for the extension module, or ``None`` to leave it alone."""

    existing: tuple[str, ...] = artifact.runpaths if len(artifact.runpaths) > 0 else artifact.rpaths
    kept: list[str] = []
    for entry in existing:
        if strip_rpath is True and entry.startswith("$ORIGIN") is False and entry.startswith("${ORIGIN}") is False:
            continue
        if entry not in kept:
            kept.append(entry)

    if bundling is False:
        if strip_rpath is True and tuple(kept) != existing:
            return tuple(kept)
        return None

    libs_entry: str = f"$ORIGIN/{rel_libs}"
    if libs_entry in kept:
        kept.remove(libs_entry)
    return (libs_entry, *kept)


def _read(path: pathlib.Path) -> bytes:
    try:
        return path.read_bytes()
    except OSError as e:
        raise InvalidBinaryError(f"Cannot read file: {e}", path=path) from e

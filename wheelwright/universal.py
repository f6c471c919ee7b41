"""Merge single-architecture macOS extension modules into one universal2 binary."""

import logging

from wheelwright import macho
from wheelwright.binary import BinaryArtifact, BinaryFormat
from wheelwright.errors import CrossArchMergeError, InvalidBinaryError


MERGE_MODES: tuple[str, ...] = ("exact", "subset")


def entry_surface(artifact: BinaryArtifact) -> frozenset[str]:
    """Entry symbols (``PyInit_*``) an extension module exports."""

    return frozenset(f"PyInit_{name}" for name in artifact.entry_modules())


def check_symbol_surfaces(artifacts: list[BinaryArtifact], *, mode: str = "exact") -> frozenset[str]:
    """Verify that every slice exposes a compatible entry-symbol surface.

    ``exact`` requires identical sets. ``subset`` accepts surfaces that are
    nested in each other as long as they share at least one symbol.

    :param artifacts: Thin artifacts to be merged.
    :param mode: ``exact`` or ``subset``.
    :returns: Entry symbols common to every slice.
    :raises CrossArchMergeError: If the surfaces disagree.
    """

    if mode not in MERGE_MODES:
        raise CrossArchMergeError(f"Unknown merge-symbols mode {mode!r}; expected one of {', '.join(MERGE_MODES)}")

    surfaces: list[frozenset[str]] = [entry_surface(a) for a in artifacts]
    common: frozenset[str] = frozenset.intersection(*surfaces) if len(surfaces) > 0 else frozenset()

    for artifact, surface in zip(artifacts, surfaces):
        if len(surface) == 0:
            raise CrossArchMergeError(f"{artifact.path} exports no PyInit_* entry symbol")

    mismatch: bool
    if mode == "exact":
        mismatch = any(s != surfaces[0] for s in surfaces)
    else:
        ordered: list[frozenset[str]] = sorted(surfaces, key=len)
        nested: bool = all(ordered[i] <= ordered[i + 1] for i in range(len(ordered) - 1))
        mismatch = len(common) == 0 or nested is False

    if mismatch is True:
        lines: list[str] = ["Entry-symbol surfaces differ between architectures:"]
        for artifact, surface in zip(artifacts, surfaces):
            lines.append(f"- {artifact.architecture} ({artifact.path.name}): {', '.join(sorted(surface)) or '(none)'}")
        raise CrossArchMergeError("\n".join(lines))
    return common


def merge_universal(
    artifacts: list[BinaryArtifact],
    *,
    mode: str = "exact",
    logger: logging.Logger | None = None,
) -> bytes:
    """Merge thin Mach-O extension modules into a fat image.

    Nothing is merged unless every check passes.

    :param artifacts: One thin artifact per architecture.
    :param mode: Entry-symbol comparison mode.
    :param logger: Optional logger.
    :returns: Fat image bytes.
    :raises CrossArchMergeError: If the inputs cannot be merged.
    """

    log: logging.Logger = logger if logger is not None else logging.getLogger("wheelwright")

    if len(artifacts) < 2:
        raise CrossArchMergeError("A universal build needs at least two single-architecture artifacts")
    seen: set[str] = set()
    for a in artifacts:
        if a.format != BinaryFormat.MACHO:
            raise CrossArchMergeError(f"{a.path} is {a.format.value}, only Mach-O images can be merged")
        if a.is_fat is True:
            raise CrossArchMergeError(f"{a.path} is already a fat image")
        if a.architectures[0] in seen:
            raise CrossArchMergeError(f"Two artifacts provide the {a.architectures[0]} slice")
        seen.add(a.architectures[0])

    common: frozenset[str] = check_symbol_surfaces(artifacts, mode=mode)

    images: list[bytes] = []
    for a in artifacts:
        try:
            images.append(a.path.read_bytes())
        except OSError as e:
            raise CrossArchMergeError(f"Cannot read {a.path}: {e}") from e

    try:
        merged: bytes = macho.merge_fat(images)
    except InvalidBinaryError as e:
        raise CrossArchMergeError(str(e)) from e

    log.info(
        f"wheelwright: merged {', '.join(sorted(seen))} into a universal binary "
        f"({len(merged)} bytes, entry symbols: {', '.join(sorted(common))})"
    )
    return merged

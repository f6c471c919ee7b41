"""Platform policies: which native libraries a target system is assumed to provide.

Policy data is versioned external data. A default ``policy.json`` ships with
the package; another file can be injected through ``[tool.wheelwright]
policy``. Loaded policies are frozen and cached for the lifetime of the
process, so concurrent build tasks share one read-only copy.
"""

from collections.abc import Mapping
from dataclasses import dataclass
import fnmatch
import functools
import json
import pathlib
import re
import types

from wheelwright.errors import ConfigError


_DEFAULT_POLICY_PATH: pathlib.Path = pathlib.Path(__file__).with_name("policy.json")

_SYMBOL_VERSION_RE: re.Pattern[str] = re.compile(
    r"^(?P<family>[A-Za-z][A-Za-z0-9_]*?)_(?P<version>\d+(?:\.\d+)*|PRIVATE)$"
)


def parse_version_tuple(text: str) -> tuple[int, ...]:
    """Parse a dotted version such as ``2.17`` into ``(2, 17)``.

    :param text: Dotted numeric version.
    :returns: Version tuple.
    :raises ValueError: If a component is not numeric.
    """

    return tuple(int(part) for part in text.split("."))


def format_version_tuple(version: tuple[int, ...]) -> str:
    return ".".join(str(part) for part in version)


def parse_symbol_version(name: str) -> tuple[str, tuple[int, ...] | None] | None:
    """Split a symbol version name into its family and numeric version.

    ``GLIBC_2.2.5`` becomes ``("GLIBC", (2, 2, 5))``; ``GLIBC_PRIVATE``
    becomes ``("GLIBC", None)``. Names that do not look like versioned
    families return ``None``.

    :param name: Version name from a ``Vernaux`` entry.
    :returns: ``(family, version)`` or ``None``.
    """

    m = _SYMBOL_VERSION_RE.match(name)
    if m is None:
        return None
    version_text: str = m.group("version")
    if version_text == "PRIVATE":
        return (m.group("family"), None)
    return (m.group("family"), parse_version_tuple(version_text))


@dataclass(frozen=True, slots=True)
class LinuxPolicy:
    """One manylinux/musllinux policy.

    :ivar name: Policy name without the arch suffix (``manylinux_2_17``).
    :ivar aliases: Legacy names (``manylinux2014``).
    :ivar libc: ``gnu`` or ``musl``.
    :ivar version: libc version the policy guarantees.
    :ivar archs: Architectures the policy is defined for.
    :ivar libraries: Library name patterns assumed present on every target system.
    :ivar symbol_versions: Maximum allowed version per symbol-version family.
    :ivar deny: Library name patterns that must never be linked.
    """

    name: str
    aliases: tuple[str, ...]
    libc: str
    version: tuple[int, int]
    archs: frozenset[str]
    libraries: tuple[str, ...]
    symbol_versions: Mapping[str, tuple[int, ...]]
    deny: tuple[str, ...]

    def tag(self, arch: str) -> str:
        return f"{self.name}_{arch}"

    def tags(self, arch: str) -> tuple[str, ...]:
        """Return the canonical tag followed by its legacy aliases."""

        return (self.tag(arch), *(f"{alias}_{arch}" for alias in self.aliases))

    def allows_library(self, name: str) -> bool:
        return _matches_any(name, self.libraries)

    def denies_library(self, name: str) -> bool:
        return _matches_any(name, self.deny)


@dataclass(frozen=True, slots=True)
class MacosPolicy:
    """macOS system-library policy.

    :ivar system_prefixes: Install-name prefixes provided by the OS.
    :ivar default_deployment_targets: Default minimum macOS version per arch.
    :ivar deny: Install-name patterns that must never be linked.
    """

    system_prefixes: tuple[str, ...]
    default_deployment_targets: Mapping[str, tuple[int, int]]
    deny: tuple[str, ...]

    def allows_library(self, name: str) -> bool:
        for prefix in self.system_prefixes:
            if name.startswith(prefix) is True:
                return True
        return False

    def denies_library(self, name: str) -> bool:
        return _matches_any(name, self.deny)


@dataclass(frozen=True, slots=True)
class WindowsPolicy:
    """Windows system-DLL policy. Names compare case-insensitively."""

    libraries: tuple[str, ...]
    deny: tuple[str, ...]

    def allows_library(self, name: str) -> bool:
        return _matches_any(name.lower(), self.libraries)

    def denies_library(self, name: str) -> bool:
        return _matches_any(name.lower(), self.deny)


@dataclass(frozen=True, slots=True)
class PolicySet:
    """All platform policies loaded from one policy file.

    :ivar version: Policy data version.
    :ivar source: File the data was loaded from.
    :ivar linux: Linux policies ordered from most to least permissive.
    :ivar macos: macOS policy.
    :ivar windows: Windows policy.
    """

    version: int
    source: str
    linux: tuple[LinuxPolicy, ...]
    macos: MacosPolicy
    windows: WindowsPolicy

    def linux_candidates(self, *, libc: str, arch: str) -> tuple[LinuxPolicy, ...]:
        """Return the Linux policies applicable to a libc flavour and arch, oldest first."""

        return tuple(p for p in self.linux if p.libc == libc and arch in p.archs)

    def linux_policy(self, name: str) -> LinuxPolicy | None:
        """Look up a Linux policy by canonical name or legacy alias."""

        for p in self.linux:
            if p.name == name or name in p.aliases:
                return p
        return None

    def linux_policy_for_tag(self, tag: str) -> LinuxPolicy | None:
        """Look up the Linux policy a full platform tag belongs to."""

        for p in self.linux:
            for arch in p.archs:
                if tag in p.tags(arch):
                    return p
        return None

    def expand_tag(self, tag: str) -> tuple[str, ...]:
        """Return ``tag`` followed by its legacy aliases, if any."""

        p: LinuxPolicy | None = self.linux_policy_for_tag(tag)
        if p is None:
            return (tag,)
        arch: str = tag[len(p.name) + 1 :] if tag.startswith(p.name + "_") is True else ""
        if len(arch) == 0:
            return (tag,)
        return p.tags(arch)


def _matches_any(name: str, patterns: tuple[str, ...]) -> bool:
    for pattern in patterns:
        if fnmatch.fnmatchcase(name, pattern) is True:
            return True
    return False


def load_policies(path: pathlib.Path | None = None) -> PolicySet:
    """Load (once per process) the policy set stored at ``path``.

    :param path: Policy JSON file; ``None`` selects the bundled default.
    :returns: Frozen policy set shared by every caller.
    :raises ConfigError: If the file cannot be read or is malformed.
    """

    resolved: pathlib.Path = _DEFAULT_POLICY_PATH if path is None else path.resolve()
    return _load_policy_file(str(resolved))


@functools.lru_cache(maxsize=None)
def _load_policy_file(path_str: str) -> PolicySet:
    try:
        with open(path_str, "r", encoding="utf-8") as f:
            raw = json.load(f)
    except OSError as e:
        raise ConfigError(f"Cannot read policy file {path_str}: {e}") from e
    except json.JSONDecodeError as e:
        raise ConfigError(f"Policy file {path_str} is not valid JSON: {e}") from e

    try:
        return _policy_set_from_dict(raw, source=path_str)
    except (KeyError, TypeError, ValueError) as e:
        raise ConfigError(f"Malformed policy file {path_str}: {e!r}") from e


_LINUX_NAME_RE: re.Pattern[str] = re.compile(r"^(?P<family>manylinux|musllinux)_(?P<maj>\d+)_(?P<min>\d+)$")


def _policy_set_from_dict(raw: dict, *, source: str) -> PolicySet:
    linux: list[LinuxPolicy] = []
    for item in raw["linux"]:
        name: str = str(item["name"])
        m = _LINUX_NAME_RE.match(name)
        if m is None:
            raise ValueError(f"linux policy name {name!r} is not <family>_<major>_<minor>")
        symbol_versions: dict[str, tuple[int, ...]] = {}
        for family, version in dict(item.get("symbol_versions", {})).items():
            symbol_versions[str(family)] = parse_version_tuple(str(version))
        linux.append(
            LinuxPolicy(
                name=name,
                aliases=tuple(str(a) for a in item.get("aliases", [])),
                libc=str(item["libc"]),
                version=(int(m.group("maj")), int(m.group("min"))),
                archs=frozenset(str(a) for a in item["archs"]),
                libraries=tuple(str(lib) for lib in item["libraries"]),
                symbol_versions=types.MappingProxyType(symbol_versions),
                deny=tuple(str(d) for d in item.get("deny", [])),
            )
        )
    linux.sort(key=lambda p: (p.libc, p.version))

    mac_raw: dict = raw["macos"]
    targets: dict[str, tuple[int, int]] = {}
    for arch, version in dict(mac_raw["default_deployment_targets"]).items():
        parsed: tuple[int, ...] = parse_version_tuple(str(version))
        targets[str(arch)] = (parsed[0], parsed[1] if len(parsed) > 1 else 0)
    macos: MacosPolicy = MacosPolicy(
        system_prefixes=tuple(str(p) for p in mac_raw["system_prefixes"]),
        default_deployment_targets=types.MappingProxyType(targets),
        deny=tuple(str(d) for d in mac_raw.get("deny", [])),
    )

    win_raw: dict = raw["windows"]
    windows: WindowsPolicy = WindowsPolicy(
        libraries=tuple(str(lib).lower() for lib in win_raw["libraries"]),
        deny=tuple(str(d).lower() for d in win_raw.get("deny", [])),
    )

    return PolicySet(
        version=int(raw["version"]),
        source=source,
        linux=tuple(linux),
        macos=macos,
        windows=windows,
    )

"""Target resolution helpers.

This module turns user-supplied target descriptions into a structured
:class:`Target` and the platform tags a wheel built for it may carry:

- It accepts a Rust-like target triple (e.g. ``x86_64-unknown-linux-gnu``),
  a pip ``--platform`` tag (e.g. ``manylinux_2_17_x86_64``) or ``native``.
- It resolves the Python interpreter tags (``cp312``/``abi3``) used for the
  extension file name and the wheel file name.

Everything here is a pure function of its inputs (plus the host, for
``native``).
"""

from dataclasses import dataclass
import platform
import re
import sys
import sysconfig

from wheelwright.errors import UnknownTargetError
from wheelwright.policy import LinuxPolicy, PolicySet, parse_version_tuple


@dataclass(frozen=True, slots=True)
class Target:
    """Build target identity.

    :ivar arch: Normalized architecture (``x86_64``, ``aarch64``, ``i686``,
        ``armv7l``, ``ppc64le``, ``s390x``, ``universal2``...).
    :ivar os: ``linux``, ``macos`` or ``windows``.
    :ivar abi: ``gnu``/``musl`` on Linux, ``msvc``/``gnu`` on Windows, empty on macOS.
    :ivar min_version: Requested minimum compatibility version: the libc
        version of a Linux policy, or the macOS deployment target. ``None``
        lets the repairer choose.
    :ivar policy: Explicitly requested Linux policy name (``manylinux_2_28``),
        ``linux`` for an unaudited tag, or ``None``.
    """

    arch: str
    os: str
    abi: str
    min_version: tuple[int, int] | None = None
    policy: str | None = None

    @property
    def is_linux(self) -> bool:
        return self.os == "linux"

    @property
    def is_macos(self) -> bool:
        return self.os == "macos"

    @property
    def is_windows(self) -> bool:
        return self.os == "windows"

    @property
    def is_universal(self) -> bool:
        return self.arch == "universal2"

    @property
    def tag_arch(self) -> str:
        """Architecture token as it appears in platform tags."""

        if self.is_macos is True:
            if self.arch == "aarch64":
                return "arm64"
            return self.arch
        if self.is_windows is True:
            return _WINDOWS_TAG_ARCH[self.arch]
        return self.arch

    @property
    def universal_archs(self) -> tuple[str, ...]:
        """Architectures a universal target is made of (empty otherwise)."""

        if self.is_universal is True:
            return ("x86_64", "aarch64")
        return ()


@dataclass(frozen=True, slots=True)
class ResolvedTarget:
    """A :class:`Target` plus its candidate platform tags.

    :ivar spec: Original user-supplied target spec.
    :ivar target: Resolved target.
    :ivar candidate_tags: Platform tags in order of preference. For Linux
        this runs from the oldest (most widely installable) policy to the
        newest; the repairer picks the first one the dependency graph
        satisfies.
    """

    spec: str
    target: Target
    candidate_tags: tuple[str, ...]


@dataclass(frozen=True, slots=True)
class PythonTarget:
    """Interpreter tags for the extension module.

    :ivar python_version: Python version as ``MAJOR.MINOR`` (minimum version for ``abi3``).
    :ivar implementation: Implementation tag (e.g. ``cp``).
    :ivar abi: ABI tag (e.g. ``cp312`` or ``abi3``).
    """

    python_version: str
    implementation: str
    abi: str

    @property
    def python_tag(self) -> str:
        maj, min_ = self.python_version.split(".")
        return f"{self.implementation}{maj}{min_}"

    @property
    def is_abi3(self) -> bool:
        return self.abi == "abi3"


_LINUX_ARCHS: dict[str, str] = {
    "x86_64": "x86_64",
    "amd64": "x86_64",
    "aarch64": "aarch64",
    "arm64": "aarch64",
    "armv7": "armv7l",
    "armv7l": "armv7l",
    "i686": "i686",
    "i586": "i686",
    "i386": "i686",
    "x86": "i686",
    "powerpc64le": "ppc64le",
    "ppc64le": "ppc64le",
    "powerpc64": "ppc64",
    "ppc64": "ppc64",
    "s390x": "s390x",
    "riscv64gc": "riscv64",
    "riscv64": "riscv64",
}

_DARWIN_ARCHS: dict[str, str] = {
    "x86_64": "x86_64",
    "aarch64": "aarch64",
    "arm64": "aarch64",
    "universal2": "universal2",
}

_WINDOWS_ARCHS: dict[str, str] = {
    "x86_64": "x86_64",
    "amd64": "x86_64",
    "i686": "i686",
    "i586": "i686",
    "x86": "i686",
    "aarch64": "aarch64",
    "arm64": "aarch64",
}

_WINDOWS_TAG_ARCH: dict[str, str] = {
    "x86_64": "amd64",
    "i686": "32",
    "aarch64": "arm64",
}

_PYVER_RE: re.Pattern[str] = re.compile(r"^(?P<maj>\d+)\.(?P<min>\d+)$")
_LINUX_TAG_RE: re.Pattern[str] = re.compile(
    r"^(?P<family>manylinux|musllinux)_(?P<maj>\d+)_(?P<min>\d+)_(?P<arch>.+)$"
)
_LEGACY_MANYLINUX_RE: re.Pattern[str] = re.compile(r"^(?P<name>manylinux(?:1|2010|2014))_(?P<arch>.+)$")
_MACOS_TAG_RE: re.Pattern[str] = re.compile(r"^macosx_(?P<maj>\d+)_(?P<min>\d+)_(?P<arch>.+)$")


def resolve_target(
    spec: str,
    *,
    policies: PolicySet,
    compatibility: str | None = None,
    macos_deployment_target: str | None = None,
) -> ResolvedTarget:
    """Resolve a target spec into a :class:`ResolvedTarget`.

    :param spec: A target triple, a pip platform tag, or ``native`` for the host.
    :param policies: Loaded platform policies (used for Linux candidate tags).
    :param compatibility: Optional Linux policy request (``manylinux_2_28``,
        ``manylinux2014``, ``musllinux_1_2`` or ``linux``).
    :param macos_deployment_target: Optional ``MAJOR.MINOR`` macOS minimum.
    :returns: Resolved target plus candidate tags.
    :raises UnknownTargetError: If the target string cannot be parsed.
    """

    target: Target
    if spec == "native":
        target = _native_target()
    else:
        normalized: str = _normalize_platform_tag(spec)
        if _looks_like_pip_platform_tag(normalized) is True:
            target = _target_from_platform_tag(normalized, policies=policies)
        else:
            target = _target_from_triple(spec)

    if compatibility is not None:
        if target.is_linux is False:
            raise UnknownTargetError(
                f"--compatibility {compatibility!r} only applies to Linux targets, not {spec!r}."
            )
        target = _apply_linux_compatibility(target, compatibility, policies=policies)

    if target.is_macos is True:
        deployment: str | None = macos_deployment_target
        if deployment is not None:
            target = Target(
                arch=target.arch,
                os=target.os,
                abi=target.abi,
                min_version=_parse_macos_version(deployment),
            )
        elif target.min_version is None:
            default: tuple[int, int] | None = policies.macos.default_deployment_targets.get(target.arch)
            if default is None:
                raise UnknownTargetError(f"No default macOS deployment target for arch {target.arch!r}.")
            target = Target(arch=target.arch, os=target.os, abi=target.abi, min_version=default)

    return ResolvedTarget(
        spec=spec,
        target=target,
        candidate_tags=candidate_platform_tags(target, policies=policies),
    )


def candidate_platform_tags(target: Target, *, policies: PolicySet) -> tuple[str, ...]:
    """Compute the platform tags a target may carry, most specific first.

    :param target: Resolved target.
    :param policies: Loaded platform policies.
    :returns: Candidate tags.
    """

    if target.is_windows is True:
        if target.arch == "i686":
            return ("win32",)
        return (f"win_{target.tag_arch}",)

    if target.is_macos is True:
        if target.min_version is None:
            raise UnknownTargetError("Internal error: macOS target without a deployment target.")
        return (macos_platform_tag(target, observed=None),)

    if target.policy == "linux":
        return (f"linux_{target.arch}",)

    candidates: tuple[LinuxPolicy, ...] = policies.linux_candidates(libc=target.abi, arch=target.arch)
    if target.policy is not None:
        candidates = tuple(p for p in candidates if p.name == target.policy)
    elif target.min_version is not None:
        candidates = tuple(p for p in candidates if p.version >= target.min_version)

    if len(candidates) == 0:
        return (f"linux_{target.arch}",)
    return tuple(p.tag(target.arch) for p in candidates)


def macos_platform_tag(target: Target, *, observed: tuple[int, int] | None) -> str:
    """Build the ``macosx_*`` tag for a target.

    The version is the larger of the target's deployment target and the
    minimum OS version observed in the shipped binaries. For macOS 11 and
    later only the major version is significant, so the minor is zeroed.

    :param target: macOS target.
    :param observed: Highest minimum OS version found in the binaries, read
        from the x86_64 slices for a ``universal2`` target.
    :returns: Platform tag.
    """

    version: tuple[int, int] = target.min_version if target.min_version is not None else (10, 12)
    if observed is not None and observed > version:
        version = observed
    if version[0] >= 11:
        version = (version[0], 0)
    return f"macosx_{version[0]}_{version[1]}_{target.tag_arch}"


def resolve_python_target(
    *,
    python_version_override: str | None,
    implementation_override: str | None,
    abi_override: str | None,
) -> PythonTarget:
    """Resolve interpreter tags for the extension module.

    :param python_version_override: Optional explicit ``MAJOR.MINOR``.
    :param implementation_override: Optional explicit implementation tag.
    :param abi_override: Optional explicit ABI tag (``abi3`` for the stable ABI).
    :returns: Resolved interpreter tags.
    :raises UnknownTargetError: If the tags cannot be resolved.
    """

    python_version: str = _resolve_python_version(python_version_override)
    implementation: str = _resolve_implementation(implementation_override)
    abi: str = _resolve_abi(
        abi_override=abi_override,
        implementation=implementation,
        python_version=python_version,
    )
    return PythonTarget(python_version=python_version, implementation=implementation, abi=abi)


def _resolve_python_version(python_version_override: str | None) -> str:
    """Resolve the target Python version.

    :param python_version_override: Optional explicit override.
    :returns: Version as ``MAJOR.MINOR``.
    :raises UnknownTargetError: If the override is invalid.
    """

    if python_version_override is None:
        return f"{sys.version_info.major}.{sys.version_info.minor}"

    m = _PYVER_RE.match(python_version_override)
    if m is None:
        raise UnknownTargetError(
            f"Invalid --python-version {python_version_override!r}; expected 'MAJOR.MINOR'."
        )
    return f"{int(m.group('maj'))}.{int(m.group('min'))}"


def _resolve_implementation(implementation_override: str | None) -> str:
    """Resolve the implementation tag.

    :param implementation_override: Optional explicit override.
    :returns: Implementation tag (e.g. ``cp``).
    """

    if implementation_override is not None:
        return implementation_override

    impl_name: str = sys.implementation.name
    if impl_name == "cpython":
        return "cp"
    if impl_name == "pypy":
        return "pp"
    if len(impl_name) >= 2:
        return impl_name[0:2]
    return impl_name


def _resolve_abi(*, abi_override: str | None, implementation: str, python_version: str) -> str:
    """Resolve the ABI tag.

    :param abi_override: Optional explicit override.
    :param implementation: Implementation tag (e.g. ``cp``).
    :param python_version: Python version as ``MAJOR.MINOR``.
    :returns: ABI tag.
    :raises UnknownTargetError: If an ABI cannot be inferred.
    """

    if abi_override is not None:
        if abi_override == "abi3" and implementation != "cp":
            raise UnknownTargetError("The stable ABI (abi3) is only defined for CPython.")
        return abi_override

    if implementation != "cp":
        raise UnknownTargetError(
            "Non-CPython targets require an explicit --abi (and usually --implementation)."
        )

    m = _PYVER_RE.match(python_version)
    if m is None:
        raise UnknownTargetError(
            f"Internal error: python_version did not match MAJOR.MINOR: {python_version!r}"
        )
    maj: int = int(m.group("maj"))
    min_: int = int(m.group("min"))
    return f"cp{maj}{min_}"


def _target_from_triple(triple: str) -> Target:
    """Convert a Rust-like target triple into a :class:`Target`.

    :param triple: Target triple such as ``aarch64-unknown-linux-musl``.
    :returns: Target.
    :raises UnknownTargetError: If the triple is not recognized.
    """

    parts: list[str] = triple.split("-")
    if len(parts) < 3:
        raise UnknownTargetError(
            f"Unrecognized target spec {triple!r}. Provide a target triple or pip --platform tag."
        )

    arch: str = parts[0]
    os_part: str = parts[2]
    env_part: str = parts[3] if len(parts) >= 4 else ""

    if os_part == "linux":
        return _linux_target(arch=arch, env_part=env_part, triple=triple)
    if os_part in ("darwin", "macos", "macosx"):
        return _darwin_target(arch=arch, triple=triple)
    if os_part == "windows":
        return _windows_target(arch=arch, env_part=env_part, triple=triple)

    raise UnknownTargetError(f"Unrecognized OS in target triple {triple!r} (os={os_part!r}).")


def _linux_target(*, arch: str, env_part: str, triple: str) -> Target:
    """Map a Rust-like Linux triple into a :class:`Target`.

    :param arch: Arch component (e.g. ``x86_64``).
    :param env_part: Env component (e.g. ``gnu``, ``musl``, ``gnueabihf``).
    :param triple: Full triple, for error messages.
    :returns: Target.
    :raises UnknownTargetError: If the arch or env is not supported.
    """

    norm_arch: str | None = _LINUX_ARCHS.get(arch)
    if norm_arch is None:
        raise UnknownTargetError(f"Unsupported Linux arch in target triple {triple!r}: {arch!r}")

    abi: str
    if env_part.startswith("musl") is True:
        abi = "musl"
    elif env_part == "" or env_part.startswith("gnu") is True:
        abi = "gnu"
    else:
        raise UnknownTargetError(f"Unsupported Linux ABI in target triple {triple!r}: {env_part!r}")
    return Target(arch=norm_arch, os="linux", abi=abi)


def _darwin_target(*, arch: str, triple: str) -> Target:
    """Map a Rust-like Darwin triple into a :class:`Target`.

    :param arch: Arch component.
    :param triple: Full triple, for error messages.
    :returns: Target.
    :raises UnknownTargetError: If the arch is not supported.
    """

    norm_arch: str | None = _DARWIN_ARCHS.get(arch)
    if norm_arch is None:
        raise UnknownTargetError(f"Unsupported Darwin arch in target triple {triple!r}: {arch!r}")
    return Target(arch=norm_arch, os="macos", abi="")


def _windows_target(*, arch: str, env_part: str, triple: str) -> Target:
    """Map a Rust-like Windows triple into a :class:`Target`.

    :param arch: Arch component.
    :param env_part: Toolchain component (``msvc`` or ``gnu``).
    :param triple: Full triple, for error messages.
    :returns: Target.
    :raises UnknownTargetError: If the arch is not supported.
    """

    norm_arch: str | None = _WINDOWS_ARCHS.get(arch)
    if norm_arch is None:
        raise UnknownTargetError(f"Unsupported Windows arch in target triple {triple!r}: {arch!r}")
    abi: str = "gnu" if env_part.startswith("gnu") is True else "msvc"
    return Target(arch=norm_arch, os="windows", abi=abi)


def _target_from_platform_tag(platform_tag: str, *, policies: PolicySet) -> Target:
    """Convert a pip platform tag into a :class:`Target`.

    An explicit ``manylinux``/``musllinux`` tag pins that policy.

    :param platform_tag: Normalized platform tag.
    :param policies: Loaded platform policies.
    :returns: Target.
    :raises UnknownTargetError: If the tag is not recognized.
    """

    m = _LINUX_TAG_RE.match(platform_tag)
    if m is not None:
        target: Target = _linux_target(
            arch=m.group("arch"),
            env_part="musl" if m.group("family") == "musllinux" else "gnu",
            triple=platform_tag,
        )
        name: str = f"{m.group('family')}_{m.group('maj')}_{m.group('min')}"
        return _apply_linux_compatibility(target, name, policies=policies)

    m = _LEGACY_MANYLINUX_RE.match(platform_tag)
    if m is not None:
        target = _linux_target(arch=m.group("arch"), env_part="gnu", triple=platform_tag)
        return _apply_linux_compatibility(target, m.group("name"), policies=policies)

    if platform_tag.startswith("linux_") is True:
        target = _linux_target(arch=platform_tag[len("linux_") :], env_part="gnu", triple=platform_tag)
        return Target(arch=target.arch, os="linux", abi="gnu", policy="linux")

    m = _MACOS_TAG_RE.match(platform_tag)
    if m is not None:
        target = _darwin_target(arch=m.group("arch"), triple=platform_tag)
        return Target(
            arch=target.arch,
            os="macos",
            abi="",
            min_version=(int(m.group("maj")), int(m.group("min"))),
        )

    if platform_tag == "win32":
        return Target(arch="i686", os="windows", abi="msvc")
    if platform_tag.startswith("win_") is True:
        return _windows_target(arch=platform_tag[len("win_") :], env_part="msvc", triple=platform_tag)

    raise UnknownTargetError(f"Unrecognized platform tag {platform_tag!r}.")


def _apply_linux_compatibility(target: Target, compatibility: str, *, policies: PolicySet) -> Target:
    """Pin a Linux target to one policy.

    :param target: Linux target.
    :param compatibility: Policy name, legacy alias, or ``linux``.
    :param policies: Loaded platform policies.
    :returns: Pinned target.
    :raises UnknownTargetError: If the policy is unknown or does not fit the target.
    """

    normalized: str = compatibility.replace("-", "_").replace(".", "_")
    if normalized == "linux":
        return Target(arch=target.arch, os="linux", abi=target.abi, policy="linux")

    policy: LinuxPolicy | None = policies.linux_policy(normalized)
    if policy is None:
        raise UnknownTargetError(f"Unknown Linux compatibility policy {compatibility!r}.")
    if policy.libc != target.abi:
        raise UnknownTargetError(
            f"Policy {policy.name} is for {policy.libc} targets, but the target uses {target.abi}."
        )
    if target.arch not in policy.archs:
        raise UnknownTargetError(f"Policy {policy.name} is not defined for arch {target.arch!r}.")
    return Target(
        arch=target.arch,
        os="linux",
        abi=target.abi,
        min_version=policy.version,
        policy=policy.name,
    )


def _native_target() -> Target:
    """Describe the current host as a :class:`Target`.

    :returns: Host target.
    :raises UnknownTargetError: If the host platform is not supported.
    """

    host: str = sysconfig.get_platform()
    if host.startswith("linux") is True:
        libc_name, _libc_version = platform.libc_ver()
        env_part: str = "gnu" if libc_name == "glibc" else "musl"
        return _linux_target(arch=platform.machine(), env_part=env_part, triple=host)
    if host.startswith("macosx") is True:
        # sysconfig reports e.g. "macosx-11.0-arm64" or "macosx-10.9-universal2".
        arch: str = host.rsplit("-", 1)[-1]
        if arch == "universal2":
            arch = platform.machine()
        return _darwin_target(arch=arch, triple=host)
    if host == "win32":
        return Target(arch="i686", os="windows", abi="msvc")
    if host.startswith("win-") is True:
        return _windows_target(arch=host[len("win-") :], env_part="msvc", triple=host)
    raise UnknownTargetError(f"Unsupported host platform {host!r}.")


def _parse_macos_version(text: str) -> tuple[int, int]:
    try:
        parsed: tuple[int, ...] = parse_version_tuple(text.strip())
    except ValueError as e:
        raise UnknownTargetError(f"Invalid macOS deployment target {text!r}.") from e
    if len(parsed) == 0 or len(parsed) > 3:
        raise UnknownTargetError(f"Invalid macOS deployment target {text!r}.")
    return (parsed[0], parsed[1] if len(parsed) > 1 else 0)


def _looks_like_pip_platform_tag(platform_tag: str) -> bool:
    """Heuristically detect if a string looks like pip's ``--platform`` tag.

    :param platform_tag: Candidate platform tag.
    :returns: ``True`` if it looks like a pip platform tag.
    """

    if platform_tag.startswith("manylinux") is True:
        # Accept both PEP 600 (manylinux_2_17_x86_64) and legacy tags (manylinux2014_x86_64).
        return "_" in platform_tag
    if platform_tag.startswith("musllinux_") is True:
        return True
    if platform_tag.startswith("linux_") is True:
        return True
    if platform_tag.startswith("macosx_") is True:
        return True
    if platform_tag.startswith("win_") is True or platform_tag == "win32":
        return True
    return False


def _normalize_platform_tag(platform_tag: str) -> str:
    """Normalize common platform-tag spellings into pip's underscore form.

    :param platform_tag: Platform string (pip-style or sysconfig-style).
    :returns: Normalized platform tag.
    """

    # sysconfig uses e.g. "macosx-26.0-arm64" while pip expects "macosx_26_0_arm64".
    v: str = platform_tag.replace("-", "_").replace(".", "_")
    return v

"""Error taxonomy shared by every build stage."""

from dataclasses import dataclass
import pathlib


class WheelwrightError(RuntimeError):
    """Base class for every error raised by wheelwright."""


class ConfigError(WheelwrightError):
    """Raised when ``[tool.wheelwright]`` cannot be interpreted."""


class UnknownTargetError(WheelwrightError):
    """Raised when a target spec cannot be parsed into arch/OS/ABI components."""


class InvalidBinaryError(WheelwrightError):
    """Raised when a compiled artifact cannot be parsed or does not fit the target.

    :ivar path: File the error refers to, when known.
    """

    def __init__(self, message: str, *, path: pathlib.Path | None = None) -> None:
        if path is not None:
            message = f"{path}: {message}"
        super().__init__(message)
        self.path: pathlib.Path | None = path


@dataclass(frozen=True, slots=True)
class PolicyViolation:
    """One offending dependency.

    :ivar library: Library name the violation is about (e.g. ``libc.so.6``).
    :ivar reason: Human readable reason.
    :ivar required: Version the shipped binaries require, if version related.
    :ivar allowed: Maximum version the policy allows, if version related.
    :ivar referrer: Binary that introduced the requirement, if known.
    """

    library: str
    reason: str
    required: str | None = None
    allowed: str | None = None
    referrer: str | None = None

    def describe(self) -> str:
        text: str = f"{self.library}: {self.reason}"
        if self.required is not None:
            text += f" (requires {self.required}"
            if self.allowed is not None:
                text += f", maximum allowed {self.allowed}"
            text += ")"
        if self.referrer is not None:
            text += f" [needed by {self.referrer}]"
        return text


class PolicyViolationError(WheelwrightError):
    """Raised when a dependency graph cannot satisfy any candidate platform policy.

    :ivar violations: Every offending dependency.
    :ivar policy: Name of the policy the violations were measured against.
    """

    def __init__(self, violations: list[PolicyViolation], *, policy: str) -> None:
        lines: list[str] = [f"Dependencies violate the {policy} policy:"]
        for v in violations:
            lines.append(f"- {v.describe()}")
        super().__init__("\n".join(lines))
        self.violations: list[PolicyViolation] = violations
        self.policy: str = policy


class CrossArchMergeError(WheelwrightError):
    """Raised when single-architecture artifacts cannot be merged into one binary."""


class MetadataError(WheelwrightError):
    """Raised when project metadata is malformed."""


class InvalidVersionError(MetadataError):
    """Raised when a version string does not follow PEP 440."""


class InvalidNameError(MetadataError):
    """Raised when a project name does not follow the distribution name grammar."""


class NameMismatchError(MetadataError):
    """Raised when the binary module name and the declared package name diverge."""


class MissingFieldError(MetadataError):
    """Raised when a required metadata field is absent."""


class ArchiveIOError(WheelwrightError):
    """Raised when an archive cannot be written.

    :ivar path: Archive (or input) path involved.
    """

    def __init__(self, message: str, *, path: pathlib.Path | None = None) -> None:
        super().__init__(message)
        self.path: pathlib.Path | None = path

"""wheelwright.

Packages compiled Python extension modules into portable, installable wheels
(and source distributions): resolves the target platform, audits and bundles
shared-library dependencies, and writes reproducible archives.
"""

__all__: list[str] = ["__version__"]

__version__: str = "0.1.0"

from __future__ import annotations

"""
council.version: semantic version string.

Rules:
- BASE_VERSION is the semver for this package.
- If COUNCIL_VERSION is set in the environment, that wins.
"""


import os

# Bump this on intentional releases.
BASE_VERSION = "0.3.0"


def get_version() -> str:
    override = os.environ.get("COUNCIL_VERSION")
    if override:
        return override.strip()
    return BASE_VERSION


__version__ = get_version()

__all__ = ["BASE_VERSION", "get_version", "__version__"]

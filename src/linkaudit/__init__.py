"""linkaudit: scheduled link-health audits with a TTL result cache."""

from __future__ import annotations

import warnings
from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("linkaudit")
except PackageNotFoundError:
    # Running from a source tree without installed metadata.
    warnings.warn(
        "Package metadata for 'linkaudit' not found; using fallback version '0.0.0+unknown'.",
        RuntimeWarning,
        stacklevel=2,
    )
    __version__ = "0.0.0+unknown"

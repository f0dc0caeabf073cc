"""Per-OS collection strategies.

The running OS is detected once per process; get_strategy() returns the
cached strategy for it. strategy_for() builds a strategy for a named OS and
is what tests and offline collection (a mounted image via ``root``) use.
"""

from __future__ import annotations

import logging
import platform
from functools import lru_cache

from .base import LocalHostStrategy, PlatformStrategy, UnsupportedStrategy
from .darwin import MacOSStrategy
from .linux import LinuxStrategy
from .windows import WindowsStrategy

logger = logging.getLogger(__name__)

STRATEGIES: dict[str, type[PlatformStrategy]] = {
    "Linux": LinuxStrategy,
    "Darwin": MacOSStrategy,
    "Windows": WindowsStrategy,
}


def detect_platform() -> str:
    """platform.system() of the running interpreter, e.g. "Linux"."""
    return platform.system()


def strategy_for(system: str, **kwargs) -> PlatformStrategy:
    """Strategy for ``system`` (a platform.system() value, case-insensitive).

    Unknown systems get an UnsupportedStrategy whose every method raises
    PlatformUnsupportedError.
    """
    for name, cls in STRATEGIES.items():
        if name.lower() == system.lower():
            return cls(**kwargs)
    logger.info("No collection support for platform %r", system)
    return UnsupportedStrategy(**kwargs)


@lru_cache(maxsize=1)
def get_strategy() -> PlatformStrategy:
    """Strategy for the running OS, selected once per process."""
    strategy = strategy_for(detect_platform())
    logger.debug("Selected %r", strategy)
    return strategy


__all__ = [
    "STRATEGIES",
    "PlatformStrategy",
    "LocalHostStrategy",
    "UnsupportedStrategy",
    "LinuxStrategy",
    "MacOSStrategy",
    "WindowsStrategy",
    "detect_platform",
    "strategy_for",
    "get_strategy",
]

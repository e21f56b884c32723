"""Scanner adapter registry.

Maps adapter names to their classes and builds the adapter set an
orchestrator runs for every job.
"""

import asyncio
from pathlib import Path
from typing import Optional

from keelscan.core.constants import SCANNER_NAMES
from keelscan.core.exceptions import ConfigError
from keelscan.scanners.adapters import (
    DiveAdapter,
    DockleAdapter,
    GrypeAdapter,
    OSVAdapter,
    SyftAdapter,
    TrivyAdapter,
)
from keelscan.scanners.base import ScannerAdapter, ScannerAdapterBase, ScanTarget


ADAPTER_CLASSES: dict[str, type[ScannerAdapterBase]] = {
    "trivy": TrivyAdapter,
    "grype": GrypeAdapter,
    "syft": SyftAdapter,
    "osv": OSVAdapter,
    "dockle": DockleAdapter,
    "dive": DiveAdapter,
}


def build_adapters(
    names: Optional[list[str]] = None,
    *,
    bin_path: Optional[Path] = None,
    kill_grace_period: float = 10.0,
) -> dict[str, ScannerAdapter]:
    """Instantiate adapters in the canonical order.

    Args:
        names: Adapter names to build (defaults to all)
        bin_path: Directory containing scanner binaries
        kill_grace_period: Seconds between SIGTERM and SIGKILL on abort

    Returns:
        Mapping of adapter name to adapter instance

    Raises:
        ConfigError: If a name has no adapter
    """
    selected = list(names) if names is not None else list(SCANNER_NAMES)
    unknown = [n for n in selected if n not in ADAPTER_CLASSES]
    if unknown:
        raise ConfigError(f"No adapter for scanners: {', '.join(unknown)}")

    return {
        name: ADAPTER_CLASSES[name](bin_path, kill_grace_period=kill_grace_period)
        for name in SCANNER_NAMES
        if name in selected
    }


async def get_scanner_versions(adapters: dict[str, ScannerAdapter]) -> dict[str, str]:
    """Collect the version string of every adapter concurrently."""
    names = list(adapters)
    versions = await asyncio.gather(*(adapters[n].get_version() for n in names))
    return dict(zip(names, versions))


__all__ = [
    "ADAPTER_CLASSES",
    "ScanTarget",
    "ScannerAdapter",
    "ScannerAdapterBase",
    "build_adapters",
    "get_scanner_versions",
]

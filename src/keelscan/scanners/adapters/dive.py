"""Dive adapter for image layer analysis.

Dive reports per-layer sizes and wasted space of the image.
"""

from keelscan.scanners.base import ScannerAdapterBase, ScanTarget


class DiveAdapter(ScannerAdapterBase):
    """Adapter for the Dive layer analyzer."""

    name = "dive"
    binary = "dive"

    def build_command(self, target: ScanTarget) -> list[str]:
        return [
            self._get_tool_path(),
            "--source", "docker-archive",
            str(target.archive_path),
            "--json", str(self.output_path(target)),
        ]

"""Dockle adapter, the image configuration linter (CIS benchmark checks)."""

from keelscan.scanners.base import ScannerAdapterBase, ScanTarget


class DockleAdapter(ScannerAdapterBase):
    """Adapter for the Dockle container image linter."""

    name = "dockle"
    binary = "dockle"

    def build_command(self, target: ScanTarget) -> list[str]:
        return [
            self._get_tool_path(),
            "--input", str(target.archive_path),
            "--format", "json",
            "--output", str(self.output_path(target)),
        ]

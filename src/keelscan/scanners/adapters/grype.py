"""Grype adapter, the secondary vulnerability database."""

from keelscan.scanners.base import ScannerAdapterBase, ScanTarget


class GrypeAdapter(ScannerAdapterBase):
    """Adapter for the Grype vulnerability scanner.

    Grype prints its JSON report on stdout.
    """

    name = "grype"
    binary = "grype"
    writes_output_file = False
    version_args = ("version",)

    def build_command(self, target: ScanTarget) -> list[str]:
        return [
            self._get_tool_path(),
            f"docker-archive:{target.archive_path}",
            "-o", "json",
        ]

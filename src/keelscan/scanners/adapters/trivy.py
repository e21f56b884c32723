"""Trivy adapter for comprehensive vulnerability scanning.

Trivy scans OS packages and language dependencies of an image archive
against its vulnerability database and writes a JSON report.
"""

from keelscan.scanners.base import ScannerAdapterBase, ScanTarget


class TrivyAdapter(ScannerAdapterBase):
    """Adapter for the Trivy vulnerability scanner.

    Attributes:
        name: Adapter identifier ("trivy")
        binary: Executable name
    """

    name = "trivy"
    binary = "trivy"

    def build_command(self, target: ScanTarget) -> list[str]:
        """Build Trivy command line arguments.

        Example:
            >>> adapter.build_command(target)
            ["/usr/local/bin/trivy", "image", "--input", "/workspace/images/nginx.tar",
             "-f", "json", "-o", "/workspace/reports/<id>/trivy.json"]
        """
        return [
            self._get_tool_path(),
            "image",
            "--input", str(target.archive_path),
            "-f", "json",
            "-o", str(self.output_path(target)),
        ]

"""Syft adapter for SBOM generation.

Syft catalogs the packages of the image. The native JSON report is the
adapter payload; a CycloneDX SBOM is written next to it in the same run.
"""

from keelscan.scanners.base import ScannerAdapterBase, ScanTarget


SBOM_NAME = "sbom.cdx.json"


class SyftAdapter(ScannerAdapterBase):
    """Adapter for the Syft SBOM generator."""

    name = "syft"
    binary = "syft"
    version_args = ("version",)

    def build_command(self, target: ScanTarget) -> list[str]:
        return [
            self._get_tool_path(),
            f"docker-archive:{target.archive_path}",
            "-o", f"json={self.output_path(target)}",
            "-o", f"cyclonedx-json@1.5={target.output_dir / SBOM_NAME}",
        ]

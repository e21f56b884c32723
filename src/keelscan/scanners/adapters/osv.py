"""OSV adapter, vulnerability matching against the OSV.dev database.

osv-scanner works on an SBOM rather than the image itself. Adapters run
concurrently, so this adapter generates its own CycloneDX SBOM with syft
instead of waiting for the syft adapter's one.
"""

from pathlib import Path
from typing import Any

from keelscan.core.exceptions import AdapterExecutionError, AdapterNotFoundError
from keelscan.scanners.base import ScannerAdapterBase, ScanTarget


SBOM_NAME = "osv-sbom.cdx.json"


class OSVAdapter(ScannerAdapterBase):
    """Adapter for osv-scanner.

    osv-scanner exits with code 1 when it finds vulnerabilities, which is
    a successful scan.
    """

    name = "osv"
    binary = "osv-scanner"
    sbom_binary = "syft"
    writes_output_file = False
    accepted_exit_codes = frozenset({0, 1})

    def sbom_path(self, target: ScanTarget) -> Path:
        return target.output_dir / SBOM_NAME

    def build_sbom_command(self, target: ScanTarget) -> list[str]:
        return [
            self._get_tool_path(self.sbom_binary),
            f"docker-archive:{target.archive_path}",
            "-o", f"cyclonedx-json@1.5={self.sbom_path(target)}",
        ]

    def build_command(self, target: ScanTarget) -> list[str]:
        return [
            self._get_tool_path(),
            "-L", str(self.sbom_path(target)),
            "--verbosity", "error",
            "--format", "json",
        ]

    async def run(self, target: ScanTarget, timeout: float) -> Any:
        sbom_tool = self._get_tool_path(self.sbom_binary)
        if self.bin_path is not None and not (self.bin_path / self.sbom_binary).exists():
            raise AdapterNotFoundError(f"SBOM generator not found: {sbom_tool}")

        target.output_dir.mkdir(parents=True, exist_ok=True)
        _, stderr, exit_code, duration = await self._run_subprocess(
            self.build_sbom_command(target),
            timeout=timeout,
            env=target.env or None,
            cwd=target.output_dir,
        )
        if exit_code != 0 or not self.sbom_path(target).exists():
            raise AdapterExecutionError(
                f"SBOM generation for osv failed with code {exit_code}: {stderr.strip()[:500]}"
            )

        # Remaining time goes to osv-scanner itself
        return await super().run(target, max(timeout - duration, 1.0))

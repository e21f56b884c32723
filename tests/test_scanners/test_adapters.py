"""Unit tests for the concrete scanner adapters and the adapter registry."""

import json
import tempfile
import unittest
from pathlib import Path
from unittest.mock import AsyncMock, patch

from keelscan.core.constants import SCANNER_NAMES
from keelscan.core.exceptions import AdapterExecutionError, ConfigError
from keelscan.scanners import ADAPTER_CLASSES, build_adapters, get_scanner_versions
from keelscan.scanners.adapters import (
    DiveAdapter,
    DockleAdapter,
    GrypeAdapter,
    OSVAdapter,
    SyftAdapter,
    TrivyAdapter,
)
from keelscan.scanners.base import ScanTarget


BIN = Path("/opt/scanners")


class AdapterTestCase(unittest.TestCase):

    def setUp(self):
        self.target = ScanTarget(
            request_id="req-1",
            archive_path=Path("/workspace/images/nginx-req-1.tar"),
            output_dir=Path("/workspace/reports/req-1"),
        )


class TestBuildCommand(AdapterTestCase):
    """Test the command lines handed to each tool."""

    def test_trivy(self):
        cmd = TrivyAdapter(BIN).build_command(self.target)

        self.assertEqual(cmd, [
            "/opt/scanners/trivy", "image",
            "--input", "/workspace/images/nginx-req-1.tar",
            "-f", "json",
            "-o", "/workspace/reports/req-1/trivy.json",
        ])

    def test_grype_reads_archive_and_prints_report(self):
        adapter = GrypeAdapter(BIN)
        cmd = adapter.build_command(self.target)

        self.assertEqual(cmd[1], "docker-archive:/workspace/images/nginx-req-1.tar")
        self.assertEqual(cmd[-2:], ["-o", "json"])
        self.assertFalse(adapter.writes_output_file)
        self.assertEqual(adapter.version_args, ("version",))

    def test_syft_writes_native_and_cyclonedx(self):
        cmd = SyftAdapter(BIN).build_command(self.target)

        self.assertIn("json=/workspace/reports/req-1/syft.json", cmd)
        self.assertIn("cyclonedx-json@1.5=/workspace/reports/req-1/sbom.cdx.json", cmd)

    def test_dockle(self):
        cmd = DockleAdapter(BIN).build_command(self.target)

        self.assertEqual(cmd[0], "/opt/scanners/dockle")
        self.assertIn("--input", cmd)
        self.assertEqual(cmd[cmd.index("--output") + 1], "/workspace/reports/req-1/dockle.json")

    def test_dive(self):
        cmd = DiveAdapter(BIN).build_command(self.target)

        self.assertEqual(cmd[1:3], ["--source", "docker-archive"])
        self.assertEqual(cmd[-1], "/workspace/reports/req-1/dive.json")

    def test_osv_scans_generated_sbom(self):
        adapter = OSVAdapter(BIN)

        sbom_cmd = adapter.build_sbom_command(self.target)
        scan_cmd = adapter.build_command(self.target)

        self.assertEqual(sbom_cmd[0], "/opt/scanners/syft")
        self.assertIn("cyclonedx-json@1.5=/workspace/reports/req-1/osv-sbom.cdx.json", sbom_cmd)
        self.assertEqual(scan_cmd[0], "/opt/scanners/osv-scanner")
        self.assertEqual(scan_cmd[1:3], ["-L", "/workspace/reports/req-1/osv-sbom.cdx.json"])
        self.assertEqual(adapter.accepted_exit_codes, frozenset({0, 1}))


class TestOSVRun(unittest.IsolatedAsyncioTestCase):
    """Test the two-step osv-scanner run."""

    def setUp(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        root = Path(self.temp_dir.name)
        self.target = ScanTarget("req-1", root / "image.tar", root / "reports")
        self.adapter = OSVAdapter()

    def tearDown(self):
        self.temp_dir.cleanup()

    async def test_sbom_then_scan(self):
        report = {"results": [{"packages": []}]}
        commands = []

        async def fake_run(cmd, timeout, env=None, cwd=None):
            commands.append((cmd, timeout))
            if len(commands) == 1:
                self.adapter.sbom_path(self.target).write_text("{}")
                return "", "", 0, 20.0
            return json.dumps(report), "", 1, 5.0

        with patch.object(self.adapter, "check_available", AsyncMock(return_value=True)), \
             patch.object(self.adapter, "_run_subprocess", side_effect=fake_run):
            payload = await self.adapter.run(self.target, timeout=300)

        self.assertEqual(payload, report)
        self.assertEqual(commands[0][1], 300)
        self.assertEqual(commands[1][1], 280)
        self.assertTrue((self.target.output_dir / "osv.json").exists())

    async def test_sbom_failure(self):
        run = AsyncMock(return_value=("", "cannot read archive", 1, 1.0))

        with patch.object(self.adapter, "_run_subprocess", run):
            with self.assertRaisesRegex(AdapterExecutionError, "SBOM generation"):
                await self.adapter.run(self.target, timeout=300)

        self.assertEqual(run.await_count, 1)


class TestRegistry(unittest.IsolatedAsyncioTestCase):
    """Test build_adapters() and get_scanner_versions()."""

    def test_all_scanners_have_adapters(self):
        self.assertEqual(set(ADAPTER_CLASSES), set(SCANNER_NAMES))
        for name, cls in ADAPTER_CLASSES.items():
            self.assertEqual(cls.name, name)

    def test_build_in_canonical_order(self):
        adapters = build_adapters(["dive", "trivy", "osv"], bin_path=BIN, kill_grace_period=3)

        self.assertEqual(list(adapters), ["trivy", "osv", "dive"])
        self.assertEqual(adapters["trivy"].bin_path, BIN)
        self.assertEqual(adapters["dive"].kill_grace_period, 3)

    def test_build_defaults_to_all(self):
        self.assertEqual(list(build_adapters()), list(SCANNER_NAMES))

    def test_unknown_scanner(self):
        with self.assertRaisesRegex(ConfigError, "clair"):
            build_adapters(["trivy", "clair"])

    async def test_versions(self):
        trivy = TrivyAdapter()
        grype = GrypeAdapter()

        with patch.object(trivy, "get_version", AsyncMock(return_value="Version: 0.50.1")), \
             patch.object(grype, "get_version", AsyncMock(return_value="unknown")):
            versions = await get_scanner_versions({"trivy": trivy, "grype": grype})

        self.assertEqual(versions, {"trivy": "Version: 0.50.1", "grype": "unknown"})


if __name__ == "__main__":
    unittest.main()

"""Unit tests for core utility functions."""

import platform
import subprocess
import sys
import unittest
from datetime import datetime, timezone

from keelscan.core.utils import (
    count_vulnerabilities,
    format_duration,
    generate_request_id,
    instance_owner,
    normalize_severity,
    owner_alive,
)


class TestNormalizeSeverity(unittest.TestCase):

    def test_known_levels(self):
        self.assertEqual(normalize_severity("CRITICAL"), "critical")
        self.assertEqual(normalize_severity(" High "), "high")
        self.assertEqual(normalize_severity("Negligible"), "low")

    def test_unknown_levels(self):
        self.assertEqual(normalize_severity(None), "unknown")
        self.assertEqual(normalize_severity("UNKNOWN"), "unknown")
        self.assertEqual(normalize_severity("severe"), "unknown")


class TestCountVulnerabilities(unittest.TestCase):
    """Test severity counting over trivy and grype reports."""

    def test_trivy_and_grype(self):
        payloads = {
            "trivy": {
                "Results": [
                    {"Vulnerabilities": [{"Severity": "CRITICAL"}, {"Severity": "MEDIUM"}]},
                    {"Target": "app.jar", "Vulnerabilities": None},
                    {"Vulnerabilities": [{"Severity": "HIGH"}]},
                ],
            },
            "grype": {
                "matches": [
                    {"vulnerability": {"severity": "High"}},
                    {"vulnerability": {"severity": "Negligible"}},
                    {"vulnerability": {}},
                ],
            },
        }

        counts = count_vulnerabilities(payloads)

        self.assertEqual(counts, {
            "critical": 1,
            "high": 2,
            "medium": 1,
            "low": 1,
            "unknown": 1,
        })

    def test_other_payloads_ignored(self):
        payloads = {
            "syft": {"artifacts": [{"name": "openssl"}]},
            "dive": {"layer": []},
            "trivy": ["not", "a", "report"],
        }

        counts = count_vulnerabilities(payloads)

        self.assertEqual(sum(counts.values()), 0)

    def test_empty_reports(self):
        counts = count_vulnerabilities({"trivy": {"Results": None}, "grype": {}})

        self.assertEqual(sum(counts.values()), 0)


class TestFormatDuration(unittest.TestCase):

    def test_format(self):
        self.assertEqual(format_duration(None), "-")
        self.assertEqual(format_duration(4.4), "4s")
        self.assertEqual(format_duration(125), "2m 05s")


class TestGenerateRequestId(unittest.TestCase):

    def test_format(self):
        now = datetime(2026, 3, 14, 9, 26, 53, tzinfo=timezone.utc)

        request_id = generate_request_id(now)

        self.assertRegex(request_id, r"^20260314-092653-[0-9a-f]{8}$")

    def test_unique(self):
        ids = {generate_request_id() for _ in range(100)}

        self.assertEqual(len(ids), 100)


class TestOwnerAlive(unittest.TestCase):

    def test_own_process(self):
        self.assertTrue(owner_alive(instance_owner()))

    def test_exited_process(self):
        child = subprocess.Popen([sys.executable, "-c", ""])
        child.wait()

        self.assertFalse(owner_alive(f"{platform.node()}:{child.pid}"))

    def test_other_host_counts_as_alive(self):
        self.assertTrue(owner_alive(f"not-{platform.node()}:1"))

    def test_missing_or_malformed_owner(self):
        for owner in (None, "", "4242", "build-host:", "build-host:pid"):
            with self.subTest(owner=owner):
                self.assertFalse(owner_alive(owner))


if __name__ == "__main__":
    unittest.main()

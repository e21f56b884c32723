"""Core utility functions for keelscan."""

import os
import platform
import secrets
from datetime import datetime, timezone
from typing import Any, Mapping, Optional

from keelscan.core.constants import SEVERITY_LEVELS


def normalize_severity(raw: Optional[str]) -> str:
    """Map a scanner severity label onto one of SEVERITY_LEVELS."""
    severity = (raw or "unknown").strip().lower()
    if severity == "negligible":
        return "low"
    return severity if severity in SEVERITY_LEVELS else "unknown"


def _trivy_severities(report: Mapping[str, Any]):
    for result in report.get("Results") or []:
        for vuln in result.get("Vulnerabilities") or []:
            yield vuln.get("Severity")


def _grype_severities(report: Mapping[str, Any]):
    for match in report.get("matches") or []:
        yield (match.get("vulnerability") or {}).get("severity")


def count_vulnerabilities(payloads: Mapping[str, Any]) -> dict[str, int]:
    """
    Count vulnerabilities by severity across scanner payloads.

    Only trivy and grype reports carry vulnerability matches; other
    payloads are ignored. Matches reported by both tools are counted
    once per tool.

    Args:
        payloads: Mapping of adapter name to parsed JSON payload

    Returns:
        Dictionary with a count for every severity level
    """
    counts = {level: 0 for level in SEVERITY_LEVELS}

    extractors = {
        "trivy": _trivy_severities,
        "grype": _grype_severities,
    }

    for scanner, report in payloads.items():
        extract = extractors.get(scanner)
        if extract is None or not isinstance(report, Mapping):
            continue
        for raw in extract(report):
            counts[normalize_severity(raw)] += 1

    return counts


def format_duration(seconds: Optional[float]) -> str:
    """Human readable duration, '-' when unknown."""
    if seconds is None:
        return "-"
    seconds = int(round(seconds))
    minutes, secs = divmod(seconds, 60)
    if minutes:
        return f"{minutes}m {secs:02d}s"
    return f"{secs}s"


def generate_request_id(now: Optional[datetime] = None) -> str:
    """Request ID in the form YYYYMMDD-HHMMSS-<8 hex chars>."""
    now = now or datetime.now(timezone.utc)
    return f"{now.strftime('%Y%m%d-%H%M%S')}-{secrets.token_hex(4)}"


def instance_owner() -> str:
    """Owner tag for scan records created by this process: <host>:<pid>."""
    return f"{platform.node()}:{os.getpid()}"


def owner_alive(owner: Optional[str]) -> bool:
    """
    Whether the process that owns a scan record is still running.

    Records without an owner, or with a malformed one, belong to nobody.
    Owners on another host cannot be checked and count as alive.
    """
    if not owner:
        return False
    host, _, pid_text = owner.rpartition(":")
    if not host or not pid_text.isdigit():
        return False
    if host != platform.node():
        return True

    pid = int(pid_text)
    if pid == os.getpid():
        return True
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists but belongs to another user
        return True
    return True

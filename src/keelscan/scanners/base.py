"""Base classes and interfaces for scanner adapters.

This module defines the abstract ScannerAdapter interface that all scanner
adapters must implement, plus a base implementation that runs the scanner
binary as an asyncio subprocess with timeout and cancellation handling.
"""

import asyncio
import json
import logging
import shutil
import signal
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from time import monotonic
from typing import Any, Optional

from keelscan.core.exceptions import (
    AdapterExecutionError,
    AdapterFailure,
    AdapterNotFoundError,
    AdapterTimeoutError,
)


logger = logging.getLogger(__name__)


@dataclass
class ScanTarget:
    """Prepared image handed to every adapter of one job.

    Attributes:
        request_id: Job the scan belongs to
        archive_path: docker-archive tarball of the image
        output_dir: Job-exclusive directory for reports
        env: Environment for the scanner processes (cache locations etc.)
        metadata: Image metadata gathered while acquiring the archive
        owns_archive: Whether the archive is temporary and removed after the scan
    """
    request_id: str
    archive_path: Path
    output_dir: Path
    env: dict[str, str] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)
    owns_archive: bool = False


class ScannerAdapter(ABC):
    """Abstract base class for all scanner adapters.

    Attributes:
        name: Adapter identifier (e.g., "trivy", "grype")
        binary: Executable the adapter invokes
    """

    name: str
    binary: str

    @abstractmethod
    async def run(self, target: ScanTarget, timeout: float) -> Any:
        """Scan the prepared image and return the parsed report.

        Args:
            target: Prepared image and output location
            timeout: Seconds before the scanner process is killed

        Returns:
            Parsed report payload

        Raises:
            AdapterNotFoundError: If the scanner binary is not found
            AdapterTimeoutError: If execution exceeds timeout
            AdapterExecutionError: If the scanner fails or its output is unreadable
        """
        pass

    @abstractmethod
    def build_command(self, target: ScanTarget) -> list[str]:
        """Build command line arguments for the scanner.

        Args:
            target: Prepared image and output location

        Returns:
            List of command arguments ready for subprocess execution
        """
        pass

    @abstractmethod
    def parse_output(self, raw: str) -> Any:
        """Parse the scanner report.

        Args:
            raw: Report text as written by the scanner

        Returns:
            Parsed payload

        Raises:
            AdapterExecutionError: If the report is malformed
        """
        pass

    @abstractmethod
    async def check_available(self) -> bool:
        """Check if the scanner is installed and accessible.

        Note:
            This method should not raise exceptions. Return False for any errors.
        """
        pass

    @abstractmethod
    async def get_version(self) -> str:
        """Return installed scanner version, "unknown" when it cannot be read."""
        pass


class ScannerAdapterBase(ScannerAdapter):
    """Base implementation with the subprocess plumbing shared by adapters.

    Concrete adapters set name, binary and output_name and implement
    build_command(). Scanners that print their report instead of writing
    it set writes_output_file = False and the base stores stdout.

    Args:
        bin_path: Directory containing scanner binaries (None searches PATH)
        kill_grace_period: Seconds between SIGTERM and SIGKILL on abort
    """

    output_name: str = ""
    writes_output_file: bool = True
    accepted_exit_codes: frozenset[int] = frozenset({0})
    version_args: tuple[str, ...] = ("--version",)

    def __init__(
        self,
        bin_path: Optional[Path] = None,
        *,
        kill_grace_period: float = 10.0,
    ) -> None:
        self.bin_path = bin_path
        self.kill_grace_period = kill_grace_period

    def _get_tool_path(self, binary: Optional[str] = None) -> str:
        """Resolve the scanner executable."""
        binary = binary or self.binary
        if self.bin_path is not None:
            return str(self.bin_path / binary)
        return shutil.which(binary) or binary

    def output_path(self, target: ScanTarget) -> Path:
        return target.output_dir / (self.output_name or f"{self.name}.json")

    async def check_available(self) -> bool:
        """Default implementation checks the binary exists and is executable."""
        tool_path = Path(self._get_tool_path())
        if not tool_path.exists() or not tool_path.is_file():
            return False
        try:
            return tool_path.stat().st_mode & 0o111 != 0
        except (OSError, PermissionError):
            return False

    async def get_version(self) -> str:
        try:
            stdout, _, exit_code, _ = await self._run_subprocess(
                [self._get_tool_path(), *self.version_args],
                timeout=30,
            )
        except AdapterFailure:
            return "unknown"
        if exit_code != 0 or not stdout.strip():
            return "unknown"
        return stdout.strip().splitlines()[0]

    async def run(self, target: ScanTarget, timeout: float) -> Any:
        if not await self.check_available():
            raise AdapterNotFoundError(
                f"Scanner binary not found: {self.binary}. "
                f"Expected at: {self._get_tool_path()}"
            )

        output_file = self.output_path(target)
        output_file.parent.mkdir(parents=True, exist_ok=True)

        cmd = self.build_command(target)
        logger.debug(f"[{target.request_id}] {self.name}: {' '.join(cmd)}")

        stdout, stderr, exit_code, duration = await self._run_subprocess(
            cmd,
            timeout=timeout,
            env=target.env or None,
            cwd=target.output_dir,
        )

        if exit_code not in self.accepted_exit_codes:
            detail = (stderr or stdout).strip()[:500]
            raise AdapterExecutionError(
                f"{self.name} exited with code {exit_code}: {detail}"
            )

        if not self.writes_output_file:
            output_file.write_text(stdout)

        if not output_file.exists():
            raise AdapterExecutionError(f"{self.name} did not write {output_file.name}")

        logger.debug(f"[{target.request_id}] {self.name} finished in {duration:.1f}s")
        return self.parse_output(output_file.read_text())

    def parse_output(self, raw: str) -> Any:
        """Default parser for JSON reports."""
        if not raw.strip():
            raise AdapterExecutionError(f"{self.name} produced an empty report")
        try:
            return json.loads(raw)
        except json.JSONDecodeError as e:
            raise AdapterExecutionError(f"{self.name} report is not valid JSON: {e}") from e

    async def _run_subprocess(
        self,
        cmd: list[str],
        timeout: float,
        env: Optional[dict[str, str]] = None,
        cwd: Optional[Path] = None,
    ) -> tuple[str, str, int, float]:
        return await run_subprocess(
            cmd,
            timeout,
            env=env,
            cwd=cwd,
            kill_grace_period=self.kill_grace_period,
            name=self.name,
        )


# =============================================================================
# Subprocess helpers
# =============================================================================

async def terminate_process(
    process: asyncio.subprocess.Process,
    grace_period: float,
    name: str = "process",
) -> None:
    """Stop a child process: SIGTERM, grace period, then SIGKILL."""
    if process.returncode is not None:
        return
    try:
        process.send_signal(signal.SIGTERM)
        await asyncio.wait_for(process.wait(), timeout=grace_period)
    except asyncio.TimeoutError:
        logger.warning(f"{name} did not exit within {grace_period}s, killing")
        process.kill()
        await process.wait()
    except ProcessLookupError:
        pass


async def run_subprocess(
    cmd: list[str],
    timeout: float,
    *,
    env: Optional[dict[str, str]] = None,
    cwd: Optional[Path] = None,
    kill_grace_period: float = 10.0,
    name: Optional[str] = None,
) -> tuple[str, str, int, float]:
    """Run subprocess and capture output.

    Args:
        cmd: Command and arguments to execute
        timeout: Timeout in seconds
        env: Environment variables for subprocess
        cwd: Working directory for subprocess
        kill_grace_period: Seconds between SIGTERM and SIGKILL on cancellation
        name: Label used in error messages (defaults to the executable)

    Returns:
        Tuple of (stdout, stderr, exit_code, duration)

    Raises:
        AdapterNotFoundError: Executable does not exist
        AdapterTimeoutError: Process exceeded timeout
        AdapterExecutionError: Process execution failed
        asyncio.CancelledError: Job was cancelled; the process is stopped first
    """
    name = name or Path(cmd[0]).name
    start_time = monotonic()
    process = None

    try:
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=env,
            cwd=cwd,
        )

        stdout_bytes, stderr_bytes = await asyncio.wait_for(
            process.communicate(),
            timeout=timeout,
        )

        duration = monotonic() - start_time
        exit_code = process.returncode or 0

        stdout = stdout_bytes.decode("utf-8", errors="replace")
        stderr = stderr_bytes.decode("utf-8", errors="replace")

        return stdout, stderr, exit_code, duration

    except asyncio.TimeoutError as e:
        if process is not None and process.returncode is None:
            process.kill()
            await process.wait()
        raise AdapterTimeoutError(f"{name} exceeded timeout of {timeout}s") from e

    except asyncio.CancelledError:
        if process is not None:
            await asyncio.shield(terminate_process(process, kill_grace_period, name))
        raise

    except FileNotFoundError as e:
        raise AdapterNotFoundError(f"Executable not found: {cmd[0]}") from e

    except Exception as e:
        raise AdapterExecutionError(f"Failed to execute {name}: {e}") from e

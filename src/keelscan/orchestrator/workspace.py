"""Image workspace: per-job directories and image acquisition.

Every job gets an exclusive report directory under
``<work_dir>/reports/<request_id>``. The image is turned into a
docker-archive tarball that all adapters of the job read:

- registry images are copied with ``skopeo copy``
- local images are exported with ``docker save``
- tar sources are scanned in place

Scanner caches are shared between jobs and live in ``<work_dir>/cache``.
"""

import asyncio
import json
import logging
import os
from collections.abc import Callable
from pathlib import Path
from typing import Any, Optional

from keelscan.core.constants import DEFAULTS, PROGRESS, ScanSource
from keelscan.core.exceptions import ScannerError, WorkspaceError
from keelscan.core.models import ScanJob
from keelscan.scanners.base import ScanTarget, run_subprocess


logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, str], None]

CACHE_ENV = {
    "TRIVY_CACHE_DIR": "trivy",
    "GRYPE_DB_CACHE_DIR": "grype",
    "SYFT_CACHE_DIR": "syft",
    "DOCKLE_TMP_DIR": "dockle",
}


class ImageWorkspace:
    """Prepares the scan target of a job and cleans it up afterwards.

    Args:
        work_dir: Root of reports, images and caches
        acquire_timeout: Seconds allowed for pulling or exporting an image
        kill_grace_period: Seconds between SIGTERM and SIGKILL on abort
        skopeo_bin: skopeo executable
        docker_bin: docker executable
    """

    def __init__(
        self,
        work_dir: Path,
        *,
        acquire_timeout: float = DEFAULTS["scan_timeout_minutes"] * 60,
        kill_grace_period: float = DEFAULTS["kill_grace_period"],
        skopeo_bin: str = "skopeo",
        docker_bin: str = "docker",
    ) -> None:
        self.work_dir = Path(work_dir)
        self.acquire_timeout = acquire_timeout
        self.kill_grace_period = kill_grace_period
        self.skopeo_bin = skopeo_bin
        self.docker_bin = docker_bin

    @property
    def reports_dir(self) -> Path:
        return self.work_dir / "reports"

    @property
    def images_dir(self) -> Path:
        return self.work_dir / "images"

    @property
    def cache_dir(self) -> Path:
        return self.work_dir / "cache"

    def report_dir(self, request_id: str) -> Path:
        return self.reports_dir / request_id

    def scanner_env(self) -> dict[str, str]:
        """Process environment with scanner cache locations."""
        env = dict(os.environ)
        for var, subdir in CACHE_ENV.items():
            env[var] = str(self.cache_dir / subdir)
        return env

    def _create_dirs(self, request_id: str) -> Path:
        report_dir = self.report_dir(request_id)
        try:
            report_dir.mkdir(parents=True, exist_ok=True)
            self.images_dir.mkdir(parents=True, exist_ok=True)
            for subdir in CACHE_ENV.values():
                (self.cache_dir / subdir).mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise WorkspaceError(f"Failed to create workspace for {request_id}: {e}") from e
        return report_dir

    async def prepare(
        self,
        job: ScanJob,
        on_progress: Optional[ProgressCallback] = None,
    ) -> ScanTarget:
        """Create the job directory and acquire the image archive.

        Args:
            job: Running job
            on_progress: Called with (progress, step) as acquisition advances

        Returns:
            ScanTarget shared by all adapters of the job

        Raises:
            WorkspaceError: If the image cannot be acquired
        """
        def report(progress: int, step: str) -> None:
            if on_progress is not None:
                on_progress(progress, step)

        request = job.request
        report_dir = await asyncio.to_thread(self._create_dirs, job.request_id)
        env = self.scanner_env()

        report(PROGRESS["acquire"], "Acquiring image")

        if request.source == ScanSource.TAR:
            archive = Path(request.tar_path)
            if not archive.is_file():
                raise WorkspaceError(f"Image archive not found: {archive}")
            metadata: dict[str, Any] = {"source": "tar", "path": str(archive)}
            owns_archive = False
        else:
            safe_name = request.image.replace("/", "_")
            archive = self.images_dir / f"{safe_name}-{job.request_id}.tar"
            owns_archive = True
            try:
                if request.source == ScanSource.LOCAL:
                    image = request.docker_image_id or request.image_ref
                    metadata = await self._export_local(image, archive, env)
                else:
                    metadata = await self._copy_from_registry(request.image_ref, archive, env)
            except BaseException:
                # Partial downloads are never handed to adapters
                archive.unlink(missing_ok=True)
                raise

        await asyncio.to_thread(
            (report_dir / "metadata.json").write_text,
            json.dumps(metadata, indent=2, default=str),
        )

        report(PROGRESS["image_ready"], "Image ready")

        return ScanTarget(
            request_id=job.request_id,
            archive_path=archive,
            output_dir=report_dir,
            env=env,
            metadata=metadata,
            owns_archive=owns_archive,
        )

    async def _run(self, cmd: list[str], env: dict[str, str]) -> str:
        try:
            stdout, stderr, exit_code, _ = await run_subprocess(
                cmd,
                self.acquire_timeout,
                env=env,
                kill_grace_period=self.kill_grace_period,
            )
        except ScannerError as e:
            raise WorkspaceError(str(e)) from e

        if exit_code != 0:
            raise WorkspaceError(
                f"{' '.join(cmd[:2])} failed with code {exit_code}: {stderr.strip()[:500]}"
            )
        return stdout

    async def _copy_from_registry(
        self,
        image_ref: str,
        archive: Path,
        env: dict[str, str],
    ) -> dict[str, Any]:
        logger.info(f"Copying {image_ref} to {archive.name}")
        await self._run(
            [self.skopeo_bin, "copy", f"docker://{image_ref}", f"docker-archive:{archive}"],
            env,
        )
        raw = await self._run(
            [self.skopeo_bin, "inspect", f"docker-archive:{archive}"],
            env,
        )
        return _parse_metadata(raw, source="registry", image_ref=image_ref)

    async def _export_local(
        self,
        image: str,
        archive: Path,
        env: dict[str, str],
    ) -> dict[str, Any]:
        logger.info(f"Exporting local image {image} to {archive.name}")
        await self._run([self.docker_bin, "save", "-o", str(archive), image], env)
        raw = await self._run([self.docker_bin, "image", "inspect", image], env)
        return _parse_metadata(raw, source="local", image_ref=image)

    def cleanup(self, target: Optional[ScanTarget]) -> None:
        """Remove the temporary archive. Reports are kept."""
        if target is None or not target.owns_archive:
            return
        try:
            target.archive_path.unlink(missing_ok=True)
        except OSError as e:
            logger.warning(f"Failed to remove {target.archive_path}: {e}")


def _parse_metadata(raw: str, *, source: str, image_ref: str) -> dict[str, Any]:
    """Inspect output as a dict; docker prints a one-element list."""
    metadata: dict[str, Any] = {"source": source, "image_ref": image_ref}
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning(f"Unreadable inspect output for {image_ref}")
        return metadata
    if isinstance(data, list):
        data = data[0] if data else {}
    if isinstance(data, dict):
        metadata["inspect"] = data
    return metadata

import asyncio
import logging
import shutil
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Dict, Optional, Set

logger = logging.getLogger(__name__)

ARCHIVE_SUFFIXES = (".zip", ".tar.gz")


class ArtifactStore:
    """
    Job-scoped working directories and the archives assembled from them.

    Layout under `root`:
        work/<job_id>/               scratch files of a running job
        archives/<job_id>.<suffix>   downloadable result of a backup
    """

    def __init__(self, root: Path):
        self.root = Path(root)
        self.work_dir = self.root / "work"
        self.archive_dir = self.root / "archives"
        self._cleaning: Set[str] = set()
        self._leases: Dict[str, int] = {}
        self._pending_deletes: Set[str] = set()

    def workspace(self, job_id: str) -> Path:
        path = self.work_dir / job_id
        path.mkdir(parents=True, exist_ok=True)
        return path

    def archive_path(self, job_id: str, suffix: str) -> Path:
        self.archive_dir.mkdir(parents=True, exist_ok=True)
        return self.archive_dir / f"{job_id}{suffix}"

    def find_archive(self, job_id: str) -> Optional[Path]:
        for suffix in ARCHIVE_SUFFIXES:
            path = self.archive_dir / f"{job_id}{suffix}"
            if path.exists():
                return path
        return None

    async def cleanup_workspace(self, job_id: str) -> bool:
        """
        Remove the job's working directory. Only the first caller removes it;
        every later call returns False.
        """
        path = self.work_dir / job_id
        if job_id in self._cleaning or not path.exists():
            return False
        self._cleaning.add(job_id)
        try:
            await asyncio.to_thread(shutil.rmtree, path, True)
        finally:
            self._cleaning.discard(job_id)
        logger.debug("Removed working directory %s", path)
        return True

    @asynccontextmanager
    async def lease(self, job_id: str) -> AsyncIterator[Path]:
        """
        Hold an archive open for download. Deletions requested meanwhile are
        deferred until the last lease is released.
        """
        path = self.find_archive(job_id)
        if path is None:
            raise FileNotFoundError(f"No archive for job {job_id}")
        self._leases[job_id] = self._leases.get(job_id, 0) + 1
        try:
            yield path
        finally:
            self._leases[job_id] -= 1
            if self._leases[job_id] == 0:
                del self._leases[job_id]
                if job_id in self._pending_deletes:
                    self._pending_deletes.discard(job_id)
                    await self._unlink(job_id)

    @asynccontextmanager
    async def download(self, job_id: str, delete_after: bool = False) -> AsyncIterator[Path]:
        """
        Lease the archive for the duration of a download. With `delete_after`
        the archive is removed once the last concurrent download finishes.
        """
        async with self.lease(job_id) as path:
            if delete_after:
                self._pending_deletes.add(job_id)
            yield path

    async def delete_archive(self, job_id: str) -> bool:
        """
        Returns True if the archive is gone (or will be once its downloads finish).
        """
        if job_id in self._leases:
            logger.info("Archive for job %s is being downloaded, deleting once released", job_id)
            self._pending_deletes.add(job_id)
            return True
        return await self._unlink(job_id)

    async def _unlink(self, job_id: str) -> bool:
        path = self.find_archive(job_id)
        if path is None:
            return True
        await asyncio.to_thread(path.unlink, True)
        logger.info("Deleted archive %s", path)
        return True

import asyncio
import json
import logging
import tarfile
import zipfile
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from dispatcharr_manager.domain.job import JobType
from dispatcharr_manager.domain.requests import RestoreRequest
from dispatcharr_manager.errors import ValidationError
from dispatcharr_manager.executors.artifacts import ArtifactStore
from dispatcharr_manager.executors.base import BaseExecutor, ClientFactory
from dispatcharr_manager.executors.categories import enabled_descriptors
from dispatcharr_manager.executors.pipeline import DEFAULT_PAGE_SIZE, JobContext, fetch_existing, upsert_all
from dispatcharr_manager.registry import JobRegistry

logger = logging.getLogger(__name__)

LOAD_WEIGHT = 1
AUTH_WEIGHT = 1
CONFIG_SUFFIXES = (".yaml", ".yml", ".json")


class RestoreExecutor(BaseExecutor):
    """
    Writes the categories stored in a backup archive into a destination instance.
    """

    def __init__(self, registry: JobRegistry, client_factory: ClientFactory, artifacts: ArtifactStore,
                 page_size: int = DEFAULT_PAGE_SIZE):
        super().__init__(registry, client_factory, page_size)
        self.artifacts = artifacts

    @staticmethod
    def supported_job_type() -> JobType:
        return JobType.RESTORE

    async def _run(self, request: RestoreRequest, job_id: str) -> Any:
        descriptors = enabled_descriptors(request.options.categories)
        context = JobContext(
            self.registry, job_id, LOAD_WEIGHT + AUTH_WEIGHT + sum(descriptor.weight for descriptor in descriptors)
        )
        await self.registry.start_job(job_id, "Initializing restore...")
        try:
            await context.report("Reading backup file...")
            workspace = self.artifacts.workspace(job_id)
            export = await asyncio.to_thread(load_backup, Path(request.archive_path), workspace)
            data = export["data"]
            logger.info("Restoring backup of %s exported at %s", export.get("source_url"), export.get("exported_at"))
            await context.advance(LOAD_WEIGHT)

            client = self.client_factory(request.destination)
            try:
                context.checkpoint()
                await context.report("Authenticating to destination...")
                await client.authenticate()
                await context.advance(AUTH_WEIGHT)

                results: Dict[str, Any] = {}
                for descriptor in descriptors:
                    if data.get(descriptor.export_key) is None:
                        await context.advance(descriptor.weight, f"No {descriptor.label} in backup, skipping")
                        continue
                    await context.report(f"Restoring {descriptor.label}...")
                    existing = await fetch_existing(client, descriptor, context, self.page_size)
                    outcome = await upsert_all(client, descriptor, data[descriptor.export_key], existing, context)
                    results[descriptor.category.value] = outcome.model_dump()
                    await context.advance(descriptor.weight)
            finally:
                await client.close()

            result = {
                "source_url": export.get("source_url"),
                "exported_at": export.get("exported_at"),
                "results": results,
                "errors": sum(r["errors"] for r in results.values()),
            }
            await self.registry.complete_job(job_id, result)
            return result
        finally:
            await self.artifacts.cleanup_workspace(job_id)


def load_backup(path: Path, workspace: Path) -> Dict[str, Any]:
    """
    Read the configuration document out of a backup archive or a bare YAML/JSON file.
    The configuration file is copied into `workspace` before it is parsed.
    """
    if not path.exists():
        raise ValidationError(f"Backup file {path} does not exist")

    if zipfile.is_zipfile(path):
        with zipfile.ZipFile(path) as zf:
            name = _config_member(zf.namelist())
            content = zf.read(name) if name else None
    elif tarfile.is_tarfile(path):
        with tarfile.open(path, "r:*") as tf:
            member = _config_member([m.name for m in tf.getmembers() if m.isfile()])
            extracted = tf.extractfile(member) if member else None
            content = extracted.read() if extracted else None
            name = member
    else:
        name, content = path.name, path.read_bytes()

    if content is None or name is None:
        raise ValidationError("Backup archive contains no configuration file")

    local = workspace / Path(name).name
    local.write_bytes(content)
    return parse_config(local)


def parse_config(path: Path) -> Dict[str, Any]:
    text = path.read_text(encoding="utf-8")
    try:
        if path.suffix == ".json":
            document = json.loads(text)
        else:
            document = yaml.safe_load(text)
    except (ValueError, yaml.YAMLError) as e:
        raise ValidationError(f"Backup file could not be parsed: {e}")

    if not isinstance(document, dict) or not isinstance(document.get("data"), dict):
        raise ValidationError("Backup file has no data section")
    return document


def _config_member(names) -> Optional[str]:
    candidates = sorted(
        name for name in names
        if name.lower().endswith(CONFIG_SUFFIXES) and "/" not in name.strip("/")
    )
    return candidates[0] if candidates else None

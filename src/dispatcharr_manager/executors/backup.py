import asyncio
import json
import logging
import tarfile
import zipfile
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import aiohttp
import yaml

from dispatcharr_manager.client import RemoteClient
from dispatcharr_manager.domain.job import JobType, utcnow
from dispatcharr_manager.domain.options import BackupOptions, Compression, ExportFormat
from dispatcharr_manager.domain.requests import BackupRequest
from dispatcharr_manager.errors import JobCancelledError, RemoteRequestError
from dispatcharr_manager.executors.artifacts import ArtifactStore
from dispatcharr_manager.executors.base import BaseExecutor, ClientFactory
from dispatcharr_manager.executors.categories import CATEGORY_ORDER, PER_ITEM_WEIGHT, enabled_descriptors
from dispatcharr_manager.executors.pipeline import DEFAULT_PAGE_SIZE, JobContext, fetch_category, paginate
from dispatcharr_manager.registry import JobRegistry

logger = logging.getLogger(__name__)

AUTH_WEIGHT = 1
ASSEMBLE_WEIGHT = 1
LOGOS_ENDPOINT = "/api/channels/logos/"
CONFIG_BASENAME = "dispatcharr-config"


class BackupExecutor(BaseExecutor):
    """
    Exports the enabled categories of one instance into a downloadable archive.
    """

    def __init__(self, registry: JobRegistry, client_factory: ClientFactory, artifacts: ArtifactStore,
                 page_size: int = DEFAULT_PAGE_SIZE):
        super().__init__(registry, client_factory, page_size)
        self.artifacts = artifacts

    @staticmethod
    def supported_job_type() -> JobType:
        return JobType.BACKUP

    @staticmethod
    def total_weight(request: BackupRequest) -> float:
        weight = AUTH_WEIGHT + sum(descriptor.weight for descriptor in enabled_descriptors(request.options.categories))
        if request.options.download_logos and not request.dry_run:
            weight += PER_ITEM_WEIGHT
        if not request.dry_run:
            weight += ASSEMBLE_WEIGHT
        return weight

    async def _run(self, request: BackupRequest, job_id: str) -> Any:
        context = JobContext(self.registry, job_id, self.total_weight(request))
        await self.registry.start_job(job_id, "Initializing backup...")
        try:
            export, logos, logo_errors = await self._export(request, context)
            summary = build_summary(export, logos, logo_errors)

            if request.dry_run:
                result = {"message": "Dry run completed - no files created", "summary": summary}
                await self.registry.complete_job(job_id, result)
                return result

            context.checkpoint()
            await context.report("Writing configuration file...")
            workspace = self.artifacts.workspace(job_id)
            suffix = ".zip" if request.options.compress == Compression.ZIP else ".tar.gz"
            archive = self.artifacts.archive_path(job_id, suffix)
            await asyncio.to_thread(write_backup, workspace, archive, export, logos, request.options)
            await context.advance(ASSEMBLE_WEIGHT, "Backup archive assembled")
            try:
                context.checkpoint()
            except JobCancelledError:
                await self.artifacts.delete_archive(job_id)
                raise

            result = {"file_path": str(archive), "file_name": archive.name, "summary": summary}
            await self.registry.complete_job(job_id, result)
            return result
        finally:
            await self.artifacts.cleanup_workspace(job_id)

    async def _export(self, request: BackupRequest, context: JobContext):
        client = self.client_factory(request.source)
        try:
            context.checkpoint()
            await context.report("Authenticating...")
            await client.authenticate()
            await context.advance(AUTH_WEIGHT)

            export: Dict[str, Any] = {
                "exported_at": utcnow().isoformat(),
                "source_url": request.source.url,
                "data": {},
            }
            for descriptor in enabled_descriptors(request.options.categories):
                await context.report(f"Exporting {descriptor.label}...")
                export["data"][descriptor.export_key] = await fetch_category(client, descriptor, context, self.page_size)
                await context.advance(descriptor.weight)

            logos: Dict[str, bytes] = {}
            logo_errors = 0
            if request.options.download_logos and not request.dry_run:
                logos, logo_errors = await self._download_logos(client, export["data"].get("logos"), context)
            return export, logos, logo_errors
        finally:
            await client.close()

    async def _download_logos(self, client: RemoteClient, listed: Optional[List[Dict[str, Any]]],
                              context: JobContext) -> Tuple[Dict[str, bytes], int]:
        await context.report("Downloading logos...")
        if listed is None:
            listed = await paginate(client, LOGOS_ENDPOINT, context, self.page_size)

        logos: Dict[str, bytes] = {}
        errors = 0
        step = PER_ITEM_WEIGHT / len(listed) if listed else PER_ITEM_WEIGHT
        if not listed:
            await context.advance(step)
        for i, logo in enumerate(listed, start=1):
            context.checkpoint()
            url = logo.get("cache_url") or logo.get("url")
            if url:
                try:
                    logos[str(logo.get("id"))] = await client.download(url)
                except (RemoteRequestError, aiohttp.ClientError, asyncio.TimeoutError) as e:
                    errors += 1
                    logger.warning("Failed to download logo %s: %s", logo.get("id"), e)
            message = f"Downloaded {i}/{len(listed)} logos..." if i % 10 == 0 or i == len(listed) else None
            await context.advance(step, message)
        return logos, errors


def build_summary(export: Dict[str, Any], logos: Dict[str, bytes], logo_errors: int = 0) -> Dict[str, Any]:
    counts = {
        key: len(value) for key, value in export["data"].items() if isinstance(value, list)
    }
    summary: Dict[str, Any] = {
        "exported_at": export["exported_at"],
        "source_url": export["source_url"],
        "counts": counts,
    }
    if logos or logo_errors:
        summary["logo_files"] = len(logos)
        summary["logo_errors"] = logo_errors
    return summary


def format_export(export: Dict[str, Any], fmt: ExportFormat) -> str:
    if fmt == ExportFormat.JSON:
        return json.dumps(export, indent=2, default=str)

    header = yaml.safe_dump(
        {"exported_at": export["exported_at"], "source_url": export["source_url"]},
        sort_keys=False, width=float("inf"),
    )
    parts = [header.rstrip(), "data:"]
    for descriptor in CATEGORY_ORDER:
        if descriptor.export_key not in export["data"]:
            continue
        section = yaml.safe_dump(
            {descriptor.export_key: export["data"][descriptor.export_key]},
            sort_keys=False, width=float("inf"), allow_unicode=True,
        ).rstrip("\n")
        parts.append(f"  # --- {descriptor.label[0].upper()}{descriptor.label[1:]} ---")
        parts.append("\n".join(f"  {line}" if line else line for line in section.split("\n")))
    return "\n".join(parts) + "\n"


def write_backup(workspace: Path, archive: Path, export: Dict[str, Any], logos: Dict[str, bytes],
                 options: BackupOptions) -> Path:
    """
    Write the configuration file and logo images into `workspace`, then pack the
    whole directory into `archive`.
    """
    config_file = workspace / f"{CONFIG_BASENAME}.{options.format.value}"
    config_file.write_text(format_export(export, options.format), encoding="utf-8")

    if logos:
        logo_dir = workspace / "logos"
        logo_dir.mkdir(exist_ok=True)
        for logo_id, content in logos.items():
            (logo_dir / f"{logo_id}.png").write_bytes(content)

    files = sorted(path for path in workspace.rglob("*") if path.is_file())
    if options.compress == Compression.ZIP:
        with zipfile.ZipFile(archive, "w", compression=zipfile.ZIP_DEFLATED) as zf:
            for path in files:
                zf.write(path, arcname=path.relative_to(workspace).as_posix())
    else:
        with tarfile.open(archive, "w:gz") as tf:
            for path in files:
                tf.add(path, arcname=path.relative_to(workspace).as_posix())
    return archive


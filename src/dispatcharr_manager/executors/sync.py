import logging
from typing import Any, Dict

from dispatcharr_manager.domain.job import JobType
from dispatcharr_manager.domain.requests import SyncRequest
from dispatcharr_manager.executors.base import BaseExecutor
from dispatcharr_manager.executors.categories import enabled_descriptors
from dispatcharr_manager.executors.pipeline import JobContext, fetch_category, fetch_existing, upsert_all

logger = logging.getLogger(__name__)

AUTH_WEIGHT = 1


class SyncExecutor(BaseExecutor):
    """
    Copies the enabled categories from a source instance to a destination
    instance, matching records by business key so reruns converge.
    """

    @staticmethod
    def supported_job_type() -> JobType:
        return JobType.SYNC

    async def _run(self, request: SyncRequest, job_id: str) -> Any:
        descriptors = enabled_descriptors(request.options.categories)
        context = JobContext(self.registry, job_id, 2 * AUTH_WEIGHT + sum(descriptor.weight for descriptor in descriptors))
        await self.registry.start_job(job_id, "Initializing sync...")

        source = self.client_factory(request.source)
        destination = self.client_factory(request.destination)
        try:
            context.checkpoint()
            await context.report("Authenticating to source...")
            await source.authenticate()
            await context.advance(AUTH_WEIGHT)

            context.checkpoint()
            await context.report("Authenticating to destination...")
            await destination.authenticate()
            await context.advance(AUTH_WEIGHT)

            results: Dict[str, Any] = {}
            for descriptor in descriptors:
                await context.report(f"Syncing {descriptor.label}...")
                records = await fetch_category(source, descriptor, context, self.page_size)
                existing = await fetch_existing(destination, descriptor, context, self.page_size)
                outcome = await upsert_all(destination, descriptor, records, existing, context, request.dry_run)
                results[descriptor.category.value] = outcome.model_dump()
                if outcome.errors:
                    await context.log(f"{outcome.errors} {descriptor.label} could not be written")
                await context.advance(descriptor.weight)
        finally:
            await source.close()
            await destination.close()

        logger.info("Sync from %s to %s finished", request.source.url, request.destination.url)
        result = {
            "dry_run": request.dry_run,
            "results": results,
            "errors": sum(r["errors"] for r in results.values()),
        }
        await self.registry.complete_job(job_id, result)
        return result

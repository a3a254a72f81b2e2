"""
Conventions shared by every long-running executor.

- Weighted progress: each step carries a weight; the reported percentage is
  processed weight over total weight, clamped and never decreasing.
- Pagination: collection endpoints are walked page by page until the server
  reports no next page.
- Cooperative cancellation: `JobContext.checkpoint()` runs before every page
  fetch and every destructive write and raises JobCancelledError once the job
  was cancelled.
- Per-item isolation: a failed write becomes a TransientItemError, is counted,
  and the loop continues.
- Idempotent upsert: records are matched on a business key and updated in
  place, otherwise created.
"""
import asyncio
import logging
from typing import Any, Dict, List, Optional, Tuple

import aiohttp
from pydantic import BaseModel

from dispatcharr_manager.client import RemoteClient
from dispatcharr_manager.errors import JobCancelledError, RemoteRequestError, TransientItemError
from dispatcharr_manager.executors.categories import CategoryDescriptor
from dispatcharr_manager.registry import JobRegistry

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 1000


class WeightedProgress:
    def __init__(self, total_weight: float):
        self.total_weight = max(float(total_weight), 1.0)
        self.processed = 0.0
        self._reported = 0.0

    @property
    def percent(self) -> float:
        value = min(max(self.processed / self.total_weight * 100.0, 0.0), 100.0)
        self._reported = max(self._reported, value)
        return self._reported

    def advance(self, weight: float) -> float:
        self.processed = min(self.processed + weight, self.total_weight)
        return self.percent


class JobContext:
    """
    What an executor needs to report into and be steered by its owning job.
    """

    def __init__(self, registry: JobRegistry, job_id: str, total_weight: float = 1.0):
        self.registry = registry
        self.job_id = job_id
        self.progress = WeightedProgress(total_weight)

    def checkpoint(self) -> None:
        if self.registry.is_cancel_requested(self.job_id):
            job = self.registry.get_job(self.job_id)
            raise JobCancelledError(self.job_id, job.message if job else None)

    async def report(self, message: str) -> None:
        await self.registry.set_progress(self.job_id, self.progress.percent, message)

    async def advance(self, weight: float, message: Optional[str] = None) -> None:
        self.progress.advance(weight)
        await self.registry.set_progress(self.job_id, self.progress.percent, message)

    async def log(self, message: str) -> None:
        await self.registry.add_log(self.job_id, message)


class CategoryResult(BaseModel):
    synced: int = 0
    skipped: int = 0
    errors: int = 0


async def paginate(client: RemoteClient, endpoint: str, context: JobContext,
                   page_size: int = DEFAULT_PAGE_SIZE) -> List[Any]:
    """
    Fetch every record of a collection endpoint.

    Non-paginated arrays are returned unchanged and single objects are wrapped
    in a list.
    """
    results: List[Any] = []
    page = 1
    while True:
        context.checkpoint()
        response = await client.get(endpoint, params={"page": page, "page_size": page_size})
        if isinstance(response, dict) and isinstance(response.get("results"), list):
            results.extend(response["results"])
            if not response.get("next"):
                return results
            page += 1
        elif isinstance(response, list):
            return response
        elif response is None:
            return results
        else:
            return [response]


async def _fetch_records(client: RemoteClient, descriptor: CategoryDescriptor, context: JobContext,
                         page_size: int) -> List[Any]:
    if descriptor.paginated:
        return await paginate(client, descriptor.endpoint, context, page_size)
    context.checkpoint()
    return as_records(await client.get(descriptor.endpoint))


async def fetch_category(client: RemoteClient, descriptor: CategoryDescriptor, context: JobContext,
                         page_size: int = DEFAULT_PAGE_SIZE) -> Any:
    """Records of a category as they should be exported; singletons come back as one object."""
    if descriptor.singleton:
        context.checkpoint()
        return await client.get(descriptor.endpoint)
    records = await _fetch_records(client, descriptor, context, page_size)
    return [record for record in records if descriptor.keep(record)]


async def fetch_existing(client: RemoteClient, descriptor: CategoryDescriptor, context: JobContext,
                         page_size: int = DEFAULT_PAGE_SIZE) -> Dict[Tuple[Any, ...], Dict[str, Any]]:
    """Every destination record of a category, indexed by business key."""
    if descriptor.singleton:
        return {}
    return index_by_key(descriptor, await _fetch_records(client, descriptor, context, page_size))


def as_records(response: Any) -> List[Dict[str, Any]]:
    if isinstance(response, list):
        return response
    if isinstance(response, dict) and isinstance(response.get("results"), list):
        return response["results"]
    if response is None:
        return []
    return [response]


def index_by_key(descriptor: CategoryDescriptor, records: List[Dict[str, Any]]) -> Dict[Tuple[Any, ...], Dict[str, Any]]:
    return {descriptor.business_key(record): record for record in records}


async def upsert_record(client: RemoteClient, descriptor: CategoryDescriptor, record: Dict[str, Any],
                        existing: Dict[Tuple[Any, ...], Dict[str, Any]], context: JobContext) -> str:
    """
    Update the destination record matching `record`'s business key, or create it.

    Returns "updated" or "created".

    Raises:
        JobCancelledError: the job was cancelled before the write.
        TransientItemError: the write itself failed.
    """
    context.checkpoint()
    key = descriptor.business_key(record)
    payload = descriptor.writable(record)
    try:
        if descriptor.singleton:
            await client.put(descriptor.endpoint, payload)
            return "updated"
        match = existing.get(key)
        if match is not None and match.get("id") is not None:
            await client.put(f"{descriptor.endpoint}{match['id']}/", payload)
            return "updated"
        created = await client.post(descriptor.endpoint, payload)
        if isinstance(created, dict):
            existing[key] = created
        return "created"
    except (RemoteRequestError, aiohttp.ClientError, asyncio.TimeoutError) as e:
        raise TransientItemError(key, e) from e


async def upsert_all(client: RemoteClient, descriptor: CategoryDescriptor, records: Any,
                     existing: Dict[Tuple[Any, ...], Dict[str, Any]], context: JobContext,
                     dry_run: bool = False) -> CategoryResult:
    result = CategoryResult()
    items = [records] if descriptor.singleton else list(records or [])
    for record in items:
        if not isinstance(record, dict) or not descriptor.keep(record):
            result.skipped += 1
            continue
        if dry_run:
            result.synced += 1
            continue
        try:
            await upsert_record(client, descriptor, record, existing, context)
            result.synced += 1
        except TransientItemError as e:
            result.errors += 1
            logger.warning("Failed to write %s %s: %s", descriptor.label, e.key, e.cause)
    return result

import logging
from abc import ABC, abstractmethod
from typing import Any, Callable

from dispatcharr_manager.client import DispatcharrClient, RemoteClient
from dispatcharr_manager.domain.connection import ConnectionCredentials
from dispatcharr_manager.domain.job import JobType
from dispatcharr_manager.errors import JobCancelledError
from dispatcharr_manager.executors.pipeline import DEFAULT_PAGE_SIZE
from dispatcharr_manager.registry import JobRegistry

logger = logging.getLogger(__name__)

ClientFactory = Callable[[ConnectionCredentials], RemoteClient]


def default_client_factory(timeout: float = 120.0) -> ClientFactory:
    def factory(connection: ConnectionCredentials) -> RemoteClient:
        return DispatcharrClient(connection, timeout=timeout)
    return factory


class BaseExecutor(ABC):
    """
    Maps the outcome of `_run` onto the job: cancellation lands in `cancelled`,
    anything else that escapes lands in `failed` with the original message.
    """

    def __init__(self, registry: JobRegistry, client_factory: ClientFactory,
                 page_size: int = DEFAULT_PAGE_SIZE):
        self.registry = registry
        self.client_factory = client_factory
        self.page_size = page_size

    @staticmethod
    @abstractmethod
    def supported_job_type() -> JobType:
        ...

    @abstractmethod
    async def _run(self, request: Any, job_id: str) -> Any:
        ...

    async def execute(self, request: Any, job_id: str) -> Any:
        try:
            result = await self._run(request, job_id)
            if self.registry.is_cancel_requested(job_id):
                job = self.registry.get_job(job_id)
                raise JobCancelledError(job_id, job.message if job else None)
            return result
        except JobCancelledError as e:
            logger.info("Job %s cancelled", job_id)
            await self.registry.cancel_job(job_id, str(e))
            raise
        except Exception as e:
            logger.exception("Job %s failed", job_id)
            await self.registry.fail_job(job_id, str(e))
            raise

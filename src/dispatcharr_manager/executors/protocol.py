from typing import Any, Protocol

from dispatcharr_manager.domain.job import JobType


class TaskExecutor(Protocol):
    """
    Protocol class for task executors.
    """

    async def execute(self, request: Any, job_id: str) -> Any:
        """
        Run the operation described by `request` on behalf of job `job_id`.

        The executor drives the job into a terminal state itself. It raises
        JobCancelledError when stopped at a checkpoint, and re-raises any other
        failure after recording it on the job.

        Args:
            request: The request model the executor supports.
            job_id (str): The job created for this run.

        Returns:
            Any: The result recorded on the completed job.
        """
        ...

    @staticmethod
    def supported_job_type() -> JobType:
        """
        Return the job type this executor runs.
        """
        ...

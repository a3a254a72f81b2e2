from typing import Dict, List

from dispatcharr_manager.domain.job import JobType
from dispatcharr_manager.executors.protocol import TaskExecutor


class TaskExecutorFactory:
    """
    Lookup of the executor that handles each job type.
    """
    def __init__(self):
        self._executors: Dict[JobType, TaskExecutor] = {}

    @property
    def supported_job_types(self) -> List[JobType]:
        return list(self._executors)

    def register(self, executor: TaskExecutor) -> None:
        """
        Register an executor under the job type it supports.

        Args:
            executor (TaskExecutor): The executor instance to register.
        """
        job_type = executor.supported_job_type()
        if job_type in self._executors:
            raise ValueError(f"An executor for job type '{job_type.value}' is already registered")
        self._executors[job_type] = executor

    def get_executor(self, job_type: JobType) -> TaskExecutor:
        """
        Get the executor for a job type.

        Raises:
            KeyError: If no executor is registered for the job type.
        """
        if job_type not in self._executors:
            raise KeyError(f"No executor registered for job type '{job_type.value}'")
        return self._executors[job_type]

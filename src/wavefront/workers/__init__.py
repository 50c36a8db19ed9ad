"""Worker adapters that execute a single task."""

from wavefront.workers.base import WorkerBase, WorkerContext, WorkerResult
from wavefront.workers.command import CommandWorker

__all__ = ["CommandWorker", "WorkerBase", "WorkerContext", "WorkerResult"]

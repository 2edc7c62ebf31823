"""
Worker module.
Contains the worker pool and the progress callbacks handed to task bodies.
"""

from kiln.worker.callback import BufferedCallback, WorkerCallback
from kiln.worker.main import WorkerPool, run

__all__ = ["WorkerPool", "WorkerCallback", "BufferedCallback", "run"]

from .base import TaskWorker

__all__ = ["TaskWorker"]

from .protocol import JobStorage
from .base import BaseJobStorage, sort_jobs
from .file import FileJobStorage
from .sqlalchemy import SqlAlchemyJobStorage, InMemoryJobStorage

__all__ = [
    "JobStorage", "BaseJobStorage", "sort_jobs",
    "FileJobStorage", "SqlAlchemyJobStorage", "InMemoryJobStorage",
]

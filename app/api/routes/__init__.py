from . import callbacks, jobs, tasks

__all__ = ["callbacks", "jobs", "tasks"]

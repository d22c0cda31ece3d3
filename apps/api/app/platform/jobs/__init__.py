from app.platform.jobs.models import Job, JobStatus
from app.platform.jobs.queue import DbJobQueue, JobHandler, JobQueue

__all__ = ["Job", "JobStatus", "DbJobQueue", "JobHandler", "JobQueue"]

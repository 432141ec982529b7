"""Send service-level jobs to Celery."""
import structlog

from cache import CounterStore
from services.jobs import Job

logger = structlog.get_logger(__name__)


class CeleryJobDispatcher:
    """Publishes jobs by task name; jobs with a unique id are sent once per window."""

    def __init__(self, store: CounterStore | None = None, unique_ttl: int = 3600, app=None):
        self.store = store
        self.unique_ttl = unique_ttl
        self._app = app

    @property
    def app(self):
        if self._app is None:
            from celery_app import app

            self._app = app
        return self._app

    def dispatch(self, job: Job, delay: float | None = None) -> None:
        unique_id = job.unique_id()
        if unique_id and self.store is not None:
            if not self.store.add(f"job_unique:{unique_id}", 1, self.unique_ttl):
                logger.info("job_dispatch_deduplicated", task=job.task_name, unique_id=unique_id)
                return

        options = {"countdown": delay} if delay else {}
        self.app.send_task(job.task_name, kwargs=job.kwargs(), **options)
        logger.info("job_dispatched", task=job.task_name, delay=delay)

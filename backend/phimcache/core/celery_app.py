from celery import Celery
from phimcache.core.config import settings

celery_app = Celery("worker", broker=settings.REDIS_URL, backend=settings.REDIS_URL)

celery_app.conf.update(task_track_started=True)

# The recurring episode sync runs as a single in-process loop (see
# services.episode_sync.EpisodeSyncScheduler), so no beat schedule is
# registered here; these tasks are for operator-triggered runs.
celery_app.conf.timezone = settings.TIMEZONE

# Import tasks to register them
from phimcache.tasks import sync  # noqa

"""SMS Bridge Worker Tasks."""

# Import all tasks to register them with Celery
from smsbridge_worker.tasks import decisions  # noqa: F401
from smsbridge_worker.tasks import queue  # noqa: F401

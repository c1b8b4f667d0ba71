from celery import Celery

from journeyflow.config import settings

celery_app = Celery(
    "journeyflow_tasks",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=["journeyflow.tasks"]
)

celery_app.conf.update(
    task_track_started=True,
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    timezone="UTC",
    enable_utc=True,
    task_always_eager=False,
    task_eager_propagates=True,
    task_ignore_result=False,
    # Retry settings
    task_default_retry_delay=60,  # 1 minute
    task_max_retries=3,
    # Worker settings
    worker_max_tasks_per_child=1000,
    worker_concurrency=settings.WORKER_CONCURRENCY,
    result_expires=3600,  # 1 hour
    # Connection error handling
    broker_connection_retry_on_startup=True,
    broker_connection_max_retries=10,
    result_backend_transport_options={
        'retry_on_timeout': True,
        'max_retries': 3,
    }
)

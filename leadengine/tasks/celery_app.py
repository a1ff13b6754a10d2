from celery import Celery
from celery.signals import setup_logging as celery_setup_logging

from leadengine.core.config import get_settings
from leadengine.core.logging import setup_worker_logging

settings = get_settings()

celery_app = Celery(
    "leadengine",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
    include=[
        "leadengine.tasks.moderation_tasks",
        "leadengine.tasks.conversation_tasks",
    ]
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    result_expires=1800,  # 30 minutes
    task_track_started=True,
    task_time_limit=10 * 60,
    task_soft_time_limit=8 * 60,

    # Acknowledge only after the task finished; handlers are idempotent
    task_acks_late=True,
    task_reject_on_worker_lost=True,

    task_routes={
        'leadengine.tasks.moderation_tasks.*': {'queue': 'moderation'},
        'leadengine.tasks.conversation_tasks.*': {'queue': 'conversations'},
    },
)

celery_app.conf.beat_schedule = {
    # Poll Reddit inboxes of every connected account
    'poll-all-conversations': {
        'task': 'poll_all_conversations',
        'schedule': float(settings.conversation_poll_seconds),
        'options': {'queue': 'conversations'},
    },
}


@celery_setup_logging.connect
def configure_worker_logging(**kwargs):
    """Use the application log format instead of Celery's own"""
    setup_worker_logging()

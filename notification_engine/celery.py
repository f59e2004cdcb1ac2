from celery import Celery
from celery.signals import setup_logging

# Create Celery app
celery = Celery("notification_engine")

# Load configuration from notification_engine.config.celeryconfig module
celery.config_from_object("notification_engine.config.celeryconfig")


@setup_logging.connect
def configure_worker_logging(**kwargs):
    """Keep Celery from installing its own handlers; loguru owns the output."""
    from notification_engine.utils.logging import CustomizeLogger

    CustomizeLogger.intercept_standard_logging()

"""Celery entry point for the billing jobs.

Usage:
    celery -A celery_worker.celery worker --beat --loglevel=info
"""

from app import create_app
from services.scheduler import make_celery

flask_app = create_app()
celery = make_celery(flask_app)

"""Celery worker package.

Run with: celery -A apps.worker worker -Q previews,default --loglevel=info
"""

from apps.worker.main import celery_app

__all__ = ["celery_app"]

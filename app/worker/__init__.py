"""Celery worker - task entrypoints and the job execution pipeline."""

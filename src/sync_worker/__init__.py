"""Celery sync worker."""

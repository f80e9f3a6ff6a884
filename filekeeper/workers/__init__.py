"""Celery task modules for FileKeeper."""

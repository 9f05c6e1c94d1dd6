# app/tasks/__init__.py
"""Celery task modules; importing ``app.celery_app`` registers them."""

"""
WSGI and Flask-Migrate / Alembic entry point.

Usage:
    flask --app wsgi db migrate -m "description"
    flask --app wsgi db upgrade
    gunicorn wsgi:app
    flask --app wsgi run-scheduler     # single process running the background loops
"""

from pmis import create_app

app = create_app()

"""
WSGI entry point and Flask-Migrate / Alembic entry point.

Usage:
    flask --app wsgi run
    flask --app wsgi seed-questions
    flask --app wsgi db upgrade
"""

from app import create_app

app = create_app()

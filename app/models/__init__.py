"""
Well-Architected Review Service
Database models package.

The shared ``db`` extension object lives here so models, services and the
application factory import it from a single place:

    from app.models import db
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()

"""
PMMIS Work Approval Core
Model package: the shared Flask-SQLAlchemy handle.

Every model module imports ``db`` from here; ``create_app`` imports the
modules so that ``db.create_all()`` and Alembic see every table.
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()

"""
Case Lifecycle Engine
Model package — owns the shared Flask-SQLAlchemy handle.

Every model module imports ``db`` from here:

    from caseflow.models import db
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()

"""
docflow — Document Workflow Back End
SQLAlchemy model package.

Every model module imports the shared ``db`` instance from here:

    from docflow.models import db
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()

"""Flask extension instances shared across the application."""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()

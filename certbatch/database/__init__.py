"""
Persistence layer: SQLAlchemy connection management, models and services.
"""

"""
Database package initialization.

The package follows a modular structure:
- base: Declarative base and shared column mixins
- connection: Async engine, session factory and health checks
- models: SQLAlchemy ORM models for orders, catalog, users and notifications
"""

# Import submodules explicitly when needed to avoid circular dependencies

__all__ = []

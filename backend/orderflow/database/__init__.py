"""
Database package initialization.

The package follows a modular structure:
- base: Declarative base and common mixins
- connection: Async engine and session management
- models: SQLAlchemy ORM models for the order lifecycle tables
"""

# Import submodules explicitly when needed to avoid circular dependencies

__all__ = []

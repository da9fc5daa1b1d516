# backend/carechat/__init__.py
"""
Import ORM models from each app so that:

- Alembic and Base.metadata.create_all() see all tables.
- The package exposes a clear surface.

The actual model classes are kept in carechat/apps/*/models.py.
"""

from .apps.accounts import models as accounts_models  # users (directory)
from .apps.chat import models as chat_models          # sessions, messages, reads, presence

__all__ = [
    "accounts_models",
    "chat_models",
]

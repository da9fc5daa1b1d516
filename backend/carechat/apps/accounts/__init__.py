# backend/carechat/apps/accounts/__init__.py
"""
Accounts app

The chat core only consumes a narrow User Directory:
- lookup by id
- active / anonymous flags
- display fields (username, full name, avatar)

Registration, login, profiles and moderation live outside this service;
the tables here mirror the columns the chat core reads.
"""

from . import directory, models  # noqa: F401

__all__ = ["directory", "models"]

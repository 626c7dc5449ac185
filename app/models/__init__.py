"""
Model package initializer.

This module exists to make sure SQLAlchemy's registry is populated in any runtime
that uses the ORM outside of `app/main.py` (scripts, one-off jobs, tests).
"""

# Import side-effects: register ORM mappings.
from app.models import (  # noqa: F401
    scim_group,
    scim_user,
)

"""
Model package initializer.

Makes sure SQLAlchemy's registry is populated in any runtime that uses the ORM
outside of `app/main.py` (Celery workers, Alembic).
"""

# Import side-effects: register ORM mappings.
from app.models import refund, subscription, tenant, webhook_event  # noqa: F401
from app.modules.governance.domain.security import audit_log  # noqa: F401

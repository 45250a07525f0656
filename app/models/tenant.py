from datetime import datetime
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import Boolean, String, text, Uuid as PG_UUID
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy_utils import StringEncryptedType
from sqlalchemy_utils.types.encrypted.encrypted_type import AesEngine

from app.models._encryption import get_encryption_key
from app.models._types import UTCDateTime, utcnow
from app.shared.db.base import Base


class Tenant(Base):
    """
    Organization record owned by the tenant/org service.

    The billing core only reads it (display name and billing contact).
    """

    __tablename__ = "tenants"

    id: Mapped[UUID] = mapped_column(PG_UUID(), primary_key=True, default=uuid4)
    name: Mapped[str] = mapped_column(
        StringEncryptedType(String, get_encryption_key, AesEngine, "pkcs5")
    )
    contact_email: Mapped[Optional[str]] = mapped_column(
        StringEncryptedType(String, get_encryption_key, AesEngine, "pkcs5"),
        nullable=True,
    )
    is_deleted: Mapped[bool] = mapped_column(
        Boolean, default=False, server_default=text("false"), nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow)

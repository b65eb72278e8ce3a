from __future__ import annotations

import enum
from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import DateTime, Enum, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.esign.models import Base
from app.esign.utils import utcnow

if TYPE_CHECKING:
    from app.esign.models import User


class DocumentStatus(str, enum.Enum):
    DRAFT = "draft"
    PENDING = "pending"
    SIGNED = "signed"
    REJECTED = "rejected"


class SlotStatus(str, enum.Enum):
    PENDING = "pending"
    SIGNED = "signed"


def _enum_values(cls: type[enum.Enum]) -> list[str]:
    return [m.value for m in cls]


class Document(Base):
    __tablename__ = "documents"
    __table_args__ = (
        Index("idx_documents_creator", "creator_id"),
        Index("idx_documents_status", "status"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")

    # draft -> pending -> signed; rejected is reserved
    status: Mapped[DocumentStatus] = mapped_column(
        Enum(DocumentStatus, native_enum=False, length=16, values_callable=_enum_values, name="document_status"),
        nullable=False,
        default=DocumentStatus.PENDING,
    )

    creator_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="RESTRICT"), nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=False), nullable=False, default=utcnow, onupdate=utcnow
    )

    creator: Mapped["User"] = relationship("User", lazy="selectin")

    signers: Mapped[list["SignerSlot"]] = relationship(
        "SignerSlot",
        back_populates="document",
        order_by="SignerSlot.order_number",
        lazy="selectin",
    )


class SignerSlot(Base):
    __tablename__ = "document_signers"
    __table_args__ = (
        UniqueConstraint("document_id", "user_id", name="uq_document_signer_user"),
        UniqueConstraint("document_id", "order_number", name="uq_document_signer_order"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    document_id: Mapped[int] = mapped_column(ForeignKey("documents.id", ondelete="CASCADE"), nullable=False)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="RESTRICT"), nullable=False)

    order_number: Mapped[int] = mapped_column(Integer, nullable=False)  # 1-based, declaration order
    status: Mapped[SlotStatus] = mapped_column(
        Enum(SlotStatus, native_enum=False, length=16, values_callable=_enum_values, name="slot_status"),
        nullable=False,
        default=SlotStatus.PENDING,
    )

    invited_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
    signed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    document: Mapped[Document] = relationship("Document", back_populates="signers", lazy="selectin")
    user: Mapped["User"] = relationship("User", lazy="selectin")


class Signature(Base):
    """
    One completed signature act. Append-only.
    """

    __tablename__ = "signatures"
    __table_args__ = (
        UniqueConstraint("document_id", "user_id", name="uq_signature_document_user"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    document_id: Mapped[int] = mapped_column(ForeignKey("documents.id", ondelete="CASCADE"), nullable=False)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="RESTRICT"), nullable=False)

    signature_data: Mapped[str] = mapped_column(Text, nullable=False)  # opaque image payload (data URL)
    ip_address: Mapped[str | None] = mapped_column(String(64), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String(500), nullable=True)

    signed_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)

    user: Mapped["User"] = relationship("User", lazy="selectin")

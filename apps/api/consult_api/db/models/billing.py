"""SQLAlchemy ORM models for the ledger: doctor wallets, transactions, patient quota."""

from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    func,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from consult_api.db.base import Base
from consult_api.db.enums import Modality
from consult_api.db.types import JsonType


class DoctorWallet(Base):
    """
    Running earnings for one doctor.

    balance/total_earned are only ever changed by single-statement increments
    (`balance = balance + :amount`), never read-modify-write.
    """

    __tablename__ = "doctor_wallets"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    doctor_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, unique=True)
    balance: Mapped[Decimal] = mapped_column(
        Numeric(14, 2), server_default=text("0"), default=Decimal("0.00"), nullable=False
    )
    total_earned: Mapped[Decimal] = mapped_column(
        Numeric(14, 2), server_default=text("0"), default=Decimal("0.00"), nullable=False
    )
    total_withdrawn: Mapped[Decimal] = mapped_column(
        Numeric(14, 2), server_default=text("0"), default=Decimal("0.00"), nullable=False
    )
    currency: Mapped[str] = mapped_column(String(3), nullable=False)

    created_at: Mapped[datetime] = mapped_column(server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        server_default=func.now(), onupdate=func.now(), nullable=False
    )

    transactions: Mapped[list["WalletTransaction"]] = relationship(
        back_populates="wallet", order_by="WalletTransaction.created_at"
    )


class WalletTransaction(Base):
    """
    Immutable ledger entry.

    Session-produced credits carry (session_type, session_id, unit_index); the
    unique constraint means a given billable unit can be credited once, no
    matter how many job executions race to do it.
    """

    __tablename__ = "wallet_transactions"
    __table_args__ = (
        UniqueConstraint(
            "session_type",
            "session_id",
            "unit_index",
            "type",
            name="uq_wallet_txn_session_unit",
        ),
        Index("idx_wallet_txn_session", "session_type", "session_id"),
        Index("idx_wallet_txn_doctor", "doctor_id", "created_at"),
        CheckConstraint("amount >= 0", name="ck_wallet_txn_amount_nonneg"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    wallet_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("doctor_wallets.id", ondelete="CASCADE"), nullable=False
    )
    doctor_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)

    type: Mapped[str] = mapped_column(String(10), nullable=False)  # credit, debit
    amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    modality: Mapped[str | None] = mapped_column(String(10), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    # text_session, call_session, appointment
    session_type: Mapped[str | None] = mapped_column(String(20), nullable=True)
    session_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    unit_index: Mapped[int | None] = mapped_column(Integer, nullable=True)

    metadata_json: Mapped[dict] = mapped_column("metadata", JsonType, nullable=False, default=dict)

    created_at: Mapped[datetime] = mapped_column(server_default=func.now(), nullable=False)

    wallet: Mapped[DoctorWallet] = relationship(back_populates="transactions")


class PatientSubscription(Base):
    """Pre-purchased consultation quota per patient and modality."""

    __tablename__ = "patient_subscriptions"
    __table_args__ = (
        CheckConstraint("text_sessions_remaining >= 0", name="ck_sub_text_nonneg"),
        CheckConstraint("voice_calls_remaining >= 0", name="ck_sub_voice_nonneg"),
        CheckConstraint("video_calls_remaining >= 0", name="ck_sub_video_nonneg"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    patient_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, unique=True)
    is_active: Mapped[bool] = mapped_column(
        Boolean, server_default=text("true"), default=True, nullable=False
    )
    text_sessions_remaining: Mapped[int] = mapped_column(
        Integer, server_default=text("0"), default=0, nullable=False
    )
    voice_calls_remaining: Mapped[int] = mapped_column(
        Integer, server_default=text("0"), default=0, nullable=False
    )
    video_calls_remaining: Mapped[int] = mapped_column(
        Integer, server_default=text("0"), default=0, nullable=False
    )
    payment_transaction_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    payment_gateway: Mapped[str | None] = mapped_column(String(50), nullable=True)

    created_at: Mapped[datetime] = mapped_column(server_default=func.now(), nullable=False)

    QUOTA_COLUMNS = {
        Modality.TEXT.value: "text_sessions_remaining",
        Modality.VOICE.value: "voice_calls_remaining",
        Modality.VIDEO.value: "video_calls_remaining",
    }

    def remaining_for(self, modality: str) -> int:
        return getattr(self, self.QUOTA_COLUMNS[Modality(modality).value])

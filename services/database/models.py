"""
ORM models for the note store.

Note secrets never hit the database in plaintext: set_secret / set_nullifier
encrypt them under a key bound to the note commitment.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import JSON, DateTime, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from services.crypto_core.field_encryption import FieldEncryption


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class EncryptedNote(Base):
    __tablename__ = "notes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    pool_id: Mapped[str] = mapped_column(String(64), index=True)
    commitment: Mapped[str] = mapped_column(String(66), unique=True, index=True)
    nullifier_hash: Mapped[str] = mapped_column(String(66), unique=True, index=True)

    encrypted_secret: Mapped[str] = mapped_column(Text)
    encrypted_nullifier: Mapped[str] = mapped_column(Text)

    leaf_index: Mapped[int] = mapped_column(Integer, default=-1)
    root_after: Mapped[Optional[str]] = mapped_column(String(66), nullable=True)
    siblings: Mapped[List[str]] = mapped_column(JSON, default=list)

    status: Mapped[str] = mapped_column(String(16), default="pending", index=True)
    deposit_tx: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    spent_tx: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)
    spent_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    def set_secret(self, secret: str, encryptor: FieldEncryption) -> None:
        self.encrypted_secret = encryptor.encrypt(secret, f"secret|{self.commitment}")

    def set_nullifier(self, nullifier: str, encryptor: FieldEncryption) -> None:
        self.encrypted_nullifier = encryptor.encrypt(nullifier, f"nullifier|{self.commitment}")

    def decrypt_secret(self, encryptor: FieldEncryption) -> str:
        return encryptor.decrypt(self.encrypted_secret, f"secret|{self.commitment}")

    def decrypt_nullifier(self, encryptor: FieldEncryption) -> str:
        return encryptor.decrypt(self.encrypted_nullifier, f"nullifier|{self.commitment}")

    def __repr__(self) -> str:
        return f"<EncryptedNote {self.commitment[:18]}... pool={self.pool_id} status={self.status}>"


class AuditLog(Base):
    __tablename__ = "audit_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    event_type: Mapped[str] = mapped_column(String(64), index=True)
    event_data: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

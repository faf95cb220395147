"""
Encrypted persistence for notes, with an audit trail of every state change.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from services.api.logging_config import get_logger
from services.crypto_core.field_codec import field_to_hex
from services.crypto_core.field_encryption import FieldEncryption
from services.database.models import AuditLog, EncryptedNote
from services.settlement.types import MerklePath, Note, NoteStatus, normalize_hex32

logger = get_logger("database.notes")


class NoteNotFound(LookupError):
    def __init__(self, commitment: str):
        super().__init__(f"note {commitment[:18]}... not found")
        self.commitment = commitment


class NoteStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession], encryptor: FieldEncryption):
        self._sessions = session_factory
        self._encryptor = encryptor

    # ---------- conversion ----------

    def _to_note(self, row: EncryptedNote) -> Note:
        return Note(
            pool_id=row.pool_id,
            commitment=row.commitment,
            nullifier_secret=row.decrypt_nullifier(self._encryptor),
            note_secret=row.decrypt_secret(self._encryptor),
            nullifier_hash=row.nullifier_hash,
            leaf_index=row.leaf_index,
            root_after=row.root_after,
            siblings=list(row.siblings or []),
            deposit_tx=row.deposit_tx,
            status=NoteStatus(row.status),
            spent_tx=row.spent_tx,
            created_at=row.created_at,
            spent_at=row.spent_at,
        )

    @staticmethod
    async def _row(session: AsyncSession, commitment: str) -> EncryptedNote:
        key = normalize_hex32(commitment)
        result = await session.execute(select(EncryptedNote).where(EncryptedNote.commitment == key))
        row = result.scalar_one_or_none()
        if row is None:
            raise NoteNotFound(key)
        return row

    @staticmethod
    def _audit(session: AsyncSession, event_type: str, **data) -> None:
        session.add(AuditLog(event_type=event_type, event_data=data))

    # ---------- writes ----------

    async def save(self, note: Note) -> None:
        row = EncryptedNote(
            pool_id=note.pool_id,
            commitment=note.commitment,
            nullifier_hash=note.nullifier_hash,
            leaf_index=note.leaf_index,
            root_after=note.root_after,
            siblings=list(note.siblings),
            status=note.status.value,
            deposit_tx=note.deposit_tx,
            spent_tx=note.spent_tx,
            created_at=note.created_at,
            spent_at=note.spent_at,
        )
        row.set_secret(note.note_secret, self._encryptor)
        row.set_nullifier(note.nullifier_secret, self._encryptor)
        async with self._sessions() as session:
            session.add(row)
            self._audit(session, "note_saved", commitment=note.commitment, pool_id=note.pool_id,
                        status=note.status.value)
            await session.commit()
        logger.debug(f"Saved note {note.commitment[:18]}...")

    async def set_deposit_tx(self, commitment: str, signature: str) -> None:
        async with self._sessions() as session:
            row = await self._row(session, commitment)
            row.deposit_tx = signature
            self._audit(session, "deposit_submitted", commitment=row.commitment, signature=signature)
            await session.commit()

    async def finalize_deposit(self, note: Note) -> None:
        async with self._sessions() as session:
            row = await self._row(session, note.commitment)
            row.leaf_index = note.leaf_index
            row.root_after = note.root_after
            row.siblings = list(note.siblings)
            row.deposit_tx = note.deposit_tx
            row.status = NoteStatus.CONFIRMED.value
            self._audit(session, "deposit_finalized", commitment=row.commitment,
                        leaf_index=note.leaf_index, signature=note.deposit_tx)
            await session.commit()

    async def update_path(self, commitment: str, path: MerklePath) -> None:
        """Replace the cached Merkle path with a freshly recovered one."""
        async with self._sessions() as session:
            row = await self._row(session, commitment)
            row.root_after = field_to_hex(path.root)
            row.siblings = [field_to_hex(s) for s in path.siblings]
            if path.leaf_index >= 0:
                row.leaf_index = path.leaf_index
            self._audit(session, "path_recovered", commitment=row.commitment, leaf_index=row.leaf_index)
            await session.commit()

    async def mark_spent(self, commitment: str, signature: Optional[str] = None) -> None:
        async with self._sessions() as session:
            row = await self._row(session, commitment)
            if row.status == NoteStatus.SPENT.value:
                return
            row.status = NoteStatus.SPENT.value
            row.spent_tx = signature or row.spent_tx
            row.spent_at = datetime.now(timezone.utc)
            self._audit(session, "note_spent", commitment=row.commitment, signature=signature)
            await session.commit()
        logger.info(f"Note {commitment[:18]}... marked spent")

    # ---------- reads ----------

    async def get(self, commitment: str) -> Optional[Note]:
        async with self._sessions() as session:
            try:
                row = await self._row(session, commitment)
            except NoteNotFound:
                return None
            return self._to_note(row)

    async def require(self, commitment: str) -> Note:
        note = await self.get(commitment)
        if note is None:
            raise NoteNotFound(commitment)
        return note

    async def list(self, pool_id: Optional[str] = None, status: Optional[NoteStatus] = None) -> List[Note]:
        query = select(EncryptedNote).order_by(EncryptedNote.id)
        if pool_id is not None:
            query = query.where(EncryptedNote.pool_id == pool_id)
        if status is not None:
            query = query.where(EncryptedNote.status == status.value)
        async with self._sessions() as session:
            rows = (await session.execute(query)).scalars().all()
            return [self._to_note(row) for row in rows]

    async def audit_events(self, commitment: Optional[str] = None, limit: int = 100) -> List[AuditLog]:
        query = select(AuditLog).order_by(AuditLog.id.desc()).limit(limit)
        async with self._sessions() as session:
            rows = (await session.execute(query)).scalars().all()
        if commitment is not None:
            key = normalize_hex32(commitment)
            rows = [r for r in rows if r.event_data.get("commitment") == key]
        return list(rows)

#!/usr/bin/env python3
"""
Backups of the SQLite note database.

Losing the note database means losing the ability to withdraw, so the
service snapshots it on a schedule and keeps the newest N copies.

- Online snapshot through the SQLite backup API (aiosqlite)
- gzip compression
- Rotation
- Integrity check before restore
"""
import asyncio
import gzip
import json
import shutil
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import aiosqlite

from services.api.logging_config import get_logger

logger = get_logger("database.backup")

BACKUP_PREFIX = "notes_backup_"
METADATA_FILE = "backups.json"


def _utc_stamp() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class NoteDatabaseBackup:
    def __init__(self, db_path: str, backup_dir: str, max_backups: int = 7, compress: bool = True):
        self.db_path = Path(db_path)
        self.backup_dir = Path(backup_dir)
        self.max_backups = max_backups
        self.compress = compress
        self.backup_dir.mkdir(parents=True, exist_ok=True)

    @property
    def metadata_path(self) -> Path:
        return self.backup_dir / METADATA_FILE

    def _backup_filename(self) -> str:
        stamp = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S_%f")
        return f"{BACKUP_PREFIX}{stamp}.db" + (".gz" if self.compress else "")

    async def create_backup(self, description: Optional[str] = None) -> Dict[str, Any]:
        """
        Snapshot the database.

        Returns:
            dict with path, filename, size_bytes, timestamp, compressed, description

        Raises:
            FileNotFoundError: the database file does not exist
        """
        if not self.db_path.exists():
            raise FileNotFoundError(f"Database not found: {self.db_path}")

        filename = self._backup_filename()
        backup_path = self.backup_dir / filename

        if self.compress:
            snapshot = self.backup_dir / f"tmp_{filename[:-3]}"
            await self._snapshot(snapshot)
            with open(snapshot, "rb") as src, gzip.open(backup_path, "wb") as dst:
                shutil.copyfileobj(src, dst)
            snapshot.unlink()
        else:
            await self._snapshot(backup_path)

        info = {
            "path": str(backup_path),
            "filename": filename,
            "size_bytes": backup_path.stat().st_size,
            "timestamp": _utc_stamp(),
            "compressed": self.compress,
            "description": description,
        }
        self._append_metadata(info)
        self._rotate()
        logger.info(f"Backup created: {filename} ({info['size_bytes']} bytes)")
        return info

    async def _snapshot(self, target: Path) -> None:
        async with aiosqlite.connect(str(self.db_path)) as source:
            async with aiosqlite.connect(str(target)) as dest:
                await source.backup(dest)

    def _load_metadata(self) -> Dict[str, Any]:
        if not self.metadata_path.exists():
            return {"backups": []}
        with open(self.metadata_path, "r") as f:
            return json.load(f)

    def _save_metadata(self, metadata: Dict[str, Any]) -> None:
        with open(self.metadata_path, "w") as f:
            json.dump(metadata, f, indent=2)

    def _append_metadata(self, info: Dict[str, Any]) -> None:
        metadata = self._load_metadata()
        metadata["backups"].append(info)
        self._save_metadata(metadata)

    def _rotate(self) -> None:
        backups = sorted(self.backup_dir.glob(f"{BACKUP_PREFIX}*.db*"), key=lambda p: p.name, reverse=True)
        removed = set()
        for old in backups[self.max_backups:]:
            logger.info(f"Rotating old backup: {old.name}")
            old.unlink()
            removed.add(old.name)
        if removed:
            metadata = self._load_metadata()
            metadata["backups"] = [b for b in metadata["backups"] if b["filename"] not in removed]
            self._save_metadata(metadata)

    def list_backups(self) -> List[Dict[str, Any]]:
        """Recorded backups whose files still exist, oldest first."""
        return [b for b in self._load_metadata()["backups"] if Path(b["path"]).exists()]

    def _materialize(self, backup_path: Path, scratch_name: str) -> Path:
        if backup_path.suffix != ".gz":
            return backup_path
        scratch = self.backup_dir / scratch_name
        with gzip.open(backup_path, "rb") as src, open(scratch, "wb") as dst:
            shutil.copyfileobj(src, dst)
        return scratch

    async def verify(self, backup_path: Path) -> bool:
        plain = self._materialize(backup_path, "tmp_verify.db")
        try:
            async with aiosqlite.connect(str(plain)) as conn:
                async with conn.execute("PRAGMA integrity_check") as cursor:
                    row = await cursor.fetchone()
            return row is not None and row[0] == "ok"
        except aiosqlite.Error as e:
            logger.error(f"Backup verification failed for {backup_path.name}: {e}")
            return False
        finally:
            if plain != backup_path:
                plain.unlink(missing_ok=True)

    async def verify_latest(self) -> bool:
        backups = self.list_backups()
        if not backups:
            logger.warning("No backups found to verify")
            return False
        return await self.verify(Path(backups[-1]["path"]))

    async def restore(self, filename: str, safety_backup: bool = True) -> None:
        """
        Replace the database with a backup.

        Raises:
            FileNotFoundError: unknown backup
            ValueError: the backup fails its integrity check
        """
        backup_path = self.backup_dir / filename
        if not backup_path.exists():
            raise FileNotFoundError(f"Backup not found: {filename}")

        # the safety backup may rotate backup_path away, so copy it out first
        plain = self.backup_dir / "tmp_restore.db"
        if backup_path.suffix == ".gz":
            with gzip.open(backup_path, "rb") as src, open(plain, "wb") as dst:
                shutil.copyfileobj(src, dst)
        else:
            shutil.copy2(backup_path, plain)
        try:
            if not await self.verify(plain):
                raise ValueError(f"Backup {filename} failed integrity check")
            if safety_backup and self.db_path.exists():
                await self.create_backup(description="Safety backup before restore")
            shutil.copy2(plain, self.db_path)
        finally:
            plain.unlink(missing_ok=True)
        logger.info(f"Database restored from {filename}")

    def stats(self) -> Dict[str, Any]:
        backups = self.list_backups()
        stamps = [b["timestamp"] for b in backups]
        return {
            "total_backups": len(backups),
            "total_size_bytes": sum(b["size_bytes"] for b in backups),
            "oldest_backup": min(stamps) if stamps else None,
            "newest_backup": max(stamps) if stamps else None,
        }


class BackupScheduler:
    """Periodic backups as a background task."""

    RETRY_AFTER_FAILURE_SEC = 300

    def __init__(self, backup: NoteDatabaseBackup, interval_hours: float = 24):
        self.backup = backup
        self.interval_hours = interval_hours
        self.task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self.task is not None and not self.task.done()

    def start(self) -> None:
        if self.running:
            logger.warning("Backup scheduler already running")
            return
        self.task = asyncio.create_task(self._loop())
        logger.info(f"Backup scheduler started: every {self.interval_hours}h")

    async def stop(self) -> None:
        if self.task is None:
            return
        self.task.cancel()
        try:
            await self.task
        except asyncio.CancelledError:
            pass
        self.task = None
        logger.info("Backup scheduler stopped")

    async def _loop(self) -> None:
        while True:
            try:
                info = await self.backup.create_backup(description="Scheduled backup")
                await self.backup.verify(Path(info["path"]))
                await asyncio.sleep(self.interval_hours * 3600)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Scheduled backup failed: {e}", exc_info=True)
                await asyncio.sleep(self.RETRY_AFTER_FAILURE_SEC)

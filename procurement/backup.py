"""
Backups of the ledger database.

Each backup is a timestamped ZIP holding a consistent copy of the SQLite
file (taken with the sqlite3 online backup API) and the admin settings
overlay. Only the newest ``backup_retention_count`` archives are kept.
"""
import logging
import os
import sqlite3
import zipfile
from datetime import datetime
from pathlib import Path
from typing import Optional

from config import PROJECT_ROOT, Config

logger = logging.getLogger(__name__)

ARCHIVE_PREFIX = "ledger_backup_"


class BackupService:
    def __init__(self, config: Config) -> None:
        self.config = config
        self.backup_dir = Path(config.backup_dir)
        self.backup_dir.mkdir(parents=True, exist_ok=True)

    def create_backup(self) -> str:
        """Create a new archive and rotate old ones. Returns the archive file name."""
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        zip_name = f"{ARCHIVE_PREFIX}{timestamp}.zip"
        zip_path = self.backup_dir / zip_name
        logger.info("Starting backup: %s", zip_name)

        try:
            with zipfile.ZipFile(zip_path, "w", zipfile.ZIP_DEFLATED) as zipf:
                if self.config.db_path.exists():
                    temp_db = self.backup_dir / f"temp_{timestamp}.db"
                    try:
                        src = sqlite3.connect(self.config.db_path)
                        dst = sqlite3.connect(temp_db)
                        try:
                            src.backup(dst)
                        finally:
                            src.close()
                            dst.close()
                        zipf.write(temp_db, arcname=f"output/{self.config.db_path.name}")
                    finally:
                        if temp_db.exists():
                            temp_db.unlink()

                config_dir = Path(os.getenv("CONFIG_DIR", str(PROJECT_ROOT / "config")))
                if config_dir.exists():
                    for f in config_dir.glob("*.json"):
                        zipf.write(f, arcname=f"config/{f.name}")
        except (OSError, sqlite3.Error, zipfile.BadZipFile) as exc:
            logger.error("Backup failed: %s", exc)
            if zip_path.exists():
                zip_path.unlink()
            raise

        logger.info("Backup completed: %s", zip_name)
        self.rotate_backups()
        return zip_name

    def rotate_backups(self) -> list[str]:
        """Delete all but the newest archives. Returns the names removed."""
        retention = self.config.backup_retention_count
        if retention <= 0:
            return []
        backups = sorted(
            self.backup_dir.glob(f"{ARCHIVE_PREFIX}*.zip"),
            key=os.path.getmtime,
            reverse=True,
        )
        removed = []
        for old_zip in backups[retention:]:
            logger.info("Rotating out old backup: %s", old_zip.name)
            try:
                old_zip.unlink()
                removed.append(old_zip.name)
            except OSError as exc:
                logger.warning("Failed to delete old backup %s: %s", old_zip, exc)
        return removed

    def get_last_backup_time(self) -> Optional[datetime]:
        backups = sorted(self.backup_dir.glob(f"{ARCHIVE_PREFIX}*.zip"), key=os.path.getmtime)
        if not backups:
            return None
        return datetime.fromtimestamp(backups[-1].stat().st_mtime)

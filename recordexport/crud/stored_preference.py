from sqlalchemy.orm import Session
from sqlalchemy.exc import IntegrityError
from sqlalchemy import select, delete
from typing import Optional, Dict, List, Any, Iterable
from recordexport.models.stored_preference import StoredPreference
from recordexport.core.logging_config import logger


class StoredPreferenceCRUD:
    """CRUD operations for StoredPreference"""

    def get_by_key(self, db: Session, key: str) -> Optional[StoredPreference]:
        """Get the stored entry for an exact key"""
        stmt = select(StoredPreference).where(StoredPreference.key == key)
        return db.execute(stmt).scalar_one_or_none()

    def get_many(self, db: Session, keys: Iterable[str]) -> Dict[str, Any]:
        """Get values for several keys; missing keys are left out"""
        keys = list(keys)
        if not keys:
            return {}
        stmt = select(StoredPreference).where(StoredPreference.key.in_(keys))
        return {row.key: row.value for row in db.execute(stmt).scalars().all()}

    def list_keys(self, db: Session, prefix: str = "") -> List[str]:
        """List stored keys, optionally restricted to a prefix"""
        stmt = select(StoredPreference.key)
        if prefix:
            stmt = stmt.where(StoredPreference.key.startswith(prefix, autoescape=True))
        return list(db.execute(stmt).scalars().all())

    def create_or_update(self, db: Session, key: str, value: Any) -> StoredPreference:
        """Create or overwrite the entry for a key"""
        existing = self.get_by_key(db, key)

        if existing:
            existing.value = value
            db.commit()
            db.refresh(existing)
            logger.debug(f"Updated stored preference key={key}")
            return existing

        # If not exists, try to create with exception handling for race conditions
        try:
            entry = StoredPreference(key=key, value=value)
            db.add(entry)
            db.commit()
            db.refresh(entry)
            logger.debug(f"Created stored preference key={key}")
            return entry
        except IntegrityError:
            # Another request created the key between check and insert
            db.rollback()
            existing = self.get_by_key(db, key)
            if existing:
                existing.value = value
                db.commit()
                db.refresh(existing)
                logger.debug(f"Updated stored preference (race) key={key}")
                return existing
            raise

    def delete_keys(self, db: Session, keys: Iterable[str]) -> int:
        """Delete entries by key, returns the number of rows removed"""
        keys = list(keys)
        if not keys:
            return 0
        result = db.execute(delete(StoredPreference).where(StoredPreference.key.in_(keys)))
        db.commit()
        return result.rowcount or 0


stored_preference_crud = StoredPreferenceCRUD()

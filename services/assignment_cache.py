from typing import Optional
from pydantic import ValidationError
from models.assignment import ActiveAssignmentSnapshot, RemoteAssignment
from services.state_store import StateStore
from utils.subjects import normalize_subject_key
from core.exceptions import CacheCorruptError
from core.logger import logger

SNAPSHOT_PREFIX = "active_assignment:"


def snapshot_key(subject: str) -> str:
    key = normalize_subject_key(subject)
    if not key:
        raise ValueError("subject must not be empty")
    return f"{SNAPSHOT_PREFIX}{key}"


class AssignmentCache:
    """Per-subject snapshots of the active teacher assignment."""

    def __init__(self, store: StateStore):
        self.store = store

    async def get_snapshot(self, subject: str) -> Optional[ActiveAssignmentSnapshot]:
        key = snapshot_key(subject)
        raw = await self.store.get(key)
        if raw is None:
            return None

        try:
            snapshot = ActiveAssignmentSnapshot.model_validate_json(raw)
        except ValidationError as e:
            raise CacheCorruptError(key, f"{e.error_count()} validation error(s)") from e

        if normalize_subject_key(snapshot.subject) != normalize_subject_key(subject):
            raise CacheCorruptError(key, f"snapshot belongs to {snapshot.subject!r}")
        return snapshot

    async def save_assignment(self, subject: str, remote: RemoteAssignment) -> ActiveAssignmentSnapshot:
        snapshot = ActiveAssignmentSnapshot.from_remote(subject, remote)
        await self.save_snapshot(snapshot)
        return snapshot

    async def save_snapshot(self, snapshot: ActiveAssignmentSnapshot):
        # Whole document under one key replaces the previous snapshot in one write
        await self.store.set(snapshot_key(snapshot.subject), snapshot.model_dump_json())
        logger.info("Assignment snapshot cached", subject=snapshot.subject, assignment_id=snapshot.assignment_id)

    async def clear(self, subject: str):
        await self.store.delete(snapshot_key(subject))
        logger.info("Assignment snapshot cleared", subject=subject)

    async def clear_if_matches(self, subject: str, assignment_id: str) -> bool:
        try:
            snapshot = await self.get_snapshot(subject)
        except CacheCorruptError:
            await self.clear(subject)
            return True
        if snapshot and snapshot.assignment_id == assignment_id:
            await self.clear(subject)
            return True
        return False

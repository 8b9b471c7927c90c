from typing import List, Optional, Sequence
from models.assignment import ActiveAssignmentSnapshot, RemoteAssignment
from models.session import Decision
from services.assignment_cache import AssignmentCache
from services.directory_client import DirectoryClient
from utils.subjects import normalize_subject_key, subjects_match
from core.config import settings
from core.exceptions import CacheCorruptError, DirectoryError
from core.logger import logger


class ResolutionService:
    """
    Decides between a teacher assignment and the default stages for one subject.

    Precedence:
      1. Server returned assignments: the first one wins and replaces the snapshot.
      2. Server returned none: the snapshot is cleared, default stages are shown.
      3. Server unavailable: a non-empty snapshot is reused (stale), else default.

    Resolution never commits a session; callers may preview the decision first.
    """

    def __init__(self, directory: DirectoryClient, cache: AssignmentCache,
                 default_stages: Optional[Sequence[str]] = None):
        self.directory = directory
        self.cache = cache
        self.default_stages = tuple(default_stages if default_stages is not None else settings.DEFAULT_STAGES)

    async def resolve(self, subject: str) -> Decision:
        subject = subject.strip() if subject else ""
        if not normalize_subject_key(subject):
            raise ValueError("subject must not be empty")

        cached = await self._read_snapshot(subject)

        try:
            assignments = await self.directory.fetch_active_assignments(subject)
        except DirectoryError as e:
            return self._fallback(subject, cached, e)

        matching = self._for_subject(subject, assignments)
        if not matching:
            await self.cache.clear(subject)
            logger.info("No teacher assignment, using default stages", subject=subject)
            return Decision.default(subject, self.default_stages)

        if len(matching) > 1:
            logger.info("Several active assignments, taking the first", subject=subject,
                        count=len(matching), chosen=matching[0].assignment_id)
        chosen = matching[0]
        await self.cache.save_assignment(subject, chosen)
        logger.info("Resolved teacher assignment", subject=subject, assignment_id=chosen.assignment_id)
        return Decision.teacher(subject, chosen)

    async def _read_snapshot(self, subject: str) -> Optional[ActiveAssignmentSnapshot]:
        try:
            return await self.cache.get_snapshot(subject)
        except CacheCorruptError as e:
            # Treated as absent; the next successful fetch overwrites it
            logger.warning("Ignoring corrupt assignment snapshot", subject=subject, key=e.key, reason=e.reason)
            return None

    def _fallback(self, subject: str, cached: Optional[ActiveAssignmentSnapshot], error: Exception) -> Decision:
        if cached is not None and cached.is_active:
            logger.warning("Directory unavailable, reusing cached assignment", subject=subject,
                           assignment_id=cached.assignment_id, error=str(error))
            return Decision.from_snapshot(subject, cached)

        logger.warning("Directory unavailable and nothing cached, using default stages",
                       subject=subject, error=str(error))
        return Decision.default(subject, self.default_stages)

    @staticmethod
    def _for_subject(subject: str, assignments: List[RemoteAssignment]) -> List[RemoteAssignment]:
        kept = []
        for assignment in assignments:
            if assignment.subject and not subjects_match(subject, assignment.subject):
                logger.warning("Dropping assignment for another subject", subject=subject,
                               assignment_id=assignment.assignment_id, other=assignment.subject)
                continue
            kept.append(assignment)
        return kept

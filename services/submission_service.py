import asyncio
import uuid
from collections import Counter
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple, Union
from pydantic import ValidationError
from models.session import AssignmentSource, Session
from models.submission import (
    AnswerEntry, PendingStatus, PendingSubmission, Progress, SubmissionDeferred, SubmissionResult,
)
from services.assignment_cache import AssignmentCache
from services.directory_client import DirectoryClient
from services.session_service import SessionManager
from services.state_store import StateStore
from utils.subjects import normalize_subject_key
from core.config import settings
from core.exceptions import (
    AnswerValidationError, InvalidAssignmentError, ServerError, UnreachableError,
)
from core.logger import logger

PENDING_PREFIX = "pending_submission:"
PROGRESS_PREFIX = "progress:"

AnswerInput = Union[AnswerEntry, Tuple[int, str]]
LocalScorer = Callable[[Session, List[AnswerEntry]], SubmissionResult]


def unscored_result(session: Session, answers: List[AnswerEntry]) -> SubmissionResult:
    """Used for default stages when no local scorer is plugged in."""
    return SubmissionResult(score=0, correct_answers=0, total_questions=len(answers), points_earned=0)


def progress_key(subject: str, reference: str) -> str:
    return f"{PROGRESS_PREFIX}{normalize_subject_key(subject)}:{reference}"


class SubmissionCoordinator:
    """
    Sends gameplay answers with the session's identity and records the outcome.

    Teacher sessions always go to the directory service: one retry after a short
    delay, then the submission is parked as a PendingSubmission. Default sessions
    are scored locally and never touch the network.
    """

    def __init__(self, store: StateStore, directory: DirectoryClient,
                 cache: Optional[AssignmentCache] = None,
                 sessions: Optional[SessionManager] = None,
                 local_scorer: Optional[LocalScorer] = None,
                 attempts: int = None, retry_delay: float = None):
        self.store = store
        self.directory = directory
        self.cache = cache
        self.sessions = sessions
        self.local_scorer = local_scorer or unscored_result
        self.attempts = max(1, attempts if attempts is not None else settings.SUBMIT_ATTEMPTS)
        self.retry_delay = settings.SUBMIT_RETRY_DELAY_SECONDS if retry_delay is None else retry_delay
        self._progress_locks: Dict[str, asyncio.Lock] = {}

    async def submit(self, session: Session, answers: Iterable[AnswerInput]) -> Union[SubmissionResult, SubmissionDeferred]:
        entries = self._normalize_answers(answers)
        self._check_answers(session, entries)

        if self.sessions is not None and self.sessions.current_session() == session:
            async with self.sessions.submitting(session):
                return await self._submit(session, entries)
        return await self._submit(session, entries)

    async def _submit(self, session: Session, entries: List[AnswerEntry]) -> Union[SubmissionResult, SubmissionDeferred]:
        if not session.is_teacher:
            result = self.local_scorer(session, entries)
            await self._record_progress(session.subject, session.progress_ref, session.source.value, result)
            logger.info("Default stage scored locally", subject=session.subject, stage=session.stage,
                        score=result.score)
            return result

        try:
            result = await self._submit_with_retry(session.assignment_id, entries)
        except InvalidAssignmentError:
            logger.warning("Submitted assignment has expired", subject=session.subject,
                           assignment_id=session.assignment_id)
            if self.cache is not None:
                await self.cache.clear_if_matches(session.subject, session.assignment_id)
            raise
        except (UnreachableError, ServerError) as e:
            pending = await self._defer(session, entries, e)
            return SubmissionDeferred(
                submission_id=pending.submission_id,
                assignment_id=pending.assignment_id,
                reason=str(e),
            )

        await self._record_progress(session.subject, session.assignment_id, session.source.value, result)
        return result

    async def _submit_with_retry(self, assignment_id: str, entries: List[AnswerEntry]) -> SubmissionResult:
        for attempt in range(1, self.attempts + 1):
            try:
                return await self.directory.submit_answers(assignment_id, entries)
            except (UnreachableError, ServerError) as e:
                if attempt >= self.attempts:
                    raise
                logger.warning("Submission failed, retrying", assignment_id=assignment_id,
                               attempt=attempt, error=str(e), delay=self.retry_delay)
                await asyncio.sleep(self.retry_delay)

    async def _defer(self, session: Session, entries: List[AnswerEntry], error: Exception) -> PendingSubmission:
        pending = PendingSubmission(
            submission_id=uuid.uuid4().hex,
            subject=session.subject,
            assignment_id=session.assignment_id,
            title=session.title,
            answers=entries,
            attempts=self.attempts,
            last_error=str(error),
        )
        await self.store.set(f"{PENDING_PREFIX}{pending.submission_id}", pending.model_dump_json())
        logger.warning("Submission deferred", submission_id=pending.submission_id,
                       assignment_id=pending.assignment_id, error=str(error))
        return pending

    async def pending_submissions(self, include_rejected: bool = False) -> List[PendingSubmission]:
        found = []
        for key in await self.store.keys(PENDING_PREFIX):
            raw = await self.store.get(key)
            if raw is None:
                continue
            try:
                pending = PendingSubmission.model_validate_json(raw)
            except ValidationError as e:
                # Kept in the store for manual recovery, just not retried
                logger.error("Unreadable pending submission", key=key, errors=e.error_count())
                continue
            if pending.status is PendingStatus.PENDING or include_rejected:
                found.append(pending)
        return sorted(found, key=lambda p: p.created_at)

    async def retry_pending(self) -> List[SubmissionResult]:
        """Try each deferred submission once, oldest first."""
        results = []
        for pending in await self.pending_submissions():
            key = f"{PENDING_PREFIX}{pending.submission_id}"
            try:
                result = await self.directory.submit_answers(pending.assignment_id, pending.answers)
            except InvalidAssignmentError as e:
                rejected = pending.model_copy(update={
                    "status": PendingStatus.REJECTED,
                    "attempts": pending.attempts + 1,
                    "last_error": str(e),
                })
                await self.store.set(key, rejected.model_dump_json())
                logger.error("Deferred submission rejected by server", submission_id=pending.submission_id,
                             assignment_id=pending.assignment_id)
                continue
            except (UnreachableError, ServerError) as e:
                await self.store.set(key, pending.model_copy(update={
                    "attempts": pending.attempts + 1,
                    "last_error": str(e),
                }).model_dump_json())
                logger.warning("Deferred submission still failing", submission_id=pending.submission_id,
                               error=str(e))
                if isinstance(e, UnreachableError):
                    break
                continue

            await self._record_progress(pending.subject, pending.assignment_id, AssignmentSource.TEACHER.value, result)
            await self.store.delete(key)
            logger.info("Deferred submission delivered", submission_id=pending.submission_id,
                        assignment_id=pending.assignment_id, score=result.score)
            results.append(result)
        return results

    async def get_progress(self, subject: str, reference: str) -> Optional[Progress]:
        raw = await self.store.get(progress_key(subject, reference))
        if raw is None:
            return None
        try:
            return Progress.model_validate_json(raw)
        except ValidationError:
            logger.warning("Ignoring corrupt progress record", subject=subject, reference=reference)
            return None

    async def _record_progress(self, subject: str, reference: str, source: str, result: SubmissionResult):
        key = progress_key(subject, reference)
        # Read-modify-write; a live submit and the retry job may deliver for the same key
        async with self._progress_locks.setdefault(key, asyncio.Lock()):
            current = await self.get_progress(subject, reference)
            attempts = current.attempts if current else 0
            best = current.best_score if current else 0.0
            progress = Progress(
                subject=subject,
                reference=reference,
                source=source,
                attempts=attempts + 1,
                best_score=max(best, result.score),
                last_result=result,
                updated_at=datetime.utcnow(),
            )
            await self.store.set(key, progress.model_dump_json())

    @staticmethod
    def _normalize_answers(answers: Iterable[AnswerInput]) -> List[AnswerEntry]:
        entries = []
        for answer in answers:
            if isinstance(answer, AnswerEntry):
                entries.append(answer)
            else:
                question_id, student_answer = answer
                entries.append(AnswerEntry(question_id=question_id, student_answer=student_answer))
        return entries

    @staticmethod
    def _check_answers(session: Session, entries: Sequence[AnswerEntry]):
        counts = Counter(entry.question_id for entry in entries)
        duplicates = sorted(qid for qid, n in counts.items() if n > 1)
        if duplicates:
            raise AnswerValidationError(f"Duplicate answers for questions {duplicates}")

        if not session.is_teacher or session.questions is None:
            return

        expected = {q.question_id for q in session.questions}
        given = set(counts)
        missing = sorted(expected - given)
        unknown = sorted(given - expected)
        if missing or unknown:
            raise AnswerValidationError(f"Answers must cover every question once (missing={missing}, unknown={unknown})")

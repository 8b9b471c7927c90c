import asyncio
from contextlib import asynccontextmanager
from typing import Optional
from pydantic import ValidationError
from models.session import AssignmentSource, Decision, Session, SessionState
from services.resolution_service import ResolutionService
from services.state_store import StateStore
from services.task_manager import TaskManager
from utils.subjects import normalize_subject_key
from core.exceptions import SessionStateError
from core.logger import logger

CURRENT_SESSION_KEY = "current_session"


class SessionManager:
    """
    Owns the single device-wide gameplay session.

    Idle -> Resolving -> Committed -> (Submitting -> Committed | Idle)

    The state is derived from what is actually going on (in-flight resolutions,
    a running submission, a committed session), so it cannot drift from reality.
    """

    def __init__(self, store: StateStore, resolver: ResolutionService, tasks: TaskManager = None):
        self.store = store
        self.resolver = resolver
        self.tasks = tasks or TaskManager()
        self._session: Optional[Session] = None
        self._pending = 0
        self._submitting = False
        self._generation = 0
        self._committed_generation = 0
        self._selections = 0
        self._commit_lock = asyncio.Lock()
        self._state = SessionState.IDLE

    @property
    def state(self) -> SessionState:
        return self._state

    def _settle(self):
        if self._submitting:
            new_state = SessionState.SUBMITTING
        elif self._pending:
            new_state = SessionState.RESOLVING
        elif self._session is not None:
            new_state = SessionState.COMMITTED
        else:
            new_state = SessionState.IDLE

        if new_state is not self._state:
            logger.debug("Session state changed", old=self._state.value, new=new_state.value)
            self._state = new_state

    async def load(self) -> Optional[Session]:
        """Restore the persisted session after a restart."""
        raw = await self.store.get(CURRENT_SESSION_KEY)
        session = None
        if raw is not None:
            try:
                session = Session.model_validate_json(raw)
            except ValidationError as e:
                logger.warning("Discarding corrupt persisted session", errors=e.error_count())
                await self.store.delete(CURRENT_SESSION_KEY)

        self._session = session
        self._settle()
        if session:
            logger.info("Session restored", subject=session.subject, source=session.source.value,
                        assignment_id=session.assignment_id)
        return session

    def current_session(self) -> Optional[Session]:
        return self._session

    async def resolve(self, subject: str) -> Decision:
        """
        Resolve a subject without committing. Concurrent calls for the same subject
        share one fetch. Any unexpected failure degrades to the default stages.

        Every call is stamped with a generation so `commit` can refuse a decision
        that a later resolution has already overtaken.
        """
        subject = subject.strip() if subject else ""
        key = normalize_subject_key(subject)
        if not key:
            raise ValueError("subject must not be empty")

        self._generation += 1
        generation = self._generation

        self._pending += 1
        self._settle()
        try:
            task = self.tasks.get_or_start(key, lambda: self.resolver.resolve(subject))
            # Shield so one impatient caller cannot cancel the fetch others are waiting on
            decision = await asyncio.shield(task)
        except Exception:
            logger.exception("Resolution failed, falling back to default stages", subject=subject)
            decision = Decision.default(subject, self.resolver.default_stages)
        finally:
            self._pending -= 1
            self._settle()
        return decision.model_copy(update={"generation": generation})

    async def select_subject(self, subject: str, stage: Optional[str] = None) -> Optional[Session]:
        """
        Resolve and commit. Returns None when a newer selection or commit happened
        while this one was waiting; the older result is dropped instead of applied.
        """
        self._selections += 1
        selection = self._selections

        decision = await self.resolve(subject)

        if selection != self._selections:
            logger.info("Discarding superseded resolution", subject=subject,
                        generation=decision.generation, latest=self._generation)
            return None
        return await self.commit(decision, stage=stage)

    async def commit(self, decision: Decision, stage: Optional[str] = None) -> Optional[Session]:
        """
        Make the decision the current session. A decision whose resolution started
        before the one behind the committed session is stale: it is dropped and
        None is returned.
        """
        generation = decision.generation
        if not generation:
            # Built by the caller, so it is as fresh as anything started so far
            self._generation += 1
            generation = self._generation

        if decision.source is AssignmentSource.DEFAULT:
            if stage is None and decision.stages:
                stage = decision.stages[0]
            session = Session(
                subject=decision.subject,
                title=decision.display_title,
                source=AssignmentSource.DEFAULT,
                stage=stage,
            )
        else:
            session = Session(
                subject=decision.subject,
                assignment_id=decision.assignment_id,
                title=decision.display_title,
                source=AssignmentSource.TEACHER,
                assignment_type=decision.assignment_type,
                questions=decision.questions,
            )

        async with self._commit_lock:
            if self._submitting:
                raise SessionStateError("Cannot commit a new session while a submission is in progress")
            if generation < self._committed_generation:
                logger.info("Discarding stale decision", subject=decision.subject,
                            generation=generation, committed=self._committed_generation)
                return None

            previous = self._session
            await self.store.set(CURRENT_SESSION_KEY, session.model_dump_json())
            self._session = session
            self._committed_generation = generation
            self._settle()

        logger.info("Session committed", subject=session.subject, source=session.source.value,
                    assignment_id=session.assignment_id, stage=session.stage,
                    replaced=previous.subject if previous else None)
        return session

    async def end_session(self):
        if self._submitting:
            raise SessionStateError("Cannot end the session while a submission is in progress")

        await self.store.delete(CURRENT_SESSION_KEY)
        ended = self._session
        self._session = None
        self._settle()
        logger.info("Session ended", subject=ended.subject if ended else None)

    @asynccontextmanager
    async def submitting(self, session: Session):
        if self._submitting:
            raise SessionStateError("A submission is already in progress")
        if self._session is None or self._session != session:
            raise SessionStateError("Only the committed session can be submitted")

        self._submitting = True
        self._settle()
        try:
            yield session
        finally:
            # Back to Committed whatever the outcome; only end_session goes to Idle
            self._submitting = False
            self._settle()

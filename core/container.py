from dataclasses import dataclass
from typing import Optional
from services.assignment_cache import AssignmentCache
from services.directory_client import DirectoryClient
from services.resolution_service import ResolutionService
from services.session_service import SessionManager
from services.state_store import StateStore, build_state_store
from services.submission_service import LocalScorer, SubmissionCoordinator
from core.logger import logger


@dataclass
class Container:
    store: StateStore
    directory: DirectoryClient
    cache: AssignmentCache
    resolver: ResolutionService
    sessions: SessionManager
    submissions: SubmissionCoordinator

    async def close(self):
        self.sessions.tasks.cancel_all()
        await self.store.close()
        logger.debug("Container closed")


def wire(store: StateStore, directory: DirectoryClient,
         local_scorer: Optional[LocalScorer] = None, **coordinator_options) -> Container:
    cache = AssignmentCache(store)
    resolver = ResolutionService(directory, cache)
    sessions = SessionManager(store, resolver)
    submissions = SubmissionCoordinator(store, directory, cache=cache, sessions=sessions,
                                        local_scorer=local_scorer, **coordinator_options)
    return Container(store, directory, cache, resolver, sessions, submissions)


async def build_container(backend: str = None, local_scorer: Optional[LocalScorer] = None) -> Container:
    store = await build_state_store(backend)
    container = wire(store, DirectoryClient(), local_scorer=local_scorer)
    await container.sessions.load()
    return container

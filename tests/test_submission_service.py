import asyncio
import os
import tempfile
import unittest
import httpx
import pytest
from unittest.mock import AsyncMock
from db.session import build_engine, build_sessionmaker, init_models
from models.assignment import RemoteAssignment
from models.session import AssignmentSource, Decision, Session
from models.submission import (
    AnswerEntry, PendingStatus, SubmissionDeferred, SubmissionResult,
)
from core.container import wire
from services.assignment_cache import AssignmentCache
from services.directory_client import DirectoryClient
from services.monitoring_service import monitor_pending_submissions
from services.state_store import SqlStateStore
from services.submission_service import PENDING_PREFIX, SubmissionCoordinator, progress_key
from core.exceptions import AnswerValidationError, InvalidAssignmentError, ServerError, UnreachableError

STAGES = ["Stage 1", "Stage 2", "Stage 3"]
RESULT = {"score": 100.0, "correct_answers": 2, "total_questions": 2, "points_earned": 20}


def transport_for(routes):
    """routes: path -> list of responses or exceptions, consumed in order"""
    calls = []

    def handler(request: httpx.Request):
        calls.append(request.url.path)
        outcome = routes[request.url.path].pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    return httpx.MockTransport(handler), calls


@pytest.mark.asyncio
async def test_scenario_d_submit_then_deferred(store, algebra_payload):
    routes = {
        "/api/student/assignments": [httpx.Response(200, json={"assignments": [algebra_payload]})],
        "/api/submit/7": [
            httpx.Response(200, json=RESULT),
            httpx.ConnectError("offline"),
            httpx.ConnectError("offline"),
        ],
    }
    transport, calls = transport_for(routes)
    directory = DirectoryClient(base_url="https://directory.test", student_id=5, transport=transport)
    app = wire(store, directory, retry_delay=0)

    session = await app.sessions.select_subject("Math")
    assert (session.subject, session.assignment_id, session.source.value) == ("Math", "7", "teacher")

    # Answer order does not have to follow question order
    result = await app.submissions.submit(session, [(102, "Yes"), (101, "2")])

    assert isinstance(result, SubmissionResult)
    assert result.total_questions == 2
    assert result.correct_answers == 2
    progress = await app.submissions.get_progress("Math", "7")
    assert progress.attempts == 1
    assert progress.best_score == 100.0
    assert progress.last_result == result

    outcome = await app.submissions.submit(session, [(101, "2"), (102, "Yes")])

    assert isinstance(outcome, SubmissionDeferred)
    assert calls.count("/api/submit/7") == 3
    pending = await app.submissions.pending_submissions()
    assert [p.submission_id for p in pending] == [outcome.submission_id]
    assert pending[0].assignment_id == "7"
    assert [a.question_id for a in pending[0].answers] == [101, 102]
    assert app.sessions.current_session() == session
    assert app.sessions.state.value == "committed"


@pytest.fixture
def directory():
    return AsyncMock(spec=DirectoryClient)


@pytest.fixture
def coordinator(store, directory):
    return SubmissionCoordinator(store, directory, cache=AssignmentCache(store), retry_delay=0)


def math_session(questions=True):
    remote = RemoteAssignment.model_validate({
        "assignment_id": 7,
        "title": "Basic Algebra Quiz",
        "subject": "Math",
        "questions": [
            {"question_id": 101, "question_text": "2x = 4", "correct_answer": "2"},
            {"question_id": 102, "question_text": "0 even?", "question_type": "yes_no", "correct_answer": "Yes"},
        ] if questions else [],
    })
    decision = Decision.teacher("Math", remote)
    return Session(
        subject="Math",
        assignment_id=decision.assignment_id,
        title=decision.display_title,
        source=AssignmentSource.TEACHER,
        questions=decision.questions if questions else None,
    )


@pytest.mark.asyncio
async def test_retry_once_then_succeeds(coordinator, directory):
    directory.submit_answers.side_effect = [UnreachableError("blip"), SubmissionResult(**RESULT)]

    result = await coordinator.submit(math_session(), [(101, "2"), (102, "Yes")])

    assert isinstance(result, SubmissionResult)
    assert directory.submit_answers.await_count == 2
    assert await coordinator.pending_submissions() == []


@pytest.mark.asyncio
async def test_two_failures_persist_pending_submission(coordinator, directory, store):
    directory.submit_answers.side_effect = UnreachableError("offline")

    outcome = await coordinator.submit(math_session(), [(101, "2"), (102, "Yes")])

    assert isinstance(outcome, SubmissionDeferred)
    assert directory.submit_answers.await_count == 2
    assert await store.keys(PENDING_PREFIX) == [f"{PENDING_PREFIX}{outcome.submission_id}"]

    # A new coordinator (next launch) still sees it
    reloaded = SubmissionCoordinator(store, directory)
    pending = await reloaded.pending_submissions()
    assert len(pending) == 1
    assert pending[0].attempts == 2
    assert "offline" in pending[0].last_error


@pytest.mark.asyncio
async def test_server_error_is_retried_then_deferred(coordinator, directory):
    directory.submit_answers.side_effect = ServerError("bad gateway", 502)

    outcome = await coordinator.submit(math_session(), [(101, "2"), (102, "Yes")])

    assert isinstance(outcome, SubmissionDeferred)
    assert directory.submit_answers.await_count == 2


@pytest.mark.asyncio
async def test_invalid_assignment_propagates_and_clears_snapshot(coordinator, directory, store):
    cache = AssignmentCache(store)
    await cache.save_assignment("Math", RemoteAssignment(assignment_id=7, title="Basic Algebra Quiz", subject="Math"))
    directory.submit_answers.side_effect = InvalidAssignmentError("7", 410)

    with pytest.raises(InvalidAssignmentError):
        await coordinator.submit(math_session(), [(101, "2"), (102, "Yes")])

    assert directory.submit_answers.await_count == 1
    assert await cache.get_snapshot("Math") is None
    assert await coordinator.pending_submissions() == []


@pytest.mark.asyncio
@pytest.mark.parametrize("answers", [
    [(101, "2")],
    [(101, "2"), (102, "Yes"), (103, "extra")],
    [(101, "2"), (101, "3"), (102, "Yes")],
])
async def test_answers_must_cover_each_question_once(coordinator, directory, answers):
    with pytest.raises(AnswerValidationError):
        await coordinator.submit(math_session(), answers)
    directory.submit_answers.assert_not_awaited()


@pytest.mark.asyncio
async def test_unknown_question_list_skips_coverage_check(coordinator, directory):
    directory.submit_answers.return_value = SubmissionResult(**RESULT)

    result = await coordinator.submit(math_session(questions=False), [(101, "2")])

    assert result.score == 100.0


@pytest.mark.asyncio
async def test_default_session_is_scored_locally(store, directory):
    def scorer(session, answers):
        return SubmissionResult(score=50, correct_answers=1, total_questions=len(answers), points_earned=5)

    session = Session(subject="Science", title="Science - Default Stages",
                      source=AssignmentSource.DEFAULT, stage="Stage 1")
    coordinator = SubmissionCoordinator(store, directory, local_scorer=scorer)

    result = await coordinator.submit(session, [AnswerEntry(question_id=1, student_answer="leaf"), (2, "root")])

    assert result.score == 50
    assert result.total_questions == 2
    directory.submit_answers.assert_not_awaited()
    assert (await coordinator.get_progress("Science", "Stage 1")).attempts == 1
    assert await store.get(progress_key("Science", "Stage 1")) is not None


@pytest.mark.asyncio
async def test_default_session_without_scorer_routes_unscored_result(coordinator, directory):
    session = Session(subject="Science", source=AssignmentSource.DEFAULT, stage="Stage 1")

    result = await coordinator.submit(session, [(1, "a")])

    assert (result.score, result.correct_answers, result.total_questions) == (0, 0, 1)
    directory.submit_answers.assert_not_awaited()


@pytest.mark.asyncio
async def test_progress_keeps_best_score(coordinator, directory):
    directory.submit_answers.side_effect = [
        SubmissionResult(score=80, correct_answers=4, total_questions=5, points_earned=8),
        SubmissionResult(score=40, correct_answers=2, total_questions=5, points_earned=4),
    ]
    session = math_session(questions=False)

    await coordinator.submit(session, [(101, "2")])
    await coordinator.submit(session, [(101, "3")])

    progress = await coordinator.get_progress("Math", "7")
    assert progress.attempts == 2
    assert progress.best_score == 80
    assert progress.last_result.score == 40


@pytest.mark.asyncio
async def test_concurrent_deliveries_count_every_attempt(coordinator, directory):
    directory.submit_answers.return_value = SubmissionResult(**RESULT)
    session = math_session(questions=False)

    await asyncio.gather(*(coordinator.submit(session, [(101, "2")]) for _ in range(5)))

    progress = await coordinator.get_progress("Math", "7")
    assert progress.attempts == 5
    assert progress.best_score == 100.0


class TestDeferredSubmissionRetry(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.engine = build_engine(f"sqlite+aiosqlite:///{os.path.join(self.tmp.name, 'state.db')}")
        await init_models(self.engine)
        self.store = SqlStateStore(build_sessionmaker(self.engine))
        self.directory = AsyncMock(spec=DirectoryClient)
        self.coordinator = SubmissionCoordinator(self.store, self.directory, retry_delay=0)

    async def asyncTearDown(self):
        await self.engine.dispose()
        self.tmp.cleanup()

    async def _defer(self, answers=((101, "2"), (102, "Yes"))):
        self.directory.submit_answers.side_effect = UnreachableError("offline")
        outcome = await self.coordinator.submit(math_session(), list(answers))
        self.assertIsInstance(outcome, SubmissionDeferred)
        self.directory.submit_answers.reset_mock(side_effect=True)
        return outcome

    async def test_retry_pending_delivers_and_removes(self):
        outcome = await self._defer()
        self.directory.submit_answers.return_value = SubmissionResult(**RESULT)

        delivered = await self.coordinator.retry_pending()

        self.assertEqual(len(delivered), 1)
        self.directory.submit_answers.assert_awaited_once()
        args = self.directory.submit_answers.call_args.args
        self.assertEqual(args[0], "7")
        self.assertEqual(await self.store.get(f"{PENDING_PREFIX}{outcome.submission_id}"), None)
        progress = await self.coordinator.get_progress("Math", "7")
        self.assertEqual(progress.best_score, 100.0)

    async def test_retry_pending_keeps_record_while_offline(self):
        await self._defer()
        await self._defer()
        self.directory.submit_answers.side_effect = UnreachableError("still offline")

        delivered = await self.coordinator.retry_pending()

        self.assertEqual(delivered, [])
        # Stops at the first unreachable error instead of hammering the network
        self.directory.submit_answers.assert_awaited_once()
        pending = await self.coordinator.pending_submissions()
        self.assertEqual(len(pending), 2)
        self.assertEqual(sorted(p.attempts for p in pending), [2, 3])

    async def test_rejected_submission_is_kept_but_not_retried(self):
        outcome = await self._defer()
        self.directory.submit_answers.side_effect = InvalidAssignmentError("7", 404)

        await self.coordinator.retry_pending()

        self.assertEqual(await self.coordinator.pending_submissions(), [])
        everything = await self.coordinator.pending_submissions(include_rejected=True)
        self.assertEqual([p.submission_id for p in everything], [outcome.submission_id])
        self.assertEqual(everything[0].status, PendingStatus.REJECTED)

    async def test_monitor_reports_delivered_count(self):
        await self._defer()
        self.directory.submit_answers.return_value = SubmissionResult(**RESULT)

        self.assertEqual(await monitor_pending_submissions(self.coordinator), 1)
        self.assertEqual(await monitor_pending_submissions(self.coordinator), 0)

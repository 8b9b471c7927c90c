import httpx
from typing import List, Optional, Sequence
from pydantic import ValidationError
from models.assignment import AssignmentsResponse, RemoteAssignment
from models.submission import AnswerEntry, SubmissionResult
from core.config import settings
from core.exceptions import InvalidAssignmentError, ServerError, UnreachableError
from core.logger import logger

# Statuses the server uses for an unknown or expired assignment on submit
INVALID_ASSIGNMENT_STATUSES = (404, 410)


class DirectoryClient:
    """
    HTTP/JSON client for the assignment directory service.

    Transport failures surface as UnreachableError and bad responses as ServerError,
    so callers can tell "the server said no assignments" apart from "no answer at all".
    """

    def __init__(self, base_url: str = None, student_id: int = None, student_name: str = None,
                 fetch_timeout: float = None, submit_timeout: float = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = (base_url or settings.DIRECTORY_URL).rstrip("/")
        self.student_id = settings.STUDENT_ID if student_id is None else student_id
        self.student_name = settings.STUDENT_NAME if student_name is None else student_name
        self.fetch_timeout = fetch_timeout or settings.FETCH_TIMEOUT_SECONDS
        self.submit_timeout = submit_timeout or settings.SUBMIT_TIMEOUT_SECONDS
        self.transport = transport

    async def _post(self, path: str, payload: dict, timeout: float) -> httpx.Response:
        try:
            async with httpx.AsyncClient(base_url=self.base_url, timeout=timeout, transport=self.transport) as client:
                return await client.post(path, json=payload)
        except httpx.TimeoutException as e:
            logger.warning("Directory request timed out", path=path, timeout=timeout)
            raise UnreachableError(f"Timed out after {timeout}s calling {path}") from e
        except httpx.TransportError as e:
            logger.warning("Directory unreachable", path=path, error=str(e))
            raise UnreachableError(f"Could not reach directory service: {e}") from e

    @staticmethod
    def _json(response: httpx.Response, path: str) -> dict:
        try:
            data = response.json()
        except ValueError as e:
            raise ServerError(f"Malformed JSON from {path}", response.status_code) from e
        if not isinstance(data, dict):
            raise ServerError(f"Unexpected body from {path}", response.status_code)
        return data

    async def fetch_active_assignments(self, subject: str) -> List[RemoteAssignment]:
        """Active assignments for `subject`, in server order. An empty list is a real answer."""
        path = "/api/student/assignments"
        response = await self._post(path, {"student_id": self.student_id, "subject": subject}, self.fetch_timeout)

        if not response.is_success:
            logger.error("Directory fetch failed", subject=subject, status=response.status_code)
            raise ServerError(f"Fetch assignments returned {response.status_code}", response.status_code)

        data = self._json(response, path)
        try:
            parsed = AssignmentsResponse.model_validate(data)
        except ValidationError as e:
            logger.error("Malformed assignments payload", subject=subject, errors=e.error_count())
            raise ServerError("Malformed assignments payload", response.status_code) from e

        logger.info("Fetched active assignments", subject=subject, count=len(parsed.assignments))
        return parsed.assignments

    async def submit_answers(self, assignment_id: str, answers: Sequence[AnswerEntry]) -> SubmissionResult:
        path = f"/api/submit/{assignment_id}"
        payload = {
            "student_id": self.student_id,
            "answers": [answer.model_dump() for answer in answers],
        }
        response = await self._post(path, payload, self.submit_timeout)

        if response.status_code in INVALID_ASSIGNMENT_STATUSES:
            logger.warning("Assignment rejected by server", assignment_id=assignment_id, status=response.status_code)
            raise InvalidAssignmentError(str(assignment_id), response.status_code)
        if not response.is_success:
            logger.error("Submission failed", assignment_id=assignment_id, status=response.status_code)
            raise ServerError(f"Submit returned {response.status_code}", response.status_code)

        data = self._json(response, path)
        try:
            result = SubmissionResult.model_validate(data)
        except ValidationError as e:
            raise ServerError("Malformed submission result", response.status_code) from e

        logger.info("Answers submitted", assignment_id=assignment_id, score=result.score,
                    correct=result.correct_answers, total=result.total_questions)
        return result

    async def publish_assignment(self, subject: str, assignment_id: str, title: str,
                                 content: str = "", assignment_type: str = "") -> dict:
        """Teacher side: create or update an assignment in the directory."""
        path = "/api/teacher_assignment"
        payload = {
            "student_id": self.student_id,
            "student_name": self.student_name,
            "subject": subject,
            "assignment_id": assignment_id,
            "assignment_title": title,
            "assignment_content": content,
            "assignment_type": assignment_type,
            "action": "set_assignment",
        }
        response = await self._post(path, payload, self.submit_timeout)
        if not response.is_success:
            logger.error("Publishing assignment failed", subject=subject, status=response.status_code)
            raise ServerError(f"Publish returned {response.status_code}", response.status_code)

        logger.info("Assignment published", subject=subject, assignment_id=assignment_id)
        return self._json(response, path) if response.content else {}

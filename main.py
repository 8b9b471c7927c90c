import asyncio
import json
import sys
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from core.config import settings
from core.logger import setup_logging, logger
from core.container import Container, build_container
from core.exceptions import AnswerValidationError, DirectoryError, InvalidAssignmentError
from models.submission import SubmissionDeferred
from services.monitoring_service import monitor_pending_submissions

USAGE = """Usage: python main.py <command> [args]

  resolve <subject>        show what would be presented for a subject
  select <subject>         resolve and commit the session
  status                   show the committed session
  end                      end the committed session
  submit <answers.json>    submit [{"question_id": 1, "student_answer": "..."}] for the session
  pending                  list deferred submissions
  retry                    retry deferred submissions now
  publish <subject> <assignment_id> <title> [content]
  run                      stay up and retry deferred submissions periodically
"""


def _print(data):
    print(json.dumps(data, indent=2, default=str, ensure_ascii=False))


def load_answers(path: str) -> list:
    with open(path, encoding="utf-8") as f:
        return [(a["question_id"], a.get("student_answer", "")) for a in json.load(f)]


async def run_forever(container: Container):
    scheduler = AsyncIOScheduler()
    scheduler.add_job(
        monitor_pending_submissions,
        trigger="interval",
        seconds=settings.PENDING_RETRY_INTERVAL_SECONDS,
        args=[container.submissions],
        id="pending_submission_monitor",
        replace_existing=True
    )
    scheduler.start()
    logger.info("Scheduler started (Deferred submission monitor).",
                interval=settings.PENDING_RETRY_INTERVAL_SECONDS)
    try:
        await asyncio.Event().wait()
    finally:
        scheduler.shutdown(wait=False)


async def dispatch(container: Container, command: str, args: list) -> int:
    if command == "resolve" and args:
        decision = await container.sessions.resolve(args[0])
        _print(decision.model_dump(mode="json"))
    elif command == "select" and args:
        session = await container.sessions.select_subject(args[0])
        _print(session.model_dump(mode="json") if session else None)
    elif command == "status":
        session = container.sessions.current_session()
        _print({"state": container.sessions.state.value,
                "session": session.model_dump(mode="json") if session else None})
    elif command == "end":
        await container.sessions.end_session()
    elif command == "submit" and args:
        session = container.sessions.current_session()
        if session is None:
            logger.error("No committed session to submit")
            return 1
        try:
            answers = load_answers(args[0])
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.error("Cannot read answers file", path=args[0], error=str(e))
            return 1
        try:
            outcome = await container.submissions.submit(session, answers)
        except AnswerValidationError as e:
            logger.error("Invalid answers", error=str(e))
            return 1
        except InvalidAssignmentError:
            logger.error("Assignment expired", assignment_id=session.assignment_id)
            return 1
        _print({"deferred": isinstance(outcome, SubmissionDeferred), **outcome.model_dump(mode="json")})
    elif command == "pending":
        pending = await container.submissions.pending_submissions(include_rejected=True)
        _print([p.model_dump(mode="json") for p in pending])
    elif command == "retry":
        delivered = await container.submissions.retry_pending()
        _print([r.model_dump(mode="json") for r in delivered])
    elif command == "publish" and len(args) >= 3:
        try:
            await container.directory.publish_assignment(args[0], args[1], args[2], args[3] if len(args) > 3 else "")
        except DirectoryError as e:
            logger.error("Publish failed", error=str(e))
            return 1
    elif command == "run":
        await run_forever(container)
    else:
        print(USAGE)
        return 2
    return 0


async def main() -> int:
    setup_logging()

    if len(sys.argv) < 2:
        print(USAGE)
        return 2
    command, args = sys.argv[1], sys.argv[2:]

    container = await build_container()
    try:
        # Every launch first tries to deliver what previous runs could not
        await monitor_pending_submissions(container.submissions)
        return await dispatch(container, command, args)
    finally:
        await container.close()


if __name__ == "__main__":
    try:
        exit_code = asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Application stopped.")
        exit_code = 0
    sys.exit(exit_code)

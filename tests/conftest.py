"""
Pytest configuration and fixtures for the assignment resolution tests.
"""
import sys
import os
import pytest
import pytest_asyncio

# Add project root to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from db.session import build_engine, build_sessionmaker, init_models
from models.assignment import RemoteAssignment
from services.state_store import SqlStateStore


@pytest_asyncio.fixture
async def store(tmp_path):
    """SQL state store backed by a throwaway SQLite file"""
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'state.db'}")
    await init_models(engine)
    yield SqlStateStore(build_sessionmaker(engine))
    await engine.dispose()


@pytest.fixture
def algebra_payload():
    """Directory payload for the Math assignment used across scenarios"""
    return {
        "assignment_id": 7,
        "title": "Basic Algebra Quiz",
        "description": "Solve for x",
        "subject": "Math",
        "created_by": "ms.reyes",
        "due_date": "2026-11-01",
        "questions": [
            {
                "question_id": 101,
                "question_text": "2x = 4. What is x?",
                "question_type": "multiple_choice",
                "options": ["1", "2", "3", "4"],
                "correct_answer": "2"
            },
            {
                "question_id": 102,
                "question_text": "Is 0 an even number?",
                "question_type": "YesNo",
                "options": [],
                "correct_answer": "Yes"
            }
        ]
    }


@pytest.fixture
def algebra_assignment(algebra_payload):
    return RemoteAssignment.model_validate(algebra_payload)


@pytest.fixture
def plants_payload():
    return {
        "assignment_id": 12,
        "title": "Quiz 1: Plants",
        "description": "Learn about plant biology and photosynthesis",
        "subject": "Science",
        "questions": [
            {
                "question_id": 201,
                "question_text": "Plants make food through ____.",
                "question_type": "fill_in_blank",
                "correct_answer": "photosynthesis"
            }
        ]
    }

"""
Exam management application layer.

Roster, question bank, scheduled exams and timed attempts, all stored
through the offline-tolerant SyncStore.
"""

from .models import (
    EXAMS,
    OPTION_COUNT,
    PASS_PERCENTAGE,
    QUESTIONS,
    RESULTS,
    STUDENTS,
    Exam,
    ExamResult,
    ExamStatus,
    Question,
    Student,
    parse_time,
)
from .sampling import sample_questions
from .service import Activity, DashboardSummary, ExamManager
from .session import ExamSession, percentage_of

__all__ = [
    # Models
    "Student",
    "Question",
    "Exam",
    "ExamResult",
    "ExamStatus",
    "parse_time",
    "STUDENTS",
    "QUESTIONS",
    "EXAMS",
    "RESULTS",
    "OPTION_COUNT",
    "PASS_PERCENTAGE",
    # Workflow
    "ExamManager",
    "ExamSession",
    "DashboardSummary",
    "Activity",
    "sample_questions",
    "percentage_of",
]

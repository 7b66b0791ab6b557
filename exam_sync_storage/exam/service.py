"""
Exam management over the sync layer.

ExamManager keeps an in-memory view of the four collections and writes
every change through a SyncStore, so the roster, question bank, exams and
results stay usable while offline.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, TypeVar

from ..exceptions import ExamUnavailableError, SyncStorageError, ValidationError
from ..sync.store import SyncStore
from ..sync.types import Ack
from .models import (
    EXAMS,
    QUESTIONS,
    RESULTS,
    STUDENTS,
    Exam,
    ExamResult,
    ExamStatus,
    Question,
    Student,
)
from .sampling import sample_questions
from .session import ExamSession

logger = logging.getLogger(__name__)

T = TypeVar("T")

RECENT_RESULTS = 3
RECENT_EXAMS = 2


@dataclass
class Activity:
    """An entry in the dashboard's recent activity list."""

    kind: str  # "result" or "exam"
    text: str
    time: datetime | None


@dataclass
class DashboardSummary:
    """Headline numbers for the admin dashboard."""

    total_students: int
    total_questions: int
    active_exams: int
    average_percentage: int | None
    recent_activity: list[Activity] = field(default_factory=list)


def _raise_if_failed(ack: Ack) -> Ack:
    if ack.failed:
        if ack.error is not None:
            raise ack.error
        raise SyncStorageError(f"Change to {ack.path} was not stored", {"path": ack.path})
    if ack.queued:
        logger.info(f"Change to {ack.path} saved locally, will sync when online")
    return ack


def _parse_created(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


class ExamManager:
    """Roster, question bank, exams and results backed by a SyncStore.

    Example:
        >>> manager = ExamManager(store)
        >>> await manager.load_all()
        >>> student = await manager.add_student("Ali", "2024001", "ali@example.com", "10")
        >>> session = await manager.start_exam(exam.id, student.id)
    """

    def __init__(
        self,
        store: SyncStore,
        rng: random.Random | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store
        self.rng = rng or random.Random()
        self._clock = clock or (lambda: datetime.now(UTC))

        self.students: dict[str, Student] = {}
        self.questions: dict[str, Question] = {}
        self.exams: dict[str, Exam] = {}
        self.results: dict[str, ExamResult] = {}

    def _now(self) -> datetime:
        return self._clock()

    # =========================================================================
    # Loading
    # =========================================================================

    async def _load_collection(
        self, collection: str, from_record: Callable[[dict[str, Any], str], T]
    ) -> dict[str, T]:
        data = await self.store.read(collection)
        if not isinstance(data, dict):
            return {}

        items: dict[str, T] = {}
        for key, record in data.items():
            if not isinstance(record, dict):
                continue
            try:
                items[key] = from_record(record, key)
            except (KeyError, TypeError, ValueError, SyncStorageError) as e:
                logger.warning(f"Skipping unreadable {collection} record {key}: {e}")
        return items

    async def load_all(self) -> None:
        """Read all four collections from the store."""
        self.students, self.questions, self.exams, self.results = await asyncio.gather(
            self._load_collection(STUDENTS, Student.from_record),
            self._load_collection(QUESTIONS, Question.from_record),
            self._load_collection(EXAMS, Exam.from_record),
            self._load_collection(RESULTS, ExamResult.from_record),
        )
        logger.info(
            f"Loaded {len(self.students)} students, {len(self.questions)} questions, "
            f"{len(self.exams)} exams, {len(self.results)} results"
        )

    def _lookup(self, items: dict[str, T], record_id: str) -> tuple[str, T] | None:
        """Find an item by key, following provisional ID remaps."""
        resolved = self.store.resolve_id(record_id)
        for key, item in items.items():
            if key == record_id or self.store.resolve_id(key) == resolved:
                return key, item
        return None

    def get_student(self, student_id: str) -> Student | None:
        found = self._lookup(self.students, student_id)
        return found[1] if found else None

    def get_question(self, question_id: str) -> Question | None:
        found = self._lookup(self.questions, question_id)
        return found[1] if found else None

    def get_exam(self, exam_id: str) -> Exam | None:
        found = self._lookup(self.exams, exam_id)
        return found[1] if found else None

    # =========================================================================
    # Students
    # =========================================================================

    async def add_student(self, name: str, student_id: str, email: str, grade: str) -> Student:
        """Add a student to the roster.

        Raises:
            ValidationError: If a field is missing or the student number is taken
            LocalCacheError: If the student could not be stored at all
        """
        student = Student(
            name=name.strip(),
            student_id=student_id.strip(),
            email=email.strip(),
            grade=str(grade).strip(),
            created_at=self._now().isoformat(),
        )
        student.validate()
        if any(s.student_id == student.student_id for s in self.students.values()):
            raise ValidationError("studentId", "already exists", student.student_id)

        ack = _raise_if_failed(await self.store.append(STUDENTS, student.to_record()))
        student.id = ack.id
        self.students[ack.id or ""] = student
        return student

    async def delete_student(self, student_id: str) -> Ack:
        found = self._lookup(self.students, student_id)
        key = found[0] if found else student_id
        ack = _raise_if_failed(await self.store.remove(f"{STUDENTS}/{key}"))
        self.students.pop(key, None)
        return ack

    # =========================================================================
    # Questions
    # =========================================================================

    async def add_question(
        self,
        text: str,
        options: list[str],
        correct_answer: int,
        difficulty: str,
        subject: str,
    ) -> Question:
        """Add a question to the bank.

        Args:
            correct_answer: 0-based index of the correct option
        """
        question = Question(
            text=text.strip(),
            options=[o.strip() for o in options],
            correct_answer=correct_answer,
            difficulty=difficulty,
            subject=subject,
            created_at=self._now().isoformat(),
        )
        question.validate()

        ack = _raise_if_failed(await self.store.append(QUESTIONS, question.to_record()))
        question.id = ack.id
        self.questions[ack.id or ""] = question
        return question

    async def delete_question(self, question_id: str) -> Ack:
        found = self._lookup(self.questions, question_id)
        key = found[0] if found else question_id
        ack = _raise_if_failed(await self.store.remove(f"{QUESTIONS}/{key}"))
        self.questions.pop(key, None)
        return ack

    # =========================================================================
    # Exams
    # =========================================================================

    async def create_exam(
        self,
        title: str,
        duration: int,
        start_time: datetime,
        end_time: datetime,
        question_count: int,
        description: str = "",
    ) -> Exam:
        """Schedule an exam with questions sampled from the bank.

        The sampled questions are stored inside the exam record. If some of
        them were created offline, their provisional IDs are rewritten to
        server IDs when they sync.
        """
        exam = Exam(
            title=title.strip(),
            description=description.strip(),
            duration=duration,
            start_time=start_time,
            end_time=end_time,
            question_count=question_count,
            created_at=self._now().isoformat(),
        )
        exam.validate()
        exam.questions = sample_questions(list(self.questions.values()), question_count, self.rng)

        ack = _raise_if_failed(await self.store.append(EXAMS, exam.to_record()))
        exam.id = ack.id
        self.exams[ack.id or ""] = exam
        return exam

    async def delete_exam(self, exam_id: str) -> Ack:
        found = self._lookup(self.exams, exam_id)
        key = found[0] if found else exam_id
        ack = _raise_if_failed(await self.store.remove(f"{EXAMS}/{key}"))
        self.exams.pop(key, None)
        return ack

    def active_exams(self) -> list[Exam]:
        now = self._now()
        return [exam for exam in self.exams.values() if exam.is_active(now)]

    # =========================================================================
    # Taking exams
    # =========================================================================

    async def start_exam(self, exam_id: str, student_id: str) -> ExamSession:
        """Begin an attempt.

        Raises:
            ValidationError: If the exam or student does not exist
            ExamUnavailableError: Outside the exam's scheduled window
        """
        exam = self.get_exam(exam_id)
        student = self.get_student(student_id)
        if exam is None:
            raise ValidationError("examId", "exam not found", exam_id)
        if student is None:
            raise ValidationError("studentId", "student not found", student_id)

        now = self._now()
        status = exam.status(now)
        if status == ExamStatus.SCHEDULED:
            raise ExamUnavailableError(exam_id, "the exam has not started yet")
        if status == ExamStatus.FINISHED:
            raise ExamUnavailableError(exam_id, "the exam has ended")

        logger.info(f"{student.name} started exam {exam.title}")
        return ExamSession(exam, student, started_at=now)

    async def submit(self, session: ExamSession) -> ExamResult:
        """Grade a session and store its result."""
        result = session.finish(self._now())
        if result.id is not None:
            return result

        ack = _raise_if_failed(await self.store.append(RESULTS, result.to_record()))
        result.id = ack.id
        self.results[ack.id or ""] = result
        logger.info(
            f"{result.student_name} finished {result.exam_title}: "
            f"{result.score}/{result.total_questions} ({result.percentage}%)"
        )
        return result

    # =========================================================================
    # Results
    # =========================================================================

    def results_for_exam(self, exam_id: str) -> list[ExamResult]:
        resolved = self.store.resolve_id(exam_id)
        return [r for r in self.results.values() if self.store.resolve_id(r.exam_id) == resolved]

    def results_for_student(self, student_id: str) -> list[ExamResult]:
        resolved = self.store.resolve_id(student_id)
        return [
            r for r in self.results.values() if self.store.resolve_id(r.student_id) == resolved
        ]

    def dashboard(self) -> DashboardSummary:
        results = sorted(self.results.values(), key=lambda r: r.completed_at)
        exams = sorted(
            self.exams.values(),
            key=lambda e: _parse_created(e.created_at) or datetime.min.replace(tzinfo=UTC),
        )

        average = None
        if results:
            mean = sum(r.percentage for r in results) / len(results)
            average = int(mean + 0.5)

        activity = [
            Activity("result", f"{r.student_name} completed {r.exam_title}", r.completed_at)
            for r in results[-RECENT_RESULTS:]
        ]
        activity.extend(
            Activity("exam", f"New exam created: {e.title}", _parse_created(e.created_at))
            for e in exams[-RECENT_EXAMS:]
        )

        return DashboardSummary(
            total_students=len(self.students),
            total_questions=len(self.questions),
            active_exams=len(self.active_exams()),
            average_percentage=average,
            recent_activity=activity,
        )

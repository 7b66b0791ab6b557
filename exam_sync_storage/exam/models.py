"""
Exam domain records.

Each model converts to and from the record shape stored in the sync
layer. Record keys are camelCase, matching records written by earlier
clients of the same database.

Collections:
    students/{id}   Student
    questions/{id}  Question
    exams/{id}      Exam (with a snapshot of its sampled questions)
    results/{id}    ExamResult
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from ..exceptions import ValidationError

STUDENTS = "students"
QUESTIONS = "questions"
EXAMS = "exams"
RESULTS = "results"

OPTION_COUNT = 4
PASS_PERCENTAGE = 60


def parse_time(value: Any) -> datetime:
    """Parse an ISO 8601 timestamp. Naive values are taken as UTC."""
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(str(value))
        except ValueError as e:
            raise ValidationError("time", "not an ISO 8601 timestamp", str(value)) from e
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def _require(field_name: str, value: Any) -> None:
    if value is None or (isinstance(value, str) and not value.strip()):
        raise ValidationError(field_name, "is required")


class ExamStatus(Enum):
    """Where an exam is relative to its scheduled window."""

    SCHEDULED = "scheduled"
    ACTIVE = "active"
    FINISHED = "finished"


@dataclass
class Student:
    """A student on the roster.

    ``student_id`` is the school-issued number and must be unique;
    ``id`` is the record key assigned by the store.
    """

    name: str
    student_id: str
    email: str
    grade: str
    id: str | None = None
    created_at: str | None = None

    def validate(self) -> None:
        _require("name", self.name)
        _require("studentId", self.student_id)
        _require("email", self.email)
        _require("grade", self.grade)

    def to_record(self) -> dict[str, Any]:
        record: dict[str, Any] = {
            "name": self.name,
            "studentId": self.student_id,
            "email": self.email,
            "grade": self.grade,
        }
        if self.created_at:
            record["createdAt"] = self.created_at
        if self.id:
            record["id"] = self.id
        return record

    @classmethod
    def from_record(cls, record: dict[str, Any], key: str | None = None) -> Student:
        return cls(
            name=record.get("name", ""),
            student_id=str(record.get("studentId", "")),
            email=record.get("email", ""),
            grade=str(record.get("grade", "")),
            id=record.get("id", key),
            created_at=record.get("createdAt"),
        )


@dataclass
class Question:
    """A multiple-choice question with four options.

    Attributes:
        correct_answer: 0-based index of the correct option
    """

    text: str
    options: list[str]
    correct_answer: int
    difficulty: str
    subject: str
    id: str | None = None
    created_at: str | None = None

    def validate(self) -> None:
        _require("text", self.text)
        _require("difficulty", self.difficulty)
        _require("subject", self.subject)
        if len(self.options) != OPTION_COUNT:
            raise ValidationError("options", f"exactly {OPTION_COUNT} options required")
        for i, option in enumerate(self.options):
            _require(f"options[{i}]", option)
        if not isinstance(self.correct_answer, int) or not 0 <= self.correct_answer < OPTION_COUNT:
            raise ValidationError(
                "correctAnswer",
                f"must be an option index between 0 and {OPTION_COUNT - 1}",
                str(self.correct_answer),
            )

    def is_correct(self, option: int | None) -> bool:
        return option == self.correct_answer

    def to_record(self) -> dict[str, Any]:
        record: dict[str, Any] = {
            "text": self.text,
            "options": list(self.options),
            "correctAnswer": self.correct_answer,
            "difficulty": self.difficulty,
            "subject": self.subject,
        }
        if self.created_at:
            record["createdAt"] = self.created_at
        if self.id:
            record["id"] = self.id
        return record

    @classmethod
    def from_record(cls, record: dict[str, Any], key: str | None = None) -> Question:
        return cls(
            text=record.get("text", ""),
            options=list(record.get("options") or []),
            correct_answer=int(record.get("correctAnswer", -1)),
            difficulty=record.get("difficulty", ""),
            subject=record.get("subject", ""),
            id=record.get("id", key),
            created_at=record.get("createdAt"),
        )


@dataclass
class Exam:
    """A scheduled exam.

    The sampled questions are copied into the exam when it is created, so
    later edits to the question bank do not change an existing exam.

    Attributes:
        duration: Time allowed per attempt, in minutes
        start_time: Start of the window in which the exam can be taken
        end_time: End of that window
    """

    title: str
    duration: int
    start_time: datetime
    end_time: datetime
    question_count: int
    questions: list[Question] = field(default_factory=list)
    description: str = ""
    id: str | None = None
    created_at: str | None = None

    def validate(self) -> None:
        _require("title", self.title)
        if self.duration <= 0:
            raise ValidationError("duration", "must be positive", str(self.duration))
        if self.question_count <= 0:
            raise ValidationError("questionCount", "must be positive", str(self.question_count))
        if self.start_time >= self.end_time:
            raise ValidationError("startTime", "must be before endTime")

    def status(self, now: datetime) -> ExamStatus:
        if now < self.start_time:
            return ExamStatus.SCHEDULED
        if now > self.end_time:
            return ExamStatus.FINISHED
        return ExamStatus.ACTIVE

    def is_active(self, now: datetime) -> bool:
        return self.status(now) == ExamStatus.ACTIVE

    def to_record(self) -> dict[str, Any]:
        record: dict[str, Any] = {
            "title": self.title,
            "description": self.description,
            "duration": self.duration,
            "startTime": self.start_time.isoformat(),
            "endTime": self.end_time.isoformat(),
            "questionCount": self.question_count,
            "questions": [q.to_record() for q in self.questions],
        }
        if self.created_at:
            record["createdAt"] = self.created_at
        if self.id:
            record["id"] = self.id
        return record

    @classmethod
    def from_record(cls, record: dict[str, Any], key: str | None = None) -> Exam:
        questions = record.get("questions") or []
        if isinstance(questions, dict):
            # Sparse arrays come back from the remote as mappings
            questions = [questions[k] for k in sorted(questions, key=int)]
        return cls(
            title=record.get("title", ""),
            description=record.get("description", ""),
            duration=int(record.get("duration", 0)),
            start_time=parse_time(record["startTime"]),
            end_time=parse_time(record["endTime"]),
            question_count=int(record.get("questionCount", len(questions))),
            questions=[Question.from_record(q) for q in questions],
            id=record.get("id", key),
            created_at=record.get("createdAt"),
        )


@dataclass
class ExamResult:
    """A finished attempt.

    Attributes:
        student_id: Record key of the student
        score: Number of correctly answered questions
        percentage: score / total_questions as a whole percentage
        answers: Chosen option per question index
    """

    student_id: str
    student_name: str
    exam_id: str
    exam_title: str
    score: int
    total_questions: int
    percentage: int
    answers: dict[int, int]
    completed_at: datetime
    id: str | None = None

    @property
    def passed(self) -> bool:
        return self.percentage >= PASS_PERCENTAGE

    def to_record(self) -> dict[str, Any]:
        record: dict[str, Any] = {
            "studentId": self.student_id,
            "studentName": self.student_name,
            "examId": self.exam_id,
            "examTitle": self.exam_title,
            "score": self.score,
            "totalQuestions": self.total_questions,
            "percentage": self.percentage,
            # JSON object keys are strings
            "answers": {str(k): v for k, v in self.answers.items()},
            "completedAt": self.completed_at.isoformat(),
        }
        if self.id:
            record["id"] = self.id
        return record

    @classmethod
    def from_record(cls, record: dict[str, Any], key: str | None = None) -> ExamResult:
        answers = record.get("answers") or {}
        if isinstance(answers, list):
            answers = {i: a for i, a in enumerate(answers) if a is not None}
        return cls(
            student_id=record.get("studentId", ""),
            student_name=record.get("studentName", ""),
            exam_id=record.get("examId", ""),
            exam_title=record.get("examTitle", ""),
            score=int(record.get("score", 0)),
            total_questions=int(record.get("totalQuestions", 0)),
            percentage=int(record.get("percentage", 0)),
            answers={int(k): int(v) for k, v in answers.items()},
            completed_at=parse_time(record["completedAt"]),
            id=record.get("id", key),
        )

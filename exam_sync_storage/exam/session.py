"""
An exam attempt in progress.

ExamSession holds everything about one student taking one exam: the
question being shown, the answers given so far and the time left. It does
no I/O; ExamManager.submit stores the result it produces.
"""

from __future__ import annotations

from datetime import datetime, timedelta

from ..exceptions import ValidationError
from .models import OPTION_COUNT, Exam, ExamResult, Question, Student


def percentage_of(score: int, total: int) -> int:
    """score / total as a whole percentage, halves rounded up."""
    if total <= 0:
        return 0
    # floor(100 * score / total + 0.5) in integer arithmetic
    return (200 * score + total) // (2 * total)


class ExamSession:
    """A student's attempt at an exam.

    Example:
        >>> session = ExamSession(exam, student, started_at=now)
        >>> session.answer(0, 2)
        >>> session.next_question()
        True
        >>> result = session.finish(now)
    """

    def __init__(self, exam: Exam, student: Student, started_at: datetime) -> None:
        if not exam.questions:
            raise ValidationError("questions", "exam has no questions")
        self.exam = exam
        self.student = student
        self.started_at = started_at
        self.current_index = 0
        self.answers: dict[int, int] = {}
        self._result: ExamResult | None = None

    @property
    def total_questions(self) -> int:
        return len(self.exam.questions)

    @property
    def current_question(self) -> Question:
        return self.exam.questions[self.current_index]

    @property
    def is_first(self) -> bool:
        return self.current_index == 0

    @property
    def is_last(self) -> bool:
        return self.current_index == self.total_questions - 1

    @property
    def finished(self) -> bool:
        return self._result is not None

    def next_question(self) -> bool:
        """Move forward. Returns False when already on the last question."""
        if self.is_last:
            return False
        self.current_index += 1
        return True

    def previous_question(self) -> bool:
        """Move back. Returns False when already on the first question."""
        if self.is_first:
            return False
        self.current_index -= 1
        return True

    def go_to(self, index: int) -> None:
        if not 0 <= index < self.total_questions:
            raise ValidationError("questionIndex", "out of range", str(index))
        self.current_index = index

    def answer(self, question_index: int, option: int) -> None:
        """Record (or change) the chosen option for a question."""
        if self.finished:
            raise ValidationError("answers", "exam session already finished")
        if not 0 <= question_index < self.total_questions:
            raise ValidationError("questionIndex", "out of range", str(question_index))
        if not 0 <= option < OPTION_COUNT:
            raise ValidationError("option", "out of range", str(option))
        self.answers[question_index] = option

    def selected_option(self, question_index: int) -> int | None:
        return self.answers.get(question_index)

    @property
    def answered_count(self) -> int:
        return len(self.answers)

    @property
    def progress(self) -> float:
        """Position of the current question as a percentage of the exam."""
        return (self.current_index + 1) / self.total_questions * 100

    # Timer

    @property
    def deadline(self) -> datetime:
        return self.started_at + timedelta(minutes=self.exam.duration)

    def remaining_seconds(self, now: datetime) -> int:
        return max(0, int((self.deadline - now).total_seconds()))

    def is_expired(self, now: datetime) -> bool:
        return now >= self.deadline

    def score(self) -> int:
        return sum(
            1
            for index, question in enumerate(self.exam.questions)
            if question.is_correct(self.answers.get(index))
        )

    def finish(self, now: datetime) -> ExamResult:
        """Grade the attempt. Calling it again returns the same result."""
        if self._result is not None:
            return self._result

        score = self.score()
        self._result = ExamResult(
            student_id=self.student.id or self.student.student_id,
            student_name=self.student.name,
            exam_id=self.exam.id or "",
            exam_title=self.exam.title,
            score=score,
            total_questions=self.total_questions,
            percentage=percentage_of(score, self.total_questions),
            answers=dict(self.answers),
            completed_at=now,
        )
        return self._result

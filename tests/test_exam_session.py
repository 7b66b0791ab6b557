"""Tests for ExamSession: navigation, answers, timer and grading."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from exam_sync_storage.exam import Exam, ExamSession, Question, Student, percentage_of
from exam_sync_storage.exceptions import ValidationError

START = datetime(2024, 5, 1, 9, 0, tzinfo=UTC)


@pytest.fixture
def session() -> ExamSession:
    questions = [
        Question(
            text=f"Question {i}",
            options=["a", "b", "c", "d"],
            correct_answer=i % 4,
            difficulty="easy",
            subject="math",
        )
        for i in range(3)
    ]
    exam = Exam(
        title="Quiz",
        duration=10,
        start_time=START,
        end_time=START + timedelta(hours=1),
        question_count=3,
        questions=questions,
        id="e1",
    )
    student = Student(
        name="Ali", student_id="2024001", email="ali@example.com", grade="10", id="s1"
    )
    return ExamSession(exam, student, started_at=START)


class TestPercentage:
    @pytest.mark.parametrize(
        ("score", "total", "expected"),
        [(2, 3, 67), (1, 3, 33), (1, 8, 13), (3, 8, 38), (0, 5, 0), (5, 5, 100), (1, 0, 0)],
    )
    def test_rounds_half_up(self, score: int, total: int, expected: int) -> None:
        assert percentage_of(score, total) == expected


class TestNavigation:
    def test_starts_on_first_question(self, session: ExamSession) -> None:
        assert session.is_first
        assert session.current_question.text == "Question 0"
        assert session.progress == pytest.approx(100 / 3)

    def test_next_and_previous_stop_at_the_ends(self, session: ExamSession) -> None:
        assert not session.previous_question()
        assert session.next_question()
        assert session.next_question()
        assert session.is_last
        assert not session.next_question()
        assert session.progress == 100
        assert session.previous_question()
        assert session.current_index == 1

    def test_go_to(self, session: ExamSession) -> None:
        session.go_to(2)
        assert session.is_last

        with pytest.raises(ValidationError):
            session.go_to(3)

    def test_exam_without_questions(self, session: ExamSession) -> None:
        session.exam.questions = []
        with pytest.raises(ValidationError):
            ExamSession(session.exam, session.student, started_at=START)


class TestAnswers:
    def test_answer_and_change(self, session: ExamSession) -> None:
        session.answer(0, 2)
        session.answer(0, 0)

        assert session.selected_option(0) == 0
        assert session.selected_option(1) is None
        assert session.answered_count == 1

    @pytest.mark.parametrize(("index", "option"), [(3, 0), (-1, 0), (0, 4), (0, -1)])
    def test_out_of_range(self, session: ExamSession, index: int, option: int) -> None:
        with pytest.raises(ValidationError):
            session.answer(index, option)


class TestTimer:
    def test_remaining_time(self, session: ExamSession) -> None:
        assert session.deadline == START + timedelta(minutes=10)
        assert session.remaining_seconds(START + timedelta(minutes=9, seconds=30)) == 30
        assert session.remaining_seconds(START + timedelta(minutes=11)) == 0

    def test_expiry(self, session: ExamSession) -> None:
        assert not session.is_expired(START + timedelta(minutes=9))
        assert session.is_expired(START + timedelta(minutes=10))


class TestFinish:
    def test_grading(self, session: ExamSession) -> None:
        """Test correct answers are counted and unanswered ones score nothing."""
        session.answer(0, 0)
        session.answer(1, 3)

        result = session.finish(START + timedelta(minutes=5))

        assert result.score == 1
        assert result.total_questions == 3
        assert result.percentage == 33
        assert result.student_id == "s1"
        assert result.exam_id == "e1"
        assert result.answers == {0: 0, 1: 3}

    def test_finish_is_idempotent(self, session: ExamSession) -> None:
        first = session.finish(START)
        second = session.finish(START + timedelta(minutes=1))
        assert first is second

    def test_no_answers_after_finish(self, session: ExamSession) -> None:
        session.finish(START)
        with pytest.raises(ValidationError):
            session.answer(0, 1)

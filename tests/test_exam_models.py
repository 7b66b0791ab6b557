"""Tests for exam records and question sampling."""

from __future__ import annotations

import random
from datetime import UTC, datetime, timedelta

import pytest

from exam_sync_storage.exam import (
    Exam,
    ExamResult,
    ExamStatus,
    Question,
    Student,
    parse_time,
    sample_questions,
)
from exam_sync_storage.exceptions import ValidationError

START = datetime(2024, 5, 1, 9, 0, tzinfo=UTC)


def make_question(text: str = "2+2?", correct: int = 1) -> Question:
    return Question(
        text=text,
        options=["3", "4", "5", "6"],
        correct_answer=correct,
        difficulty="easy",
        subject="math",
    )


def make_exam(**overrides: object) -> Exam:
    values: dict[str, object] = {
        "title": "Midterm",
        "duration": 30,
        "start_time": START,
        "end_time": START + timedelta(hours=2),
        "question_count": 1,
    }
    values.update(overrides)
    return Exam(**values)  # type: ignore[arg-type]


class TestParseTime:
    def test_aware_value(self) -> None:
        assert parse_time("2024-05-01T09:00:00+00:00") == START

    def test_naive_value_is_utc(self) -> None:
        assert parse_time("2024-05-01T09:00:00") == START

    def test_invalid_value(self) -> None:
        with pytest.raises(ValidationError):
            parse_time("next tuesday")


class TestStudent:
    def test_record_uses_camel_case(self) -> None:
        student = Student(name="Ali", student_id="2024001", email="ali@example.com", grade="10")

        assert student.to_record() == {
            "name": "Ali",
            "studentId": "2024001",
            "email": "ali@example.com",
            "grade": "10",
        }

    def test_from_record_falls_back_to_key(self) -> None:
        student = Student.from_record({"name": "Ali", "studentId": 2024001, "grade": 10}, "s1")

        assert student.id == "s1"
        assert student.student_id == "2024001"
        assert student.grade == "10"

    def test_missing_fields_fail_validation(self) -> None:
        with pytest.raises(ValidationError) as exc_info:
            Student(name="Ali", student_id="", email="ali@example.com", grade="10").validate()
        assert exc_info.value.field == "studentId"


class TestQuestion:
    def test_valid_question(self) -> None:
        make_question().validate()

    def test_requires_four_options(self) -> None:
        question = make_question()
        question.options = ["a", "b", "c"]
        with pytest.raises(ValidationError):
            question.validate()

    @pytest.mark.parametrize("correct", [-1, 4])
    def test_correct_answer_in_range(self, correct: int) -> None:
        with pytest.raises(ValidationError):
            make_question(correct=correct).validate()

    def test_is_correct(self) -> None:
        question = make_question(correct=1)
        assert question.is_correct(1)
        assert not question.is_correct(2)
        assert not question.is_correct(None)


class TestExam:
    def test_status_follows_window(self) -> None:
        exam = make_exam()

        assert exam.status(START - timedelta(minutes=1)) == ExamStatus.SCHEDULED
        assert exam.status(START) == ExamStatus.ACTIVE
        assert exam.status(exam.end_time) == ExamStatus.ACTIVE
        assert exam.status(exam.end_time + timedelta(seconds=1)) == ExamStatus.FINISHED

    def test_window_must_be_ordered(self) -> None:
        with pytest.raises(ValidationError):
            make_exam(end_time=START).validate()

    def test_duration_must_be_positive(self) -> None:
        with pytest.raises(ValidationError):
            make_exam(duration=0).validate()

    def test_record_keeps_question_snapshot(self) -> None:
        """Test the embedded questions and times survive a record round trip."""
        exam = make_exam(questions=[make_question()], description="Chapters 1-3")

        restored = Exam.from_record(exam.to_record(), "e1")

        assert restored.id == "e1"
        assert restored.start_time == START
        assert restored.questions == exam.questions
        assert restored.description == "Chapters 1-3"

    def test_sparse_question_mapping(self) -> None:
        """Test questions stored as an index mapping are read in index order."""
        record = make_exam().to_record()
        record["questions"] = {
            "1": make_question("second").to_record(),
            "0": make_question("first").to_record(),
        }

        exam = Exam.from_record(record)

        assert [q.text for q in exam.questions] == ["first", "second"]


class TestExamResult:
    def test_answers_are_stored_with_string_keys(self) -> None:
        result = ExamResult(
            student_id="s1",
            student_name="Ali",
            exam_id="e1",
            exam_title="Midterm",
            score=1,
            total_questions=2,
            percentage=50,
            answers={0: 1, 1: 3},
            completed_at=START,
        )

        record = result.to_record()

        assert record["answers"] == {"0": 1, "1": 3}
        assert ExamResult.from_record(record).answers == {0: 1, 1: 3}
        assert not result.passed

    def test_pass_threshold(self) -> None:
        result = ExamResult.from_record(
            {"percentage": 60, "completedAt": "2024-05-01T10:00:00+00:00"}
        )
        assert result.passed


class TestSampling:
    def test_distinct_questions(self) -> None:
        bank = [make_question(f"q{i}") for i in range(10)]

        picked = sample_questions(bank, 4, random.Random(7))

        assert len(picked) == 4
        assert len({q.text for q in picked}) == 4

    def test_seeded_selection_is_reproducible(self) -> None:
        bank = list(range(20))
        assert sample_questions(bank, 5, random.Random(42)) == sample_questions(
            bank, 5, random.Random(42)
        )

    def test_whole_bank(self) -> None:
        bank = list(range(5))
        assert sorted(sample_questions(bank, 5)) == bank

    def test_bank_is_not_modified(self) -> None:
        bank = list(range(5))
        sample_questions(bank, 3, random.Random(1))
        assert bank == [0, 1, 2, 3, 4]

    def test_too_many_requested(self) -> None:
        with pytest.raises(ValidationError):
            sample_questions([1, 2], 3)

    def test_negative_count(self) -> None:
        with pytest.raises(ValidationError):
            sample_questions([1, 2], -1)

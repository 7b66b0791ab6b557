"""Random question selection for new exams."""

from __future__ import annotations

import random
from collections.abc import Sequence
from typing import TypeVar

from ..exceptions import ValidationError

T = TypeVar("T")


def sample_questions(
    questions: Sequence[T], count: int, rng: random.Random | None = None
) -> list[T]:
    """Pick ``count`` distinct questions in random order.

    Shuffles a copy of the bank and takes the first ``count`` items, so
    every subset is equally likely. Pass a seeded ``random.Random`` for
    reproducible selections.

    Raises:
        ValidationError: If count is negative or larger than the bank
    """
    if count < 0:
        raise ValidationError("questionCount", "must not be negative", str(count))
    if count > len(questions):
        raise ValidationError(
            "questionCount",
            f"requested {count} questions but only {len(questions)} are available",
            str(count),
        )

    pool = list(questions)
    (rng or random.Random()).shuffle(pool)
    return pool[:count]

"""Utilities for importing question lists from a human-friendly text file.

File format (repeat blocks separated by blank lines or '---'):

    Q: Question text (supports markdown + LaTeX). Additional lines until the
       next marker are treated as part of the question.
    A: First option text          (multiple choice: two to six options, A-F)
    B: Second option text
    CORRECT: A-F                  (optional; omit to record answers ungraded)
    ANSWER: expected text         (short answer, instead of options)
    OPEN                          (open answer, reviewed by the teacher later)
    TIMELIMIT: seconds            (optional; omit for the default duration)
    POINTS: integer               (optional; defaults to 1)

An optional first line ``TITLE: ...`` names the list.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from live_quiz.constants.quiz_constants import DEFAULT_QUESTION_POINTS, MAX_OPTIONS, MIN_OPTIONS
from live_quiz.core.models import Question, QuestionKind


class QuizImportError(Exception):
    """Raised when a question list definition cannot be parsed."""


@dataclass(slots=True)
class ImportedQuiz:
    """Container for imported list metadata and questions."""

    source_path: Path | None
    title: str
    questions: list[Question]


_OPTION_ORDER = ["A", "B", "C", "D", "E", "F"][:MAX_OPTIONS]


def load_quiz_from_file(file_path: Path) -> ImportedQuiz:
    text = file_path.read_text(encoding="utf-8")
    imported = parse_quiz_text(text, default_title=file_path.stem)
    imported.source_path = file_path
    return imported


def parse_quiz_text(text: str, default_title: str = "Imported quiz") -> ImportedQuiz:
    title = default_title
    lines = text.splitlines()
    first = next((i for i, line in enumerate(lines) if line.strip()), None)
    if first is not None and lines[first].strip().upper().startswith("TITLE:"):
        title = lines[first].split(":", 1)[1].strip() or default_title
        lines = lines[first + 1 :]

    questions = [_parse_block(block) for block in _split_blocks(lines)]
    if not questions:
        raise QuizImportError("Quiz file did not contain any questions.")
    return ImportedQuiz(source_path=None, title=title, questions=questions)


def _split_blocks(lines: list[str]) -> list[str]:
    blocks: list[str] = []
    current_block: list[str] = []
    for raw_line in lines:
        stripped = raw_line.strip()
        if stripped == "---":
            if current_block:
                blocks.append("\n".join(current_block).strip())
                current_block = []
            continue
        if stripped:
            current_block.append(raw_line)
        elif current_block:
            blocks.append("\n".join(current_block).strip())
            current_block = []
    if current_block:
        blocks.append("\n".join(current_block).strip())
    return [block for block in blocks if block]


def _parse_block(block: str) -> Question:
    question_lines: list[str] = []
    options: dict[str, str] = {}
    correct_letter: str | None = None
    expected_answer: str | None = None
    is_open = False
    time_limit_seconds: int | None = None
    points = DEFAULT_QUESTION_POINTS
    current_section: str | None = None

    for raw_line in block.splitlines():
        line = raw_line.strip()
        if not line:
            continue

        upper = line.upper()
        if upper.startswith("Q:"):
            question_lines = [line[2:].strip()]
            current_section = "Q"
            continue

        if upper.startswith("CORRECT:"):
            correct_letter = line.split(":", 1)[1].strip().upper()
            current_section = None
            continue

        if upper.startswith("ANSWER:"):
            expected_answer = line.split(":", 1)[1].strip()
            if not expected_answer:
                raise QuizImportError("ANSWER must include the expected text.")
            current_section = None
            continue

        if upper == "OPEN":
            is_open = True
            current_section = None
            continue

        if upper.startswith("TIMELIMIT:"):
            time_limit_seconds = _parse_positive_int(line, "TIMELIMIT")
            current_section = None
            continue

        if upper.startswith("POINTS:"):
            points = _parse_positive_int(line, "POINTS")
            current_section = None
            continue

        if len(line) > 2 and line[0].upper() in _OPTION_ORDER and line[1] == ":":
            letter = line[0].upper()
            options[letter] = line[2:].strip()
            current_section = letter
            continue

        if current_section == "Q":
            question_lines.append(line)
        elif current_section in _OPTION_ORDER:
            options[current_section] = options[current_section] + f"\n{line}"
        else:
            raise QuizImportError(f"Encountered text outside of a known section: '{line}'.")

    question_text = "\n".join(question_lines).strip()
    if not question_text:
        raise QuizImportError("Question text missing (Q: ...)")

    if sum(bool(x) for x in (options, expected_answer, is_open)) > 1:
        raise QuizImportError("A question takes options, an ANSWER, or OPEN, not several.")

    if expected_answer is not None:
        return Question(
            id=0,
            text=question_text,
            kind=QuestionKind.SHORT_ANSWER,
            correct_answer=expected_answer,
            time_limit_seconds=time_limit_seconds,
            points=points,
        )
    if is_open or not options:
        return Question(
            id=0,
            text=question_text,
            kind=QuestionKind.OPEN,
            time_limit_seconds=time_limit_seconds,
            points=points,
        )

    letters = _OPTION_ORDER[: len(options)]
    if sorted(options) != letters:
        raise QuizImportError(f"Options must be consecutive letters starting at A, got {', '.join(sorted(options))}.")
    if len(options) < MIN_OPTIONS:
        raise QuizImportError(f"Multiple-choice questions need at least {MIN_OPTIONS} options.")
    option_list = [options[letter].strip() for letter in letters]
    if any(not opt for opt in option_list):
        raise QuizImportError("Option text cannot be empty.")

    correct_index = None
    if correct_letter is not None:
        if correct_letter not in letters:
            raise QuizImportError(f"CORRECT must be one of {', '.join(letters)}.")
        correct_index = letters.index(correct_letter)

    return Question(
        id=0,  # assigned by the store when the list is saved
        text=question_text,
        kind=QuestionKind.MULTIPLE_CHOICE,
        options=option_list,
        correct_option_index=correct_index,
        time_limit_seconds=time_limit_seconds,
        points=points,
    )


def _parse_positive_int(line: str, label: str) -> int:
    raw_value = line.split(":", 1)[1].strip()
    if not raw_value:
        raise QuizImportError(f"{label} must include an integer value.")
    try:
        parsed_value = int(raw_value)
    except ValueError as exc:
        raise QuizImportError(f"{label} must be an integer.") from exc
    if parsed_value <= 0:
        raise QuizImportError(f"{label} must be a positive integer.")
    return parsed_value

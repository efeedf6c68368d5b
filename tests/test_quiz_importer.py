"""Plain-text question list import and question rendering."""

from __future__ import annotations

import pytest

from live_quiz.core.models import Question, QuestionKind
from live_quiz.core.question_renderer import QuestionRenderer
from live_quiz.core.quiz_importer import QuizImportError, load_quiz_from_file, parse_quiz_text

SAMPLE = """TITLE: Week 3 check-in

Q: What is $30^o$ in radians?
A: $\\frac{\\pi}{2}$
B: $\\frac{\\pi}{6}$
C: $\\frac{\\pi}{3}$
CORRECT: B
TIMELIMIT: 15
---
Q: Capital of France?
ANSWER: Paris
POINTS: 2

Q: Explain why the sky is blue.
Think about wavelengths.
OPEN
"""


class TestParse:
    def test_sample_file(self):
        imported = parse_quiz_text(SAMPLE)
        assert imported.title == "Week 3 check-in"
        choice, short, open_ended = imported.questions

        assert choice.kind is QuestionKind.MULTIPLE_CHOICE
        assert len(choice.options) == 3
        assert choice.correct_option_index == 1
        assert choice.time_limit_seconds == 15

        assert short.kind is QuestionKind.SHORT_ANSWER
        assert short.correct_answer == "Paris"
        assert short.points == 2

        assert open_ended.kind is QuestionKind.OPEN
        assert open_ended.text == "Explain why the sky is blue.\nThink about wavelengths."

    def test_default_title(self):
        imported = parse_quiz_text("Q: Anything?\nOPEN", default_title="fallback")
        assert imported.title == "fallback"

    def test_question_without_options_is_open(self):
        [question] = parse_quiz_text("Q: Tell me something.").questions
        assert question.kind is QuestionKind.OPEN

    def test_multiline_option(self):
        [question] = parse_quiz_text("Q: Pick one\nA: first\ncontinued\nB: second").questions
        assert question.options == ["first\ncontinued", "second"]
        assert question.correct_option_index is None

    @pytest.mark.parametrize(
        "text",
        [
            "",
            "A: orphan option\nB: other",
            "Q: Gap\nA: one\nC: three",
            "Q: Lonely\nA: one",
            "Q: Bad key\nA: one\nB: two\nCORRECT: D",
            "Q: Mixed\nA: one\nB: two\nANSWER: one",
            "Q: Slow\nOPEN\nTIMELIMIT: soon",
            "Q: Free\nOPEN\nPOINTS: 0",
            "Q: Blank\nANSWER:",
        ],
    )
    def test_invalid_definitions(self, text):
        with pytest.raises(QuizImportError):
            parse_quiz_text(text)

    def test_load_from_file(self, tmp_path):
        path = tmp_path / "fractions.txt"
        path.write_text("Q: Half of 1?\nANSWER: 1/2\n", encoding="utf-8")
        imported = load_quiz_from_file(path)
        assert imported.title == "fractions"
        assert imported.source_path == path

    def test_imported_list_is_accepted_by_store(self, store):
        imported = parse_quiz_text(SAMPLE)
        question_list = store.add_question_list(1, imported.title, imported.questions)
        assert len(question_list.question_ids) == 3


class TestRenderer:
    def test_payload_hides_answers(self):
        question = Question(
            id=4,
            text="**Bold** and $x^2$",
            options=["*one*", "two"],
            correct_option_index=0,
        )
        payload = QuestionRenderer().public_payload(question)
        assert payload["html"] == "<p><strong>Bold</strong> and $x^2$</p>\n"
        assert payload["options"] == ["<em>one</em>", "two"]
        assert "correct_option_index" not in payload
        assert "correct_answer" not in payload

    def test_raw_html_is_escaped(self):
        html = QuestionRenderer().render_fragment("<script>alert(1)</script>")
        assert "<script>" not in html

    def test_empty_text(self):
        assert "No content" in QuestionRenderer().render_fragment("   ")

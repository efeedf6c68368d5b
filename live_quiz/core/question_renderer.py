"""Markdown + LaTeX rendering of questions for event payloads.

Question text is converted to an HTML fragment on the server; math stays as
``$...$`` markup for MathJax on the client. The payload never includes the
correct option or answer, so it is safe to push to every listener.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from markdown_it import MarkdownIt

from live_quiz.core.models import Question


@dataclass(slots=True)
class QuestionRenderer:
    """Converts markdown-with-math question content into HTML fragments."""

    enable_html: bool = False
    _markdown: MarkdownIt = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self._markdown = (
            MarkdownIt("commonmark", {"html": self.enable_html})
            .enable("table")
            .enable("strikethrough")
        )

    def render_fragment(self, markdown_text: str) -> str:
        sanitized = markdown_text.strip()
        if not sanitized:
            return "<p><em>No content provided.</em></p>"
        return self._markdown.render(sanitized)

    def render_inline(self, markdown_text: str) -> str:
        return self._markdown.renderInline(markdown_text.strip())

    def public_payload(self, question: Question) -> dict[str, object]:
        return {
            "id": question.id,
            "kind": question.kind.value,
            "html": self.render_fragment(question.text),
            "options": [self.render_inline(option) for option in question.options],
            "points": question.points,
            "time_limit_seconds": question.time_limit_seconds,
        }

"""Application entry point: seed an in-memory store from a quiz file and serve the API."""

from __future__ import annotations

import argparse
from pathlib import Path

from live_quiz.constants.about import APP_ABOUT_TEXT, APP_NAME, APP_VERSION, HELP_TEXT
from live_quiz.constants.network_constants import DEFAULT_HOST, DEFAULT_PORT
from live_quiz.core.models import Role
from live_quiz.core.quiz_importer import load_quiz_from_file
from live_quiz.core.services.session_store import InMemorySessionStore
from live_quiz.core.session_engine import SessionEngine
from live_quiz.core.settings import EngineSettings
from live_quiz.server.api_server import start_api_server
from live_quiz.server.auth import JwtTokenGate
from live_quiz.utils.logging_config import configure_logging


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="live-quiz",
        description=APP_ABOUT_TEXT,
        epilog=HELP_TEXT,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("quiz_file", type=Path, help="question list in the plain-text import format")
    parser.add_argument("--teacher-id", type=int, default=1)
    parser.add_argument("--students", default="", help="comma-separated student ids enrolled in the class")
    parser.add_argument("--class-name", default="Demo class")
    parser.add_argument("--host", default=DEFAULT_HOST)
    parser.add_argument("--port", type=int, default=DEFAULT_PORT)
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> None:
    """Initialize logging, seed the store, and run the API server until interrupted."""
    args = _parse_args(argv)
    settings = EngineSettings.from_env()
    logger = configure_logging(settings.log_level)
    logger.info("Starting %s v%s…", APP_NAME, APP_VERSION)

    student_ids = {int(part) for part in args.students.split(",") if part.strip()}
    store = InMemorySessionStore()
    classroom = store.add_class(args.teacher_id, args.class_name, student_ids)
    imported = load_quiz_from_file(args.quiz_file)
    question_list = store.add_question_list(classroom.id, imported.title, imported.questions)
    logger.info(
        "Loaded %s questions from %s as list %s for class %s",
        len(question_list.question_ids),
        args.quiz_file,
        question_list.id,
        classroom.id,
    )

    token_gate = JwtTokenGate(settings.jwt_secret)
    if settings.jwt_secret is None:
        logger.warning("LIVE_QUIZ_JWT_SECRET is not set; using an ephemeral secret and printing dev tokens")
        logger.info("Teacher token: %s", token_gate.issue(args.teacher_id, Role.TEACHER))
        for student_id in sorted(student_ids):
            logger.info("Student %s token: %s", student_id, token_gate.issue(student_id, Role.STUDENT))

    engine = SessionEngine(store, settings)
    thread = start_api_server(engine, token_gate, host=args.host, port=args.port, log_level=settings.log_level)
    logger.info("API available at http://%s:%s/", args.host, args.port)
    try:
        thread.join()
    except KeyboardInterrupt:
        logger.info("Interrupted; shutting down")
    finally:
        engine.shutdown()


if __name__ == "__main__":
    main()

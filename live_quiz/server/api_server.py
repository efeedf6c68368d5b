"""FastAPI server exposing the live session engine over REST and Server-Sent Events."""

from __future__ import annotations

import asyncio
import logging
from threading import Thread

import anyio
from fastapi import Depends, FastAPI, Query, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
import uvicorn

from live_quiz.constants.about import APP_NAME, APP_VERSION
from live_quiz.constants.network_constants import (
    DEFAULT_HOST,
    DEFAULT_PORT,
    RATE_LIMIT_COMPACT_INTERVAL_SECONDS,
    RATE_LIMIT_MAX_KEYS,
    SHUTDOWN_GRACE_SECONDS,
    SSE_POLL_SECONDS,
)
from live_quiz.core.errors import (
    Duplicate,
    Forbidden,
    InvalidCredential,
    InvalidState,
    NotFound,
    RateLimited,
    StoreError,
    SubscriptionClosed,
)
from live_quiz.core.models import Principal, SessionStatus
from live_quiz.core.services.rate_limiter import SlidingWindowCounter
from live_quiz.core.session_engine import SessionEngine
from live_quiz.server.auth import TokenGate, principal_dependency
from live_quiz.server.schemas import (
    AnswerPayload,
    AnswerResult,
    AnswerReviewRow,
    JoinResult,
    LeaderboardEntry,
    SessionCreated,
    StartSessionPayload,
    TransitionResult,
    ViolationPayload,
    ViolationResult,
)

logger = logging.getLogger(__name__)

_ERROR_STATUS: dict[type[Exception], int] = {
    InvalidCredential: 401,
    Forbidden: 403,
    NotFound: 404,
    InvalidState: 409,
    Duplicate: 409,
    StoreError: 503,
}


def _get_engine_dependency(engine: SessionEngine):
    def dependency() -> SessionEngine:
        return engine

    return dependency


def _rate_limit_dependency(limiter: SlidingWindowCounter):
    def dependency(request: Request) -> None:
        host = request.client.host if request.client else "unknown"
        key = f"{host}:{request.url.path}"
        allowed, _ = limiter.hit(key)
        if not allowed:
            logger.warning("Rate limit exceeded for %s", key)
            raise RateLimited("Rate limit exceeded. Please try again later.", limiter.retry_after(key))

    return dependency


def _install_error_handlers(app: FastAPI, limiter: SlidingWindowCounter) -> None:
    def error_response(request: Request, exc: Exception) -> JSONResponse:
        status_code = next(code for kind, code in _ERROR_STATUS.items() if isinstance(exc, kind))
        headers = {"WWW-Authenticate": "Bearer"} if status_code == 401 else None
        return JSONResponse(
            status_code=status_code,
            content={"detail": str(exc), "error": type(exc).__name__},
            headers=headers,
        )

    for kind in _ERROR_STATUS:
        app.add_exception_handler(kind, error_response)

    @app.exception_handler(ValueError)
    def value_error(request: Request, exc: ValueError) -> JSONResponse:
        return JSONResponse(status_code=422, content={"detail": str(exc), "error": "ValueError"})

    @app.exception_handler(RateLimited)
    def rate_limited(request: Request, exc: RateLimited) -> JSONResponse:
        retry_after = max(1, int(exc.retry_after + 0.999))
        return JSONResponse(
            status_code=429,
            content={"detail": str(exc), "error": "RateLimited", "retry_after": retry_after},
            headers={
                "Retry-After": str(retry_after),
                "X-RateLimit-Limit": str(limiter.max_hits),
                "X-RateLimit-Remaining": "0",
            },
        )


def create_api_app(engine: SessionEngine, token_gate: TokenGate) -> FastAPI:
    """Create a FastAPI application wired to the provided engine and token gate."""
    settings = engine.settings
    app = FastAPI(title=f"{APP_NAME} API", version=APP_VERSION)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.allowed_origins),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    limiter = SlidingWindowCounter(
        max_hits=settings.rate_limit,
        window_seconds=settings.rate_window_seconds,
        max_keys=RATE_LIMIT_MAX_KEYS,
        compact_interval_seconds=RATE_LIMIT_COMPACT_INTERVAL_SECONDS,
    )
    _install_error_handlers(app, limiter)

    engine_dep = _get_engine_dependency(engine)
    current_principal = principal_dependency(token_gate)
    throttled = Depends(_rate_limit_dependency(limiter))

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.post("/sessions", status_code=201, response_model=SessionCreated, dependencies=[throttled])
    def create_session(
        payload: StartSessionPayload,
        principal: Principal = Depends(current_principal),
        manager: SessionEngine = Depends(engine_dep),
    ) -> SessionCreated:
        session_id = manager.start_session(payload.list_id, payload.class_id, principal)
        return SessionCreated(session_id=session_id)

    @app.get("/sessions/{session_id}")
    def get_session(
        session_id: int,
        principal: Principal = Depends(current_principal),
        manager: SessionEngine = Depends(engine_dep),
    ) -> dict[str, object]:
        return manager.snapshot(session_id, principal)

    @app.post("/sessions/{session_id}/start", response_model=TransitionResult)
    def start_session(
        session_id: int,
        principal: Principal = Depends(current_principal),
        manager: SessionEngine = Depends(engine_dep),
    ) -> TransitionResult:
        status = manager.start(session_id, principal)
        return TransitionResult(session_id=session_id, status=status.value)

    @app.post("/sessions/{session_id}/advance", response_model=TransitionResult)
    def advance_session(
        session_id: int,
        principal: Principal = Depends(current_principal),
        manager: SessionEngine = Depends(engine_dep),
    ) -> TransitionResult:
        status = manager.advance(session_id, principal)
        return TransitionResult(session_id=session_id, status=status.value)

    @app.post("/sessions/{session_id}/close", response_model=TransitionResult)
    def close_question(
        session_id: int,
        principal: Principal = Depends(current_principal),
        manager: SessionEngine = Depends(engine_dep),
    ) -> TransitionResult:
        changed = manager.force_close(session_id, principal)
        return TransitionResult(session_id=session_id, status=SessionStatus.QUESTION_CLOSED.value, changed=changed)

    @app.post("/sessions/{session_id}/end", response_model=TransitionResult)
    def end_session(
        session_id: int,
        principal: Principal = Depends(current_principal),
        manager: SessionEngine = Depends(engine_dep),
    ) -> TransitionResult:
        status = manager.end(session_id, principal)
        return TransitionResult(session_id=session_id, status=status.value)

    @app.post("/sessions/{session_id}/join", status_code=201, response_model=JoinResult, dependencies=[throttled])
    def join_session(
        session_id: int,
        principal: Principal = Depends(current_principal),
        manager: SessionEngine = Depends(engine_dep),
    ) -> JoinResult:
        return JoinResult(participant_id=manager.join_session(session_id, principal.user_id))

    @app.post("/sessions/{session_id}/answers", status_code=201, response_model=AnswerResult, dependencies=[throttled])
    def submit_answer(
        session_id: int,
        payload: AnswerPayload,
        principal: Principal = Depends(current_principal),
        manager: SessionEngine = Depends(engine_dep),
    ) -> AnswerResult:
        participant_id = manager.participant_id_for(session_id, principal.user_id)
        outcome = manager.submit_answer(session_id, participant_id, payload.question_id, payload.value)
        return AnswerResult(
            answer_id=outcome.answer_id,
            question_id=outcome.question_id,
            submitted_at=outcome.submitted_at,
            elapsed_ms=outcome.elapsed_ms,
            is_correct=outcome.is_correct,
            score=outcome.score,
            total_score=outcome.total_score,
        )

    @app.post("/sessions/{session_id}/violations", response_model=ViolationResult, dependencies=[throttled])
    def record_violation(
        session_id: int,
        payload: ViolationPayload,
        principal: Principal = Depends(current_principal),
        manager: SessionEngine = Depends(engine_dep),
    ) -> ViolationResult:
        participant_id = manager.participant_id_for(session_id, principal.user_id)
        outcome = manager.record_violation(session_id, participant_id, payload.kind)
        return ViolationResult(
            participant_id=outcome.participant_id,
            violation_count=outcome.violation_count,
            threshold=outcome.threshold,
            removed=outcome.removed,
            changed=outcome.changed,
        )

    @app.get("/sessions/{session_id}/answers", response_model=list[AnswerReviewRow])
    def review_answers(
        session_id: int,
        question_id: int | None = Query(default=None),
        principal: Principal = Depends(current_principal),
        manager: SessionEngine = Depends(engine_dep),
    ) -> list[AnswerReviewRow]:
        return [
            AnswerReviewRow(
                answer_id=answer.id,
                participant_id=answer.participant_id,
                question_id=answer.question_id,
                payload=answer.payload,
                submitted_at=answer.submitted_at,
                elapsed_ms=answer.elapsed_ms,
                is_correct=answer.is_correct,
                score=answer.score,
            )
            for answer in manager.answers_for_review(session_id, principal, question_id)
        ]

    @app.get("/sessions/{session_id}/leaderboard", response_model=list[LeaderboardEntry])
    def get_leaderboard(
        session_id: int,
        limit: int | None = Query(default=None, ge=1),
        principal: Principal = Depends(current_principal),
        manager: SessionEngine = Depends(engine_dep),
    ) -> list[LeaderboardEntry]:
        return [
            LeaderboardEntry(
                participant_id=row.participant_id,
                student_id=row.student_id,
                score=row.score,
                correct_answers=row.correct_answers,
                total_answers=row.total_answers,
                total_answer_time_ms=row.total_answer_time_ms,
                removed=row.removed,
            )
            for row in manager.leaderboard(session_id, principal, limit)
        ]

    @app.get("/sessions/{session_id}/events")
    async def stream_events(
        session_id: int,
        request: Request,
        principal: Principal = Depends(current_principal),
        manager: SessionEngine = Depends(engine_dep),
    ) -> StreamingResponse:
        subscription = await run_in_threadpool(manager.subscribe, session_id, principal)
        heartbeat = manager.settings.heartbeat_seconds

        async def event_source():
            loop = asyncio.get_running_loop()
            ready = asyncio.Event()

            def wake() -> None:
                try:
                    loop.call_soon_threadsafe(ready.set)
                except RuntimeError:
                    # Loop already closed; nobody is waiting any more.
                    pass

            subscription.set_notifier(wake)
            last_sent = loop.time()
            try:
                while not await request.is_disconnected():
                    ready.clear()
                    try:
                        event = subscription.get(timeout=0)
                    except SubscriptionClosed:
                        if subscription.dropped:
                            yield "event: resubscribe\ndata: {}\n\n"
                        break
                    if event is not None:
                        last_sent = loop.time()
                        yield event.to_sse()
                        continue
                    try:
                        await asyncio.wait_for(ready.wait(), SSE_POLL_SECONDS)
                    except asyncio.TimeoutError:
                        if loop.time() - last_sent >= heartbeat:
                            last_sent = loop.time()
                            yield ": keep-alive\n\n"
            finally:
                subscription.set_notifier(None)
                # A disconnect cancels the response task; unsubscribe must still run.
                with anyio.CancelScope(shield=True):
                    await run_in_threadpool(manager.unsubscribe, subscription)

        return StreamingResponse(
            event_source(),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
        )

    return app


def build_api_server(
    engine: SessionEngine,
    token_gate: TokenGate,
    host: str = DEFAULT_HOST,
    port: int = DEFAULT_PORT,
    log_level: str = "info",
) -> uvicorn.Server:
    app = create_api_app(engine, token_gate)
    config = uvicorn.Config(
        app=app,
        host=host,
        port=port,
        log_level=log_level.lower(),
        timeout_graceful_shutdown=SHUTDOWN_GRACE_SECONDS,
    )
    return uvicorn.Server(config)


def start_api_server(
    engine: SessionEngine,
    token_gate: TokenGate,
    host: str = DEFAULT_HOST,
    port: int = DEFAULT_PORT,
    log_level: str = "info",
) -> Thread:
    """Start the FastAPI server in a background daemon thread."""
    server = build_api_server(engine, token_gate, host, port, log_level)

    def run_server() -> None:
        server.run()

    thread = Thread(target=run_server, name="LiveQuizApiServer", daemon=True)
    thread.start()
    return thread

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .allocator import QuestionAllocator
from .bank import QuestionBank, load_test_types
from .config import Settings, settings as default_settings
from .db import create_database
from .engine import SessionEngine, notify_assigner
from .errors import (
    NoActiveSession,
    NotAssigned,
    SessionAlreadyActive,
    SessionError,
    StoreError,
)
from .events import EventStore
from .logging_config import configure_logging
from .messaging import EventStoreMessenger
from .models import IN_PROGRESS, PendingAssignment
from .schemas import (
    AnswerIn,
    AnswerOut,
    AssignIn,
    PublicQuestionOut,
    PublicSessionOut,
    StartIn,
)
from .store import create_stores
from .timer import TimerManager

logger = logging.getLogger(__name__)


def build_engine(settings: Settings, database=None) -> tuple[SessionEngine, EventStore]:
    """Wire the engine and its collaborators; bank or store problems abort startup."""
    bank = QuestionBank.from_file(settings.QUESTION_BANK_PATH)
    test_types = load_test_types(settings.TEST_TYPES_PATH)
    database = database if database is not None else create_database(settings)
    store, assignments = create_stores(settings, database)
    event_store = EventStore(database)
    messenger = EventStoreMessenger(event_store)
    timers = TimerManager(store, messenger, tick_seconds=settings.TIMER_TICK_SECONDS)
    engine = SessionEngine(
        bank,
        QuestionAllocator(bank),
        store,
        assignments,
        timers,
        messenger,
        settings,
        test_types=test_types,
        on_finish=[notify_assigner(messenger)],
    )
    return engine, event_store


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or default_settings

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        configure_logging(settings.LOG_LEVEL)
        engine, event_store = build_engine(settings)
        app.state.engine = engine
        app.state.event_store = event_store
        restored = await engine.restore()
        logger.info("Examiner ready, %d sessions resumed", len(restored))
        try:
            yield
        finally:
            await engine.shutdown()

    app = FastAPI(title="Examiner API", lifespan=lifespan)

    origins = [o.strip() for o in settings.CORS_ORIGINS.split(",") if o.strip()]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins or ["*"],
        allow_origin_regex=settings.CORS_ORIGIN_REGEX or None,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(SessionError)
    async def session_error_handler(request: Request, exc: SessionError):
        if isinstance(exc, (NoActiveSession, NotAssigned)):
            status_code = 404
        elif isinstance(exc, SessionAlreadyActive):
            status_code = 409
        else:
            status_code = 400
        return JSONResponse(status_code=status_code, content={"detail": str(exc)})

    @app.exception_handler(StoreError)
    async def store_error_handler(request: Request, exc: StoreError):
        logger.error("Store failure on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=503, content={"detail": "Session storage is unavailable"})

    def get_engine(request: Request) -> SessionEngine:
        return request.app.state.engine

    def require_admin(x_admin_key: Optional[str] = Header(default=None)):
        if x_admin_key != settings.ADMIN_KEY:
            raise HTTPException(status_code=401, detail="Invalid admin key")

    @app.get("/api/chats/{chat_id}/events")
    async def list_events(chat_id: str, request: Request, after: int | None = None, limit: int = 200):
        events = await request.app.state.event_store.list(chat_id, after=after, limit=limit)
        latest_seq = events[-1]["seq"] if events else after
        return {"events": events, "latest_seq": latest_seq}

    @app.post("/api/admin/assignments", response_model=PendingAssignment)
    async def assign(
        payload: AssignIn,
        engine: SessionEngine = Depends(get_engine),
        _: None = Depends(require_admin),
    ):
        return await engine.assign(
            payload.candidate_handle,
            assigned_by=payload.assigned_by,
            assigned_by_id=payload.assigned_by_id,
            category=payload.category,
        )

    @app.get("/api/admin/assignments", response_model=List[PendingAssignment])
    async def list_assignments(engine: SessionEngine = Depends(get_engine), _: None = Depends(require_admin)):
        return await engine.assignments.list()

    @app.delete("/api/admin/assignments/{candidate_handle}")
    async def cancel_assignment(
        candidate_handle: str,
        engine: SessionEngine = Depends(get_engine),
        _: None = Depends(require_admin),
    ):
        if not await engine.cancel_assignment(candidate_handle):
            raise HTTPException(404, "Assignment not found")
        return {"ok": True}

    @app.post("/api/sessions/start", response_model=PublicSessionOut)
    async def start(payload: StartIn, engine: SessionEngine = Depends(get_engine)):
        await engine.start(payload.candidate_id, payload.candidate_handle)
        return await _public_session(engine, payload.candidate_id)

    @app.post("/api/sessions/answer", response_model=AnswerOut)
    async def answer(payload: AnswerIn, engine: SessionEngine = Depends(get_engine)):
        result = await engine.submit_answer(payload.candidate_id, payload.question_index, payload.option_index)
        return AnswerOut(accepted=True, is_correct=result.is_correct, finished=result.finished)

    @app.get("/api/sessions/{candidate_id}", response_model=PublicSessionOut)
    async def get_session(candidate_id: str, engine: SessionEngine = Depends(get_engine)):
        return await _public_session(engine, candidate_id)

    return app


async def _public_session(engine: SessionEngine, candidate_id: str) -> PublicSessionOut:
    s = await engine.get_session(candidate_id)
    if not s:
        raise HTTPException(404, "Session not found")
    question = None
    if s.status == IN_PROGRESS and s.current_question < s.total_questions:
        q = s.questions[s.current_question]
        question = PublicQuestionOut(index=s.current_question, text=q.text, options=q.options)
    return PublicSessionOut(
        candidate_id=s.candidate_id,
        status=s.status,
        current_question=s.current_question,
        total_questions=s.total_questions,
        deadline_ts=s.deadline_ts,
        question=question,
    )


app = create_app()

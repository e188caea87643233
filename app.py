# app.py - Finance Quest progress service
# - Progress commands and gating queries for lesson, quiz, calculator and
#   simulation components
# - One tracker per learner, owned by the application root (app.state)

import logging
import os
from contextlib import asynccontextmanager
from typing import Any, Dict

from fastapi import Body, FastAPI, HTTPException, Request
from pydantic import ValidationError

import db
from env_validation import get_env_bool
from progress import ProgressTracker, ProgressTrackerRegistry
from progress_rules import PROGRESS_RULES
from schemas import COMMAND_ADAPTER

logger = logging.getLogger(__name__)


def _build_registry() -> ProgressTrackerRegistry:
    return ProgressTrackerRegistry(
        rules=PROGRESS_RULES,
        persist=get_env_bool("PROGRESS_PERSISTENCE", default=True),
    )


@asynccontextmanager
async def _lifespan(app: FastAPI):
    try:
        from env_validation import validate_environment
        validate_environment()

        configured = os.getenv("DB_PATH")
        if configured and configured != db.DB_PATH:
            db.reset_pool(configured)
        db.init()
        app.state.progress = _build_registry()
        logger.info(
            "Progress service ready: db=%s chapters=%s persistence=%s",
            db.DB_PATH,
            PROGRESS_RULES.total_chapters,
            app.state.progress.persist,
        )
        yield
    except Exception as e:
        logger.error("Failed to initialize application: %s", str(e), exc_info=True)
        raise


app = FastAPI(title="Finance Quest Progress", version="2.0.0", lifespan=_lifespan)


def _tracker(request: Request, user_id: str) -> ProgressTracker:
    user_key = user_id.strip()
    if not user_key:
        raise HTTPException(status_code=400, detail="user_id required")
    registry = getattr(request.app.state, "progress", None)
    if registry is None:
        registry = _build_registry()
        request.app.state.progress = registry
    return registry.get(user_key)


def _snapshot_json(tracker: ProgressTracker) -> Dict[str, Any]:
    return tracker.snapshot().model_dump(by_alias=True, mode="json")


# Handlers are ``async`` so commands run one at a time on the event loop.


@app.get("/progress/{user_id}")
async def get_progress(user_id: str, request: Request):
    return _snapshot_json(_tracker(request, user_id))


@app.post("/progress/{user_id}/commands")
async def post_command(user_id: str, request: Request, payload: Dict[str, Any] = Body(...)):
    try:
        command = COMMAND_ADAPTER.validate_python(payload)
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=exc.errors(include_url=False, include_context=False)) from exc
    tracker = _tracker(request, user_id)
    applied = tracker.dispatch(command)
    return {"applied": applied, "snapshot": _snapshot_json(tracker)}


@app.post("/progress/{user_id}/reset")
async def reset_progress(user_id: str, request: Request):
    tracker = _tracker(request, user_id)
    tracker.reset_progress()
    return _snapshot_json(tracker)


@app.get("/progress/{user_id}/chapters")
async def list_chapters(user_id: str, request: Request):
    tracker = _tracker(request, user_id)
    return {"currentChapter": tracker.snapshot().current_chapter, "chapters": tracker.chapters()}


@app.get("/progress/{user_id}/chapters/{chapter}/unlocked")
async def chapter_unlocked(user_id: str, chapter: int, request: Request):
    tracker = _tracker(request, user_id)
    return {"chapter": chapter, "unlocked": tracker.is_chapter_unlocked(chapter)}


@app.get("/progress/{user_id}/quizzes/{quiz_id}/eligibility")
async def quiz_eligibility(user_id: str, quiz_id: str, request: Request):
    tracker = _tracker(request, user_id)
    return {"quizId": quiz_id, "canTake": tracker.can_take_quiz(quiz_id)}


@app.get("/progress/{user_id}/analytics")
async def progress_analytics(user_id: str, request: Request):
    return _tracker(request, user_id).analytics_report()


@app.get("/progress/{user_id}/context")
async def learner_context(user_id: str, request: Request):
    return _tracker(request, user_id).learner_context()

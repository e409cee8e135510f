import asyncio
import logging
import os
import threading
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from ens_assessment.assessment_engine import AssessmentEngine, build_default_engine
from ens_assessment.assessment_errors import AssessmentError

logger = logging.getLogger("ens_assessment")

app = FastAPI(title="ENS assessment")

# CORS configuration
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Allow all origins for dev
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

_engine_lock = threading.Lock()
_engine: Optional[AssessmentEngine] = None


def get_engine() -> AssessmentEngine:
    global _engine
    with _engine_lock:
        if _engine is None:
            _engine = build_default_engine()
        return _engine


def set_engine(engine: Optional[AssessmentEngine]) -> None:
    global _engine
    with _engine_lock:
        _engine = engine


class OpenSessionRequest(BaseModel):
    session_id: Optional[str] = None


class TurnRequest(BaseModel):
    text: str
    question_id: Optional[str] = None
    expected_turn: Optional[int] = None


class EditRequest(BaseModel):
    field: str


class DeleteRequest(BaseModel):
    confirm_token: Optional[str] = None


@app.exception_handler(AssessmentError)
async def assessment_error_handler(request: Request, exc: AssessmentError):
    level = logging.WARNING if exc.http_status < 500 else logging.ERROR
    logger.log(level, f"{request.method} {request.url.path}: {type(exc).__name__}: {exc.message}")
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict())


@app.post("/sessions")
async def open_session(body: Optional[OpenSessionRequest] = None):
    session_id = body.session_id if body is not None else None
    return await asyncio.to_thread(get_engine().open_session, session_id)


@app.post("/sessions/{session_id}/turns")
async def submit_turn(session_id: str, body: TurnRequest):
    return await asyncio.to_thread(
        get_engine().submit_turn,
        session_id,
        body.text,
        question_id=body.question_id,
        expected_turn=body.expected_turn,
    )


@app.post("/sessions/{session_id}/questions/{question_id}/edit")
async def request_edit(session_id: str, question_id: str, body: EditRequest):
    return await asyncio.to_thread(get_engine().request_edit, session_id, question_id, body.field)


@app.post("/sessions/{session_id}/questions/{question_id}/delete")
async def request_delete(session_id: str, question_id: str, body: DeleteRequest):
    return await asyncio.to_thread(get_engine().request_delete, session_id, question_id, body.confirm_token)


@app.get("/sessions/{session_id}/progress")
async def session_progress(session_id: str):
    return await asyncio.to_thread(get_engine().get_progress, session_id)


@app.get("/progress")
async def overall_progress():
    return await asyncio.to_thread(get_engine().get_progress)


@app.get("/answers/{question_id}/history")
async def answer_history(question_id: str):
    return await asyncio.to_thread(get_engine().answer_history, question_id)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=os.getenv("HOST", "0.0.0.0"), port=int(os.getenv("PORT", "8000")))

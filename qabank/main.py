"""FastAPI application wiring for the qabank query service."""

from __future__ import annotations

import logging
from typing import List, Optional, Union

from fastapi import Depends, FastAPI, HTTPException, Query

from .config import get_engine_config
from .errors import InvalidSessionState, LoadError, NotFoundError
from .logging_utils import setup_logging
from .metrics import METRICS
from .models import (
    CorpusSummary,
    LoadCorpusRequest,
    NextQuestion,
    Question,
    QuestionSummary,
    QuizPolicy,
    SearchFilters,
    SessionComplete,
    SessionReport,
    StartSessionResponse,
    SubmitAnswerRequest,
)
from .services import QueryService

logger = logging.getLogger(__name__)


app = FastAPI(title="qabank", version="0.1.0")


def get_query_service() -> QueryService:
    return app.state.query_service


@app.on_event("startup")
def startup() -> None:
    config = get_engine_config()
    setup_logging(config.log_level)
    service = QueryService.from_config(config)
    app.state.query_service = service
    if config.corpus_paths:
        try:
            service.load_corpus(config.corpus_paths)
        except LoadError as exc:
            logger.error("Starting without a corpus: %s", exc)
    elif config.snapshot_path:
        try:
            service.load_snapshot()
        except LoadError as exc:
            logger.error("Starting without a corpus: %s", exc)


@app.post("/v1/corpus/load", response_model=CorpusSummary)
def load_corpus(
    request: LoadCorpusRequest, service: QueryService = Depends(get_query_service)
) -> CorpusSummary:
    try:
        return service.load_corpus(request.paths)
    except LoadError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc


@app.get("/v1/corpus", response_model=CorpusSummary)
def corpus_summary(service: QueryService = Depends(get_query_service)) -> CorpusSummary:
    try:
        return service.summary()
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@app.get("/v1/questions/{question_id}", response_model=Question)
def get_question(question_id: str, service: QueryService = Depends(get_query_service)) -> Question:
    try:
        return service.get_question(question_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@app.get("/v1/search", response_model=List[QuestionSummary])
def search(
    q: str = "",
    category: Optional[str] = None,
    tag: List[str] = Query(default=[]),
    service: QueryService = Depends(get_query_service),
) -> List[QuestionSummary]:
    try:
        return service.search(q, SearchFilters(category=category, tags=tag))
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@app.post("/v1/sessions", response_model=StartSessionResponse)
def start_session(
    policy: QuizPolicy, service: QueryService = Depends(get_query_service)
) -> StartSessionResponse:
    try:
        session_id = service.start_quiz_session(policy)
        first = service.current_question(session_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return StartSessionResponse(session_id=session_id, first=first)


@app.get("/v1/sessions/{session_id}/current", response_model=Union[NextQuestion, SessionComplete])
def current_question(
    session_id: str, service: QueryService = Depends(get_query_service)
) -> Union[NextQuestion, SessionComplete]:
    try:
        return service.current_question(session_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@app.post("/v1/sessions/{session_id}/answers", response_model=Union[NextQuestion, SessionComplete])
def submit_answer(
    session_id: str,
    request: SubmitAnswerRequest,
    service: QueryService = Depends(get_query_service),
) -> Union[NextQuestion, SessionComplete]:
    try:
        return service.submit_answer(
            session_id, request.question_id, request.was_correct, request.answer_text
        )
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except InvalidSessionState as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@app.delete("/v1/sessions/{session_id}", response_model=SessionReport)
def end_session(session_id: str, service: QueryService = Depends(get_query_service)) -> SessionReport:
    try:
        return service.end_session(session_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@app.get("/v1/metrics")
def metrics() -> dict:
    return METRICS.snapshot()


__all__ = ["app"]

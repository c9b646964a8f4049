from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from loguru import logger
from pydantic import BaseModel, Field

from . import __version__
from .config import Config
from .errors import InvalidTransitionError, WorkNotFoundError
from .models import (
    Chapter,
    CharacterConnection,
    CharacterProfile,
    Checkpoint,
    FeatureFlags,
    OutlineEntry,
    Pacing,
    Tone,
    WorkStatus,
)
from .state_machine import WorkStateMachine


class CreateWorkRequest(BaseModel):
    premise: str = Field(..., min_length=1, description="Story premise")
    title: str = ""
    reader_id: Optional[str] = None
    outline: list[OutlineEntry] = Field(default_factory=list)
    characters: list[CharacterProfile] = Field(default_factory=list)
    config: FeatureFlags = Field(default_factory=FeatureFlags)


class CreateWorkResponse(BaseModel):
    work_id: str
    status: WorkStatus


class FeedbackRequest(BaseModel):
    checkpoint: Checkpoint
    pacing: Pacing
    tone: Tone
    character: CharacterConnection
    notes: Optional[str] = None


def create_app(state_machine: Optional[WorkStateMachine] = None) -> FastAPI:
    """Build the API around a state machine (one is built from default config if omitted)."""
    machine = state_machine or WorkStateMachine.from_config(Config())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        resumed = machine.resume_interrupted()
        if resumed:
            logger.info(f"Resumed {len(resumed)} interrupted works on startup")
        yield

    app = FastAPI(
        title="Neverending API",
        description="Batch-gated serialized fiction generation",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.machine = machine

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(WorkNotFoundError)
    async def not_found(request: Request, exc: WorkNotFoundError):
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(InvalidTransitionError)
    async def invalid_transition(request: Request, exc: InvalidTransitionError):
        return JSONResponse(
            status_code=409,
            content={"detail": str(exc), "current": exc.current, "requested": exc.requested},
        )

    @app.get("/health")
    def health_check():
        return {"status": "healthy", "version": __version__}

    @app.post("/works", response_model=CreateWorkResponse, status_code=201)
    def create_work(request: CreateWorkRequest):
        work = machine.create_work(
            request.premise,
            title=request.title,
            reader_id=request.reader_id,
            outline=request.outline,
            characters=request.characters,
            flags=request.config,
        )
        return CreateWorkResponse(work_id=work.id, status=machine.get_status(work.id))

    @app.post("/works/{work_id}/start", response_model=WorkStatus, status_code=202)
    def start_work(work_id: str):
        return machine.trigger_initial(work_id)

    @app.post("/works/{work_id}/feedback", response_model=WorkStatus, status_code=202)
    def submit_feedback(work_id: str, request: FeedbackRequest):
        return machine.submit_feedback(
            work_id,
            request.checkpoint,
            request.pacing,
            request.tone,
            request.character,
            request.notes,
        )

    @app.get("/works/{work_id}/status", response_model=WorkStatus)
    def work_status(work_id: str):
        return machine.get_status(work_id)

    @app.get("/works/{work_id}/chapters", response_model=list[Chapter])
    def list_chapters(work_id: str):
        machine.store.get_work(work_id)
        return machine.store.list_chapters(work_id)

    @app.get("/works/{work_id}/chapters/{number}", response_model=Chapter)
    def get_chapter(work_id: str, number: int):
        machine.store.get_work(work_id)
        chapter = machine.store.get_chapter(work_id, number)
        if chapter is None:
            raise HTTPException(status_code=404, detail=f"Chapter {number} not found")
        return chapter

    return app


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(create_app(), host="0.0.0.0", port=8000)

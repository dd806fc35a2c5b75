"""
REST API for starting, continuing and inspecting the refinement run.

The process holds a single run. Rounds execute in a background task; poll
GET /api/run for progress.
"""
from __future__ import annotations

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import PlainTextResponse

from loopforge.agent.controller import RunController
from loopforge.agent.errors import (
    ConfigurationInvalidError,
    NothingToContinueError,
    RunInProgressError,
)
from loopforge.models.schemas import (
    ContinueRequest,
    IterationRecord,
    RunConfiguration,
    RunStatus,
)
from loopforge.services.model_client import OpenAICompatibleModelClient

logger = logging.getLogger(__name__)
router = APIRouter()

_controller: Optional[RunController] = None


def get_controller() -> RunController:
    global _controller
    if _controller is None:
        _controller = RunController(OpenAICompatibleModelClient())
    return _controller


def _status(controller: RunController) -> RunStatus:
    history = controller.history
    last = history[-1] if history else None
    return RunStatus(
        state=controller.state,
        status_message=controller.status_message,
        rounds=len(history),
        last_round_id=last.id if last else None,
        selected_score=last.selected_score if last else None,
        latest_feedback=controller.latest_feedback,
        tokens=controller.token_totals,
        error=controller.last_error,
    )


@router.post("/start", response_model=RunStatus, status_code=202)
async def start_run(config: RunConfiguration, controller: RunController = Depends(get_controller)):
    """
    Start a fresh run. Any previous history is discarded.

    Rounds run until the target score is reached (after the minimum number
    of rounds) or the maximum number of rounds is used up.
    """
    try:
        controller.start_in_background(config)
    except RunInProgressError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except ConfigurationInvalidError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return _status(controller)


@router.post("/continue", response_model=RunStatus, status_code=202)
async def continue_run(request: ContinueRequest, controller: RunController = Depends(get_controller)):
    """Run extra rounds from a paused (or failed) run, ignoring the target score."""
    try:
        controller.continue_in_background(request.round_count, request.feedback)
    except (RunInProgressError, NothingToContinueError) as e:
        raise HTTPException(status_code=409, detail=str(e))
    except ConfigurationInvalidError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return _status(controller)


@router.post("/reset", response_model=RunStatus)
async def reset_run(controller: RunController = Depends(get_controller)):
    controller.reset()
    return _status(controller)


@router.get("", response_model=RunStatus)
async def get_run(controller: RunController = Depends(get_controller)):
    """Current state, progress message, token totals and latest feedback."""
    return _status(controller)


@router.get("/history", response_model=List[IterationRecord])
async def get_history(controller: RunController = Depends(get_controller)):
    return list(controller.history)


@router.get("/document", response_class=PlainTextResponse)
async def download_document(controller: RunController = Depends(get_controller)):
    """Download the latest selected draft as a text file."""
    content = controller.final_document()
    if content is None:
        raise HTTPException(status_code=404, detail="No selected document is available")
    return PlainTextResponse(
        content,
        headers={"Content-Disposition": 'attachment; filename="final_selected_document.txt"'},
    )

# api/recommendations.py
from typing import Optional

from fastapi import APIRouter, Query, Request

from recommender.catalog import (
    DEFAULT_RAM_GB, DEFAULT_VRAM_GB, RAM_RANGE, VRAM_RANGE, parse_hardware,
)

router = APIRouter(prefix="/api/v1", tags=["recommendations"])


@router.get("/recommendations")
def recommendations(
    request: Request,
    vram: Optional[str] = Query(None),
    ram: Optional[str] = Query(None),
    task: str = Query(""),
):
    vram_gb = parse_hardware(vram, DEFAULT_VRAM_GB, VRAM_RANGE, "VRAM")
    ram_gb = parse_hardware(ram, DEFAULT_RAM_GB, RAM_RANGE, "RAM")
    picked = request.app.state.catalog.recommend(vram_gb, ram_gb, task)
    return {
        "current_hardware": {
            "vram": f"{vram_gb} GB (Manual Input)",
            "ram": f"{ram_gb} GB (Manual Input)",
        },
        "recommendations": [m.to_dict() for m in picked],
    }


@router.get("/tasks")
def tasks(request: Request):
    return {"tasks": request.app.state.catalog.tasks()}

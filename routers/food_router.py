"""
Food Router - photo analysis and the daily food diary (subscription-gated)
"""

import logging
from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, UploadFile
from sqlalchemy.ext.asyncio import AsyncSession

from auth import require_access
from context import AppContext, get_context
from crud.diary import DiaryRepository
from database import get_db
from database_models import User
from models.food import DiaryEntryCreate, DiaryEntryOut
from utils.responses import success_response
from utils.security_utils import read_uploaded_image

logger = logging.getLogger(__name__)

food_router = APIRouter(prefix="/api/food", tags=["food"])
diary_router = APIRouter(prefix="/api/diary", tags=["diary"])


@food_router.post("/analyze")
async def analyze_food(
    image: UploadFile = File(...),
    hint: Optional[str] = Form(default=None),
    user: User = Depends(require_access),
    context: AppContext = Depends(get_context),
):
    """
    Recognize the food in a photo and estimate calories and macros.

    `hint` is an optional user-typed name used when the photo cannot be labelled.
    """
    content = await read_uploaded_image(image)
    try:
        analysis = await context.food_analyzer.analyze(content, hint=hint)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    logger.info(f"User {user.id} analyzed photo: {analysis.food_name} ({analysis.source})")
    return success_response(analysis.model_dump(mode="json"))


@diary_router.post("")
async def create_diary_entry(
    entry: DiaryEntryCreate,
    user: User = Depends(require_access),
    db: AsyncSession = Depends(get_db),
    context: AppContext = Depends(get_context),
):
    data = entry.model_dump()
    data["entry_date"] = entry.entry_date or context.clock().date()
    created = await DiaryRepository(db).create_entry(user.id, data)
    return success_response(DiaryEntryOut.model_validate(created).model_dump(mode="json"), status=201)


@diary_router.get("")
async def list_diary_entries(
    day: Optional[date] = Query(default=None),
    user: User = Depends(require_access),
    db: AsyncSession = Depends(get_db),
    context: AppContext = Depends(get_context),
):
    """Entries for one day (UTC today by default)"""
    day = day or context.clock().date()
    entries = await DiaryRepository(db).list_entries(user.id, day)
    return success_response({
        "day": day.isoformat(),
        "entries": [DiaryEntryOut.model_validate(e).model_dump(mode="json") for e in entries],
    })


@diary_router.get("/summary")
async def diary_summary(
    day: Optional[date] = Query(default=None),
    user: User = Depends(require_access),
    db: AsyncSession = Depends(get_db),
    context: AppContext = Depends(get_context),
):
    """Calorie and macro totals for one day"""
    day = day or context.clock().date()
    totals = await DiaryRepository(db).daily_totals(user.id, day)
    return success_response({"day": day.isoformat(), **totals})


@diary_router.delete("/{entry_id}")
async def delete_diary_entry(
    entry_id: int,
    user: User = Depends(require_access),
    db: AsyncSession = Depends(get_db),
):
    if not await DiaryRepository(db).delete_entry(user.id, entry_id):
        raise HTTPException(status_code=404, detail="Diary entry not found")
    return success_response({"id": entry_id}, message="Deleted")

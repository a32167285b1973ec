"""
DiaryRepository for food diary entries
"""

from datetime import date
from typing import List

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from database_models import DiaryEntry


class DiaryRepository:

    def __init__(self, db: AsyncSession):
        self.db = db

    async def create_entry(self, user_id: int, entry_data: dict) -> DiaryEntry:
        entry = DiaryEntry(user_id=user_id, **entry_data)
        self.db.add(entry)
        await self.db.flush()
        await self.db.refresh(entry)
        return entry

    async def list_entries(self, user_id: int, day: date) -> List[DiaryEntry]:
        result = await self.db.execute(
            select(DiaryEntry)
            .where(DiaryEntry.user_id == user_id, DiaryEntry.entry_date == day)
            .order_by(DiaryEntry.created_at, DiaryEntry.id)
        )
        return list(result.scalars().all())

    async def delete_entry(self, user_id: int, entry_id: int) -> bool:
        result = await self.db.execute(
            delete(DiaryEntry).where(DiaryEntry.id == entry_id, DiaryEntry.user_id == user_id)
        )
        return result.rowcount > 0

    async def daily_totals(self, user_id: int, day: date) -> dict:
        """Sum calories and macros for one day."""
        result = await self.db.execute(
            select(
                func.count(DiaryEntry.id),
                func.coalesce(func.sum(DiaryEntry.calories), 0.0),
                func.coalesce(func.sum(DiaryEntry.protein_g), 0.0),
                func.coalesce(func.sum(DiaryEntry.carbs_g), 0.0),
                func.coalesce(func.sum(DiaryEntry.fat_g), 0.0),
            ).where(DiaryEntry.user_id == user_id, DiaryEntry.entry_date == day)
        )
        count, calories, protein, carbs, fat = result.one()
        return {
            "entries": count,
            "calories": round(float(calories), 1),
            "protein_g": round(float(protein), 1),
            "carbs_g": round(float(carbs), 1),
            "fat_g": round(float(fat), 1),
        }

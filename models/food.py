"""
Food analysis and diary request/response models
"""
from datetime import date, datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class NutritionFacts(BaseModel):
    calories: float = 0.0
    protein_g: float = 0.0
    carbs_g: float = 0.0
    fat_g: float = 0.0
    serving_g: float = 0.0


class FoodAnalysis(BaseModel):
    food_name: str
    confidence: float = 0.0
    labels: List[str] = Field(default_factory=list)
    nutrition: NutritionFacts
    source: str  # nutrition_api | estimate


class DiaryEntryCreate(BaseModel):
    food_name: str = Field(min_length=1, max_length=200)
    calories: float = Field(ge=0)
    protein_g: float = Field(default=0.0, ge=0)
    carbs_g: float = Field(default=0.0, ge=0)
    fat_g: float = Field(default=0.0, ge=0)
    entry_date: Optional[date] = None
    source: str = Field(default="manual", pattern="^(manual|vision|nutrition_api|estimate)$")


class DiaryEntryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    food_name: str
    calories: float
    protein_g: float
    carbs_g: float
    fat_g: float
    entry_date: date
    source: str
    created_at: datetime

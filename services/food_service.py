"""
Food recognition and nutrition lookup.

Photos are downscaled with Pillow, labelled by the Google Cloud Vision REST
API and matched against USDA FoodData Central. When either API is missing or
failing the static estimate table answers instead.
"""

import asyncio
import base64
import io
import logging
from typing import List, Optional, Tuple

import httpx
from PIL import Image, UnidentifiedImageError

from models.food import FoodAnalysis, NutritionFacts

logger = logging.getLogger(__name__)

VISION_URL = "https://vision.googleapis.com/v1/images:annotate"
FDC_SEARCH_URL = "https://api.nal.usda.gov/fdc/v1/foods/search"

# Labels the vision API returns for almost any plate of food
GENERIC_LABELS = {
    "food", "dish", "cuisine", "ingredient", "recipe", "tableware", "plate",
    "meal", "produce", "staple food", "dishware", "serveware", "fast food",
    "comfort food", "finger food", "garnish", "kitchen utensil", "table",
}

# Per-serving estimates: calories, protein, carbs, fat, serving grams
ESTIMATE_TABLE = {
    "chicken with rice": (520, 38, 45, 12, 350),
    "chicken": (335, 38, 0, 19, 170),
    "rice": (205, 4.3, 45, 0.4, 158),
    "pasta": (320, 12, 62, 2, 200),
    "pizza": (285, 12, 36, 10, 107),
    "hamburger": (540, 34, 40, 27, 226),
    "salad": (150, 4, 12, 10, 200),
    "egg": (78, 6, 0.6, 5, 50),
    "apple": (95, 0.5, 25, 0.3, 182),
    "banana": (105, 1.3, 27, 0.4, 118),
    "bread": (160, 6, 30, 2, 60),
    "steak": (480, 46, 0, 32, 225),
    "fish": (280, 40, 0, 12, 170),
    "sushi": (350, 14, 62, 5, 220),
    "soup": (180, 8, 20, 7, 300),
    "sandwich": (420, 22, 40, 18, 200),
    "tacos": (450, 24, 38, 22, 240),
    "yogurt": (150, 9, 17, 4, 200),
    "oatmeal": (160, 6, 27, 3, 240),
    "french fries": (365, 4, 48, 17, 117),
}

DEFAULT_ESTIMATE = (450, 20, 50, 18, 300)


def estimate_nutrition(food_name: str) -> NutritionFacts:
    """Look a food up in the static table, falling back to a generic meal."""
    key = food_name.strip().lower()
    values = ESTIMATE_TABLE.get(key)
    if values is None:
        # Longest table key contained in the name ("grilled chicken" -> "chicken")
        matches = [name for name in ESTIMATE_TABLE if name in key]
        values = ESTIMATE_TABLE[max(matches, key=len)] if matches else DEFAULT_ESTIMATE
    calories, protein, carbs, fat, serving = values
    return NutritionFacts(calories=calories, protein_g=protein, carbs_g=carbs, fat_g=fat, serving_g=serving)


def prepare_image(image_bytes: bytes, max_side: int) -> bytes:
    """
    Downscale and re-encode an uploaded photo as JPEG.

    Raises:
        ValueError: if the bytes are not a readable image
    """
    try:
        with Image.open(io.BytesIO(image_bytes)) as img:
            img = img.convert("RGB")
            img.thumbnail((max_side, max_side))
            out = io.BytesIO()
            img.save(out, format="JPEG", quality=85)
            return out.getvalue()
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError) as e:
        raise ValueError(f"Unreadable image: {e}") from e


def pick_food_label(labels: List[Tuple[str, float]]) -> Optional[Tuple[str, float]]:
    for description, score in labels:
        if description.lower() not in GENERIC_LABELS:
            return description, score
    return None


def _nutrient(food: dict, names: List[str]) -> float:
    for nutrient in food.get("foodNutrients") or []:
        name = (nutrient.get("nutrientName") or "").lower()
        unit = (nutrient.get("unitName") or "").upper()
        if name in names and unit != "KJ":
            try:
                return float(nutrient.get("value") or 0.0)
            except (TypeError, ValueError):
                return 0.0
    return 0.0


class FoodAnalyzer:
    """
    Turns a food photo into a name and nutrition estimate.
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        vision_api_key: Optional[str] = None,
        fdc_api_key: Optional[str] = None,
        max_image_side: int = 1024,
    ):
        self.http = http_client
        self.vision_api_key = vision_api_key
        self.fdc_api_key = fdc_api_key
        self.max_image_side = max_image_side

    async def detect_labels(self, image_bytes: bytes) -> List[Tuple[str, float]]:
        """Label detection via Cloud Vision; empty list when unavailable."""
        if not self.vision_api_key:
            logger.info("VISION_API_KEY not set, skipping label detection")
            return []
        body = {
            "requests": [{
                "image": {"content": base64.b64encode(image_bytes).decode("ascii")},
                "features": [{"type": "LABEL_DETECTION", "maxResults": 10}],
            }]
        }
        try:
            response = await self.http.post(VISION_URL, params={"key": self.vision_api_key}, json=body)
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning(f"Vision label detection failed: {e}")
            return []
        annotations = (response.json().get("responses") or [{}])[0].get("labelAnnotations") or []
        return [(a.get("description", ""), float(a.get("score", 0.0))) for a in annotations if a.get("description")]

    async def lookup_nutrition(self, food_name: str) -> Optional[NutritionFacts]:
        """FoodData Central search, values per 100 g scaled to the table's serving size."""
        if not self.fdc_api_key:
            return None
        payload = {"query": food_name, "pageSize": 3, "pageNumber": 1, "requireAllWords": False}
        try:
            response = await self.http.post(FDC_SEARCH_URL, params={"api_key": self.fdc_api_key}, json=payload)
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning(f"FoodData Central lookup for '{food_name}' failed: {e}")
            return None
        foods = response.json().get("foods") or []
        if not foods:
            return None

        food = foods[0]
        calories = _nutrient(food, ["energy"])
        if calories <= 0:
            return None
        serving = estimate_nutrition(food_name).serving_g
        factor = serving / 100.0
        return NutritionFacts(
            calories=round(calories * factor, 1),
            protein_g=round(_nutrient(food, ["protein"]) * factor, 1),
            carbs_g=round(_nutrient(food, ["carbohydrate, by difference"]) * factor, 1),
            fat_g=round(_nutrient(food, ["total lipid (fat)"]) * factor, 1),
            serving_g=serving,
        )

    async def analyze(self, image_bytes: bytes, hint: Optional[str] = None) -> FoodAnalysis:
        """
        Recognize the food in a photo and estimate its nutrition.

        Raises:
            ValueError: if the upload is not an image
        """
        prepared = await asyncio.to_thread(prepare_image, image_bytes, self.max_image_side)
        labels = await self.detect_labels(prepared)
        picked = pick_food_label(labels)

        if picked is not None:
            food_name, confidence = picked
        elif hint:
            food_name, confidence = hint.strip(), 0.0
        else:
            food_name, confidence = "Unknown food", 0.0

        nutrition = await self.lookup_nutrition(food_name) if picked or hint else None
        source = "nutrition_api"
        if nutrition is None:
            nutrition = estimate_nutrition(food_name)
            source = "estimate"

        return FoodAnalysis(
            food_name=food_name,
            confidence=round(confidence, 3),
            labels=[description for description, _ in labels],
            nutrition=nutrition,
            source=source,
        )

"""DummyJSON recipes source."""
from __future__ import annotations

from typing import Any

import structlog

from recipe_orchestrator.errors import ParseError
from recipe_orchestrator.models.candidate import SourceCandidate
from recipe_orchestrator.models.recipe import Recipe
from recipe_orchestrator.sources.base import BaseSource

logger = structlog.get_logger(__name__)


class DummyJSONSource(BaseSource):
    name = "dummyjson"
    domain = "dummyjson.com"
    base_url = "https://dummyjson.com"
    priority = 2
    confidence = 75
    match_threshold = 0.6
    timeout_seconds = 15.0

    async def search(self, query: str) -> list[SourceCandidate]:
        data = await self._get_json(f"{self.base_url}/recipes/search", params={"q": query})
        if not isinstance(data, dict) or not isinstance(data.get("recipes", []), list):
            raise ParseError("unexpected DummyJSON payload", source_id=self.name, status_code=200)

        candidates = []
        for item in data.get("recipes", []):
            try:
                candidates.append(self._candidate(self._parse_recipe(item)))
            except (KeyError, TypeError, ValueError) as e:
                logger.debug("dummyjson.skip_recipe", error=str(e))
        return candidates

    def _parse_recipe(self, item: dict[str, Any]) -> Recipe:
        prep = item.get("prepTimeMinutes")
        cook = item.get("cookTimeMinutes")
        calories = item.get("caloriesPerServing")
        return Recipe(
            title=item["name"],
            ingredients=list(item.get("ingredients") or []),
            instructions=list(item.get("instructions") or []),
            image_url=item.get("image"),
            servings=item.get("servings"),
            prep_time=prep,
            cook_time=cook,
            total_time=(prep or 0) + (cook or 0) or None,
            nutrition={"calories": calories} if calories else None,
            tags=list(item.get("tags") or []) + list(item.get("mealType") or []),
            cuisine=item.get("cuisine"),
            source_url=f"{self.base_url}/recipes/{item['id']}" if item.get("id") is not None else None,
        )

"""Normalized recipe record and completeness scoring."""
from __future__ import annotations

import re
from typing import Any, ClassVar

from pydantic import BaseModel, Field, model_validator

_LEADING_QUANTITY = re.compile(r"^[\d\s/\-.¼½¾⅓⅔⅛]+")


class Ingredient(BaseModel):
    """A single ingredient line."""

    text: str
    name: str | None = Field(default=None, description="Ingredient name without quantity")
    quantity: str | None = None
    unit: str | None = None

    @model_validator(mode="after")
    def _fill_name(self) -> Ingredient:
        if not self.name:
            self.name = _LEADING_QUANTITY.sub("", self.text).strip() or self.text.strip()
        return self


class Recipe(BaseModel):
    """A recipe as returned by any source, before or after merging."""

    title: str
    ingredients: list[Ingredient] = Field(default_factory=list)
    instructions: list[str] = Field(default_factory=list)
    description: str | None = None
    image_url: str | None = None
    servings: int | None = None
    prep_time: int | None = Field(default=None, description="Minutes")
    cook_time: int | None = Field(default=None, description="Minutes")
    total_time: int | None = Field(default=None, description="Minutes")
    nutrition: dict[str, Any] | None = None
    tags: list[str] = Field(default_factory=list)
    cuisine: str | None = None
    source_url: str | None = None
    author: str | None = None

    # Completeness weights (sum to 100)
    COMPLETENESS_WEIGHTS: ClassVar[dict[str, int]] = {
        "title": 10,
        "ingredients": 25,
        "instructions": 25,
        "image": 5,
        "servings": 5,
        "timing": 5,
        "description": 5,
        "nutrition": 10,
        "tags": 5,
        "cuisine": 5,
    }

    @model_validator(mode="before")
    @classmethod
    def _coerce_ingredients(cls, data: Any) -> Any:
        # Sources often hand back plain strings
        if isinstance(data, dict) and isinstance(data.get("ingredients"), list):
            data = dict(data)
            data["ingredients"] = [
                {"text": item} if isinstance(item, str) else item
                for item in data["ingredients"]
            ]
        return data

    def populated_fields(self) -> set[str]:
        """Return the completeness fields this recipe fills in."""
        present = set()
        if self.title:
            present.add("title")
        if self.ingredients:
            present.add("ingredients")
        if self.instructions:
            present.add("instructions")
        if self.image_url:
            present.add("image")
        if self.servings:
            present.add("servings")
        if self.prep_time or self.cook_time or self.total_time:
            present.add("timing")
        if self.description:
            present.add("description")
        if self.nutrition:
            present.add("nutrition")
        if self.tags:
            present.add("tags")
        if self.cuisine:
            present.add("cuisine")
        return present

    def completeness(self) -> int:
        """Score 0-100 from weighted presence of expected fields."""
        return completeness_of(self.populated_fields())

    @property
    def ingredient_names(self) -> list[str]:
        return [i.name or i.text for i in self.ingredients]


def completeness_of(fields: set[str]) -> int:
    """Completeness score for a set of populated field names."""
    score = sum(Recipe.COMPLETENESS_WEIGHTS.get(f, 0) for f in fields)
    return min(score, 100)

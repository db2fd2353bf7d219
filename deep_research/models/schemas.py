from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field

from deep_research.models.research import ResearchOptions


# --- Requests ---


class ResearchRequestOptions(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    is_deep_research: bool = Field(default=False, alias="isDeepResearch")
    depth: int | None = None
    breadth: int | None = None

    def to_options(self) -> ResearchOptions:
        return ResearchOptions(deep=self.is_deep_research, depth=self.depth, breadth=self.breadth)


class ResearchRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    query: str = Field(min_length=1)
    options: ResearchRequestOptions = Field(default_factory=ResearchRequestOptions)
    model_key: str | None = Field(default=None, alias="modelKey")


# --- Responses ---


class ModelInfo(BaseModel):
    key: str
    id: str
    name: str
    description: str
    provider: str
    context_length: int
    capabilities: list[str]


class ModelsResponse(BaseModel):
    default: str
    models: list[ModelInfo]

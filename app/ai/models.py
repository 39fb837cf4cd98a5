"""Pydantic models for AI analysis and fix results stored on jobs."""

from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator


DIMENSIONS = ("lighting", "spatial", "color", "clutter", "biophilic", "composition")


class Problem(BaseModel):
    problem_id: str
    title: str
    description: str = ""
    impact: str = ""
    severity: Literal["low", "medium", "high"] = "medium"


class Solution(BaseModel):
    problem_id: str
    title: str
    description: str = ""
    steps: List[str] = Field(default_factory=list)
    difficulty: Literal["easy", "medium", "hard"] = "medium"


class DimensionAnalysis(BaseModel):
    score: float = Field(..., ge=0, le=100)
    status: Literal["excellent", "good", "needs_improvement", "poor"]
    problems: List[Problem] = Field(default_factory=list)
    solutions: List[Solution] = Field(default_factory=list)


class OverallScore(BaseModel):
    score: float = Field(..., ge=0, le=100)
    grade: Literal["A", "B", "C", "D", "F"]
    summary: str


class MediaAnalysis(BaseModel):
    media_type: Literal["image", "video"]
    overall: OverallScore
    dimensions: Dict[str, DimensionAnalysis]
    frames_analyzed: int = 1
    model: Optional[str] = None

    @field_validator("dimensions")
    @classmethod
    def unique_problem_ids(cls, v: Dict[str, DimensionAnalysis]) -> Dict[str, DimensionAnalysis]:
        seen = set()
        for dim in v.values():
            for p in dim.problems:
                if p.problem_id in seen:
                    raise ValueError(f"Duplicate problem id: {p.problem_id}")
                seen.add(p.problem_id)
        return v

    def problems_by_id(self) -> Dict[str, Problem]:
        return {p.problem_id: p for dim in self.dimensions.values() for p in dim.problems}


class FixResult(BaseModel):
    media_type: Literal["image", "video"]
    source_job_id: str
    fix_ids: List[str]
    output_ref: str
    thumbnail_ref: Optional[str] = None
    problems_fixed: List[str] = Field(default_factory=list)
    changes_applied: List[str] = Field(default_factory=list)
    summary: Optional[str] = None

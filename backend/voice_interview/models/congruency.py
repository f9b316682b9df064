from pydantic import BaseModel, Field, field_validator
from typing import List, Literal

class SkillsMatch(BaseModel):
    matched: List[str] = []
    missing: List[str] = []
    transferable: List[str] = []

class CongruencyAnalysis(BaseModel):
    """Verdict from the completion service, validated once at the provider boundary"""
    is_congruent: bool = Field(True, alias="isCongruent")
    confidence: float = 0.5
    reasons: List[str] = []
    recommendation: Literal["continue", "end_gracefully"] = "continue"
    is_extremely_incompatible: bool = Field(False, alias="isExtremelyIncompatible")
    skills_match: SkillsMatch = Field(default_factory=SkillsMatch, alias="skillsMatch")

    model_config = {"populate_by_name": True}

    @field_validator("confidence")
    @classmethod
    def confidence_in_unit_range(cls, value: float) -> float:
        if not 0.0 <= value <= 1.0:
            raise ValueError(f"confidence out of range: {value}")
        return value

    @classmethod
    def fail_open(cls, reason: str = "Unable to perform analysis, proceeding with interview") -> "CongruencyAnalysis":
        return cls(
            is_congruent=True,
            confidence=0.5,
            reasons=[reason],
            recommendation="continue",
            is_extremely_incompatible=False,
        )

class GateDecision(BaseModel):
    """Outcome of the one-shot live gate"""
    recommendation: Literal["continue", "end_gracefully"]
    is_extremely_incompatible: bool
    confidence: float
    closing_line: str = ""

    @property
    def should_end(self) -> bool:
        return self.recommendation == "end_gracefully"

# digitnet/api/schemas.py

from typing import Dict, List, Optional

from pydantic import BaseModel, Field


class ClassifyRequest(BaseModel):
    pixels: List[List[int]] = Field(..., description="28x28 grayscale intensities in [0, 255]")
    identity: Optional[str] = Field(None, description="Stable image key; enables result caching")


class FeedbackRequest(ClassifyRequest):
    label: int = Field(..., ge=0, le=9, description="Ground-truth class")


class ClassifyResponse(BaseModel):
    predicted_class: int
    scores: List[float]
    topology: str
    iterations: int
    belief: Optional[List[float]] = None
    initial_entropy: Optional[float] = None
    final_entropy: Optional[float] = None
    final_max_delta: Optional[float] = None
    oscillation_detected: bool = False


class FeedbackResponse(BaseModel):
    predicted_class: int
    correct: bool
    payoff_scale: float
    updated_nodes: List[str] = Field(default_factory=list)
    skipped_reason: Optional[str] = None
    weights: Dict[str, float] = Field(default_factory=dict)


class WeightsResponse(BaseModel):
    weights: Dict[str, float]
    thetas: Dict[str, float]
    total_updates: int


class PurgeResponse(BaseModel):
    scorer_type: str
    scorer_version: str
    removed: int

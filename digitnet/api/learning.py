"""
Learning endpoints: labeled feedback, learned weights, reset.
"""

from fastapi import APIRouter, Depends, HTTPException, status

from digitnet.api.deps import get_service, to_digit_image
from digitnet.api.schemas import FeedbackRequest, FeedbackResponse, WeightsResponse
from digitnet.pipelines.ensemble import ClassificationService

router = APIRouter(prefix="/learning", tags=["learning"])


@router.post("/feedback", response_model=FeedbackResponse)
def submit_feedback(request: FeedbackRequest, service: ClassificationService = Depends(get_service)):
    """
    Classify a labeled image and update the observer weights from it.
    """
    if not service.learner.enabled:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Observer weight learning is disabled in the ensemble config",
        )
    image = to_digit_image(request.pixels, request.identity, request.label)
    outcome = service.feedback(image)
    return FeedbackResponse(
        predicted_class=outcome.result.predicted_class,
        correct=outcome.correct,
        payoff_scale=outcome.payoff_scale,
        updated_nodes=outcome.updated_nodes,
        skipped_reason=outcome.skipped_reason,
        weights=service.learned_weights(),
    )


@router.get("/weights", response_model=WeightsResponse)
def get_weights(service: ClassificationService = Depends(get_service)):
    thetas, total_updates = service.learner.snapshot_with_count()
    return WeightsResponse(
        weights=service.learned_weights(),
        thetas=thetas,
        total_updates=total_updates,
    )


@router.post("/reset", response_model=WeightsResponse)
def reset_weights(service: ClassificationService = Depends(get_service)):
    service.reset_learning()
    return get_weights(service)

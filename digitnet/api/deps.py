# digitnet/api/deps.py

from typing import List, Optional

from fastapi import HTTPException, Request, status

from digitnet.pipelines.ensemble import ClassificationService
from digitnet.schemas.digit import DigitImage


def get_service(request: Request) -> ClassificationService:
    service = getattr(request.app.state, "service", None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Classifier is not ready, please try again later.",
        )
    return service


def to_digit_image(pixels: List[List[int]], identity: Optional[str] = None, label: Optional[int] = None) -> DigitImage:
    try:
        return DigitImage(pixels, identity=identity, label=label)
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid image data: {e}",
        )

# digitnet/api/main.py

import importlib
import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, status

from digitnet import __version__
from digitnet.api.deps import get_service, to_digit_image
from digitnet.api.learning import router as learning_router
from digitnet.api.schemas import ClassifyRequest, ClassifyResponse, PurgeResponse
from digitnet.config.ensemble_config import load_ensemble_config
from digitnet.config.settings import Settings
from digitnet.errors import CacheError
from digitnet.pipelines.ensemble import ClassificationService, build_service
from digitnet.pipelines.scorers import ScorerRegistry
from digitnet.repository.score_cache import get_score_cache

logger = logging.getLogger(__name__)


def load_registry(spec: str) -> ScorerRegistry:
    """Resolve 'package.module:NAME' to the scorer registry it names."""
    module_name, _, attr = spec.partition(":")
    if not module_name or not attr:
        raise ValueError(f"Scorer registry must look like 'module:NAME', got '{spec}'")
    return getattr(importlib.import_module(module_name), attr)


def load_service_from_env(settings: Optional[Settings] = None, registry_spec: Optional[str] = None) -> Optional[ClassificationService]:
    """
    Build the service from DIGITNET_CONFIG and a scorer registry.
    Returns None (the API answers 503) when either is missing.
    """
    settings = settings or Settings.from_env()
    registry_spec = registry_spec or os.getenv("DIGITNET_SCORERS")
    if not settings.config_path or not registry_spec:
        logger.warning("DIGITNET_CONFIG or DIGITNET_SCORERS not set; classifier not loaded")
        return None

    config = load_ensemble_config(settings.config_path)
    return build_service(config, load_registry(registry_spec), cache=get_score_cache(settings))


def create_app(service: Optional[ClassificationService] = None) -> FastAPI:
    """
    Build the HTTP boundary. With no service given, one is loaded from the
    environment at startup.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if getattr(app.state, "service", None) is None:
            app.state.service = load_service_from_env()
        yield

    app = FastAPI(
        title="digitnet API",
        description="Factor-graph ensemble digit classifier with online observer weighting.",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.service = service
    app.include_router(learning_router)

    @app.get("/health", tags=["meta"])
    def health_check():
        """Health check endpoint for monitoring and load balancers."""
        svc = getattr(app.state, "service", None)
        return {
            "status": "ok" if svc is not None else "loading",
            "service": "digitnet",
            "version": __version__,
            "topology": svc.topology if svc is not None else None,
            "nodes": len(svc.graph) if svc is not None else 0,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    @app.post("/classify", response_model=ClassifyResponse, tags=["classification"])
    def classify(request: ClassifyRequest, svc: ClassificationService = Depends(get_service)):
        """
        Classify one 28x28 digit and return:
        - **predicted_class** and the raw fused **scores**
        - iterative topology only: **belief** and convergence diagnostics
        """
        image = to_digit_image(request.pixels, request.identity)
        result = svc.classify(image)
        return ClassifyResponse(**result.to_dict())

    @app.delete("/cache/{scorer_type}/{scorer_version}", response_model=PurgeResponse, tags=["cache"])
    def purge_cache(scorer_type: str, scorer_version: str, svc: ClassificationService = Depends(get_service)):
        """Drop every cached result of one scorer version (after its algorithm changed)."""
        try:
            removed = svc.purge_cache(scorer_type, scorer_version)
        except CacheError as e:
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail=f"Failed to clear cache for {scorer_type}/{scorer_version}: {e}",
            )
        return PurgeResponse(scorer_type=scorer_type, scorer_version=scorer_version, removed=removed)

    return app


app = create_app()

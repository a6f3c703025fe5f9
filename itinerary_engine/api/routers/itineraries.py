import logging
from typing import Any

from fastapi import APIRouter, HTTPException, Request

from itinerary_engine.core.errors import ConfigurationError
from itinerary_engine.core.itinerary_service import ItineraryService
from itinerary_engine.core.schemas import ItineraryRequest

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/itineraries", tags=["itineraries"])

NOT_CONFIGURED = "Itinerary service not configured"


def get_itinerary_service(request: Request) -> ItineraryService:
    """Return the app's service, building it from settings on first use."""
    service = getattr(request.app.state, "itinerary_service", None)
    if service is None:
        try:
            service = ItineraryService.from_settings()
        except ConfigurationError as e:
            logger.error(f"[Itineraries] Service could not be built: {e}")
            raise HTTPException(status_code=503, detail=NOT_CONFIGURED) from e
        request.app.state.itinerary_service = service
    return service


@router.post("/generate", response_model=dict[str, Any])
async def generate_itinerary(payload: ItineraryRequest, request: Request) -> dict[str, Any]:
    """
    Generate an organized itinerary.

    Always returns a schema-valid itinerary; generation problems show up as
    emptier periods with a reason. Only a misconfigured backend fails the call.
    """
    service = get_itinerary_service(request)
    try:
        itinerary = await service.plan(payload)
    except ConfigurationError as e:
        logger.error(f"[Itineraries] Generation backend not configured: {e}")
        raise HTTPException(status_code=503, detail=NOT_CONFIGURED) from e
    return itinerary.to_payload()


@router.get("/metrics", response_model=dict[str, Any])
async def generation_metrics(request: Request) -> dict[str, Any]:
    service = get_itinerary_service(request)
    return service.metrics()

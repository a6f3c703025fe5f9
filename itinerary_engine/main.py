import logging
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI

from itinerary_engine.api.routers.itineraries import router as itineraries_router
from itinerary_engine.core.itinerary_service import ItineraryService
from itinerary_engine.core.settings import get_settings

load_dotenv()


@asynccontextmanager
async def lifespan(application: FastAPI):
    yield
    # Late backend calls from decided races are cancelled on shutdown
    if application.state.itinerary_service is not None:
        await application.state.itinerary_service.aclose()


def create_app(service: ItineraryService | None = None) -> FastAPI:
    settings = get_settings()
    logging.basicConfig(level=settings.log_level.upper())

    application = FastAPI(title="Itinerary Engine", lifespan=lifespan)

    # Built lazily by the router when not injected
    application.state.itinerary_service = service

    @application.get("/healthz")
    async def healthz() -> dict[str, str]:
        return {"status": "ok"}

    application.include_router(itineraries_router)
    return application


app = create_app()

"""FastAPI application entry point."""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.responses import JSONResponse

from coach_engine.api import router as api_router
from coach_engine.api.deps import get_support_engine


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    # Only tear down an engine that was actually built
    if get_support_engine.cache_info().currsize:
        get_support_engine().shutdown()


app = FastAPI(
    title="Support Coach Engine",
    description="Real-time support coaching engine with knowledge retrieval",
    version="0.1.0",
    lifespan=lifespan,
)


@app.get("/health")
async def health_check() -> JSONResponse:
    """Health check endpoint."""
    return JSONResponse(content={"status": "ok"}, status_code=200)


# Include v1 API router
app.include_router(api_router, prefix="/v1", tags=["v1"])

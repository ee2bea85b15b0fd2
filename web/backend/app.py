import os

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from optia.logger import get_logger
from web.backend.routers import plans

logger = get_logger("api")


def create_app() -> FastAPI:
    app = FastAPI(title="OPT-IA Plans API", version="1.0")

    raw_origins = os.getenv("OPTIA_ALLOWED_ORIGINS", "*")
    allow_origins = [o.strip() for o in raw_origins.split(",") if o.strip()]
    allow_credentials = "*" not in allow_origins

    app.add_middleware(
        CORSMiddleware,
        allow_origins=allow_origins,
        allow_credentials=allow_credentials,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health")
    async def health_check():
        return {"status": "ok", "service": "OPT-IA"}

    app.include_router(plans.router, prefix="/api/v1/plans", tags=["plans"])
    logger.info("Plans API ready (origins: %s)", ", ".join(allow_origins))

    return app


app = create_app()

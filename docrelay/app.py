import os

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from docrelay.routes import log, queues


def create_app() -> FastAPI:
    app = FastAPI(title="Document Relay Monitoring API", version="0.1.0")

    origins_env = os.getenv("DOCRELAY_CORS_ORIGINS", "")
    origins = [origin.strip() for origin in origins_env.split(",") if origin.strip()]
    if not origins:
        origins = ["http://localhost:3000", "http://127.0.0.1:3000"]

    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["GET"],
        allow_headers=["*"],
    )

    app.include_router(log.router, prefix="/api")
    app.include_router(queues.router, prefix="/api")

    @app.get("/", include_in_schema=False)
    async def root() -> JSONResponse:
        """Provide a lightweight landing page for container checks."""
        return JSONResponse(
            {
                "message": "Document Relay Monitoring API",
                "docs": "/docs",
                "health": "/api/queues",
            }
        )

    return app


app = create_app()

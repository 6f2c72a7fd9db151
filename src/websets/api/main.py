"""
Websets API - FastAPI backend for webset editing, enrichment and export
"""

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from dotenv import find_dotenv, load_dotenv

from .routes import enrichment, exports, providers, websets
from .routes._engine import get_engine
from websets.utils.logging_config import Logger

# Load local .env so provider keys and WEBSETS_* settings are available in API mode.
load_dotenv(find_dotenv(usecwd=True), override=False)

app = FastAPI(
    title="Websets API",
    description="API for versioned websets, column enrichment and exports",
    version="0.1.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/health")
async def health_check():
    """Health check endpoint"""
    return {"status": "healthy", "version": "0.1.0"}


app.include_router(websets.router, prefix="/api", tags=["Websets"])
app.include_router(enrichment.router, prefix="/api", tags=["Enrichment"])
app.include_router(exports.router, prefix="/api", tags=["Exports"])
app.include_router(providers.router, prefix="/api", tags=["Providers"])


@app.on_event("startup")
async def _startup_logging():
    Logger.init()


@app.on_event("shutdown")
async def _shutdown_engine():
    await get_engine().aclose()
    Logger.close()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)

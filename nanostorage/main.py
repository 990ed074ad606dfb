# nanostorage/main.py
from fastapi import FastAPI
from nanostorage.core.config import settings
from nanostorage.api.endpoints import credit, cron, files
import logging

# Configure basic logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

app = FastAPI(
    title=settings.PROJECT_NAME,
    openapi_url=f"{settings.API_V1_STR}/openapi.json"
)

# All routes live under /api/v1
app.include_router(files.router, prefix=f"{settings.API_V1_STR}/files", tags=["files"])
app.include_router(credit.router, prefix=f"{settings.API_V1_STR}", tags=["credit"])
app.include_router(cron.router, prefix=f"{settings.API_V1_STR}/cron", tags=["cron"])

@app.get("/", summary="Health Check", tags=["default"])
def read_root():
    """ Basic health check endpoint. """
    logger.info("Root endpoint '/' accessed.")
    return {"status": "ok", "message": f"Welcome to {settings.PROJECT_NAME}"}

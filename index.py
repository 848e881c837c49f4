import os
import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from dotenv import load_dotenv

from routes.billing import router as billing_router
from routes.settings import router as settings_router
from services.rate_limiter import RequestRateLimiter

# Load environment variables
load_dotenv()

# Configure logging
log_handlers = [logging.StreamHandler()]
if os.getenv("LOG_FILE"):
    log_handlers.append(logging.FileHandler(os.getenv("LOG_FILE")))

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=log_handlers
)
logger = logging.getLogger(__name__)

# Initialize FastAPI app
app = FastAPI(
    title="Chatstarter Backend",
    description="Authentication, subscription billing and plan reconciliation for the Chatstarter app",
    version="1.0.0"
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=os.getenv("CORS_ORIGINS", "*").split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Rate limiter state is owned by the app so tests can swap or reset it
app.state.settings_rate_limiter = RequestRateLimiter()

# Include routers
app.include_router(billing_router)
app.include_router(settings_router)


@app.on_event("startup")
async def startup_event():
    logger.info("Chatstarter backend starting")
    if not os.getenv("STRIPE_WEBHOOK_SECRET"):
        logger.warning("STRIPE_WEBHOOK_SECRET is not set; every webhook will be rejected")


@app.get("/health")
async def health_check():
    return {"status": "healthy", "version": app.version}


@app.get("/")
async def root():
    return {
        "app": app.title,
        "version": app.version,
        "docs": "/docs",
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", "8000")))

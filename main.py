# main.py
import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

load_dotenv()

from config.logging_config import configure_logging  # noqa: E402
from database import init_db  # noqa: E402
from middleware.rate_limit import limiter  # noqa: E402
from middleware.request_logging import RequestLoggingMiddleware  # noqa: E402
from routers.chat_routes import router as chat_router  # noqa: E402
from services.ai.chat.enrichment import EnrichmentConfig, FixedDelayGate  # noqa: E402

configure_logging()
logger = logging.getLogger(__name__)


def _cors_origins() -> list[str]:
    raw = os.getenv("CORS_ORIGINS") or "http://localhost:3000"
    return [o.strip() for o in raw.split(",") if o.strip()]


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Quote provider rate limit is process-wide, shared by every request.
    app.state.price_gate = FixedDelayGate(EnrichmentConfig.from_env().price_interval_s)
    try:
        if init_db():
            logger.info("startup.db ready=true")
        else:
            logger.info("startup.db ready=false reason=DATABASE_URL unset")
    except Exception:
        logger.exception("startup.db ready=false")
    yield


app = FastAPI(lifespan=lifespan)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins(),
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
)

app.include_router(chat_router, prefix="/api")


@app.get("/health")
async def health():
    return {"status": "ok"}

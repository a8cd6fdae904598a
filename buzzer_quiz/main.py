from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import logging
from buzzer_quiz.config import get_settings
from buzzer_quiz.game_logic import get_engine
from buzzer_quiz.game_timer import get_timers
from buzzer_quiz.routers import game_routes, question_routes, ws_routes
from buzzer_quiz.utils.errors import GameError, error_body
from buzzer_quiz.utils.logging_config import configure_logging

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    configure_logging(settings.LOG_LEVEL)
    settings.report_problems()
    logger.info("Buzzer Quiz starting (question source: %s)", settings.QUESTION_SOURCE)
    engine = await get_engine()
    await engine.create_game(settings.DEFAULT_ROOM_ID)
    yield
    await get_timers().shutdown()


app = FastAPI(
    title="Buzzer Quiz",
    description="Real-time specialist-subject buzzer quiz",
    version="1.0.0",
    lifespan=lifespan
)

# CORS middleware for development
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(game_routes.router)
app.include_router(question_routes.router)
app.include_router(ws_routes.router)


@app.exception_handler(GameError)
async def game_error_handler(request: Request, exc: GameError):
    """Domain errors become JSON responses with a stable code."""
    return JSONResponse(status_code=exc.status_code, content=error_body(exc))


@app.get("/")
async def root():
    """Root endpoint with basic info."""
    return {
        "name": "Buzzer Quiz",
        "version": "1.0.0",
        "status": "running",
        "endpoints": {
            "docs": "/docs",
            "default_game": f"/game/{get_settings().DEFAULT_ROOM_ID}"
        }
    }


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy"}

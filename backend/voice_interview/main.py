from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
import asyncio
import logging
from contextlib import asynccontextmanager
from voice_interview.api import llm_websocket, calls, feedback, session
from voice_interview.core.config import settings

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events"""
    # Startup
    logger.info("🚀 Starting Voice Interview Service...")
    if getattr(app.state, "services", None) is None:
        await validate_api_connections()
        from voice_interview.core.dependencies import build_default_services
        app.state.services = build_default_services()
    purge_task = asyncio.create_task(purge_expired_call_contexts(app))
    logger.info("✅ All systems validated - Application ready!")

    yield

    # Shutdown
    logger.info("🛑 Shutting down Voice Interview Service...")
    purge_task.cancel()
    await app.state.services.registry.drain()

async def purge_expired_call_contexts(app: FastAPI):
    """Drop call contexts older than their TTL on a fixed interval"""
    while True:
        await asyncio.sleep(settings.CALL_CONTEXT_PURGE_INTERVAL_SECONDS)
        app.state.services.call_contexts.cleanup_expired()

app = FastAPI(title="Voice Interview Service", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

async def validate_api_connections():
    """Test actual API connectivity"""
    logger.info("🔍 Validating API connections...")

    # Test database connection
    from voice_interview.core.database import check_database_health
    if not await asyncio.to_thread(check_database_health):
        logger.error("❌ Database validation failed")
        raise RuntimeError("Database connection failed")
    logger.info("✅ Database connection validated")

    # Test Gemini API
    try:
        from google import genai
        client = genai.Client(api_key=settings.GEMINI_API_KEY)
        await client.aio.models.generate_content(
            model=settings.GEMINI_MODEL,
            contents="Test",
            config={"max_output_tokens": 10}
        )
        logger.info("✅ Gemini API connection validated")
    except Exception as e:
        logger.error(f"❌ Gemini API validation failed: {e}")
        logger.warning("⚠️ Interviewer replies will fall back to apologies and congruency checks will fail open")

    if not settings.RETELL_AGENT_ID:
        logger.warning("⚠️ RETELL_AGENT_ID missing - sessions will run without an agent id")

app.include_router(llm_websocket.router, tags=["Voice Calls"])
app.include_router(calls.router, prefix="/calls", tags=["Call Context"])
app.include_router(feedback.router, prefix="/feedback", tags=["Feedback"])
app.include_router(session.router, prefix="/session", tags=["Interview Sessions"])

@app.get("/")
async def root():
    return {"message": "Voice Interview Service API"}

@app.get("/health")
async def health_check():
    return {"status": "healthy", "service": "voice-interview"}

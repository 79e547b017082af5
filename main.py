import uvicorn
import time
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from starlette.middleware.base import BaseHTTPMiddleware

from sqlheal.agents.orchestrator import HealingOrchestrator
from sqlheal.api.heal import router as heal_router
from sqlheal.api.history import router as history_router
from sqlheal.core.config import ADVISORY_TIMEOUT_SECONDS, ENABLE_AI_ADVISORY, HISTORY_FILE
from sqlheal.llm.advisory import LLMQueryAdvisor
from sqlheal.services.history_store import InMemoryHistoryStore, JsonFileHistoryStore
from sqlheal.utils.logging_config import setup_logging

setup_logging()
logger = logging.getLogger("main")


def build_orchestrator() -> HealingOrchestrator:
    """Wire the orchestrator from environment configuration."""
    store = JsonFileHistoryStore(HISTORY_FILE) if HISTORY_FILE else InMemoryHistoryStore()
    advisor = LLMQueryAdvisor() if ENABLE_AI_ADVISORY else None
    if advisor is not None and not advisor.is_available:
        logger.warning("AI advisory enabled but no provider credentials configured")
    return HealingOrchestrator(store=store, advisor=advisor, advisory_timeout=ADVISORY_TIMEOUT_SECONDS)


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    advisor = getattr(app.state.orchestrator.validator, "advisor", None)
    if isinstance(advisor, LLMQueryAdvisor):
        await advisor.close()


app = FastAPI(title="SQL Self-Healing API", lifespan=lifespan)
app.state.orchestrator = build_orchestrator()


# ---------------------------------------------------------------------------
# Logging Middleware
# ---------------------------------------------------------------------------
class LoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        start_time = time.time()
        client_host = request.client.host if request.client else "unknown"
        logger.info("Incoming: %s %s from %s", request.method, request.url.path, client_host)

        try:
            response = await call_next(request)
        except Exception as e:
            logger.error("Request failed: %s %s - Error: %s", request.method, request.url.path, e)
            raise
        process_time = (time.time() - start_time) * 1000
        logger.info(
            "Outgoing: %s %s - Status: %d - Time: %.2fms",
            request.method, request.url.path, response.status_code, process_time,
        )
        return response


app.add_middleware(LoggingMiddleware)


@app.get("/health")
async def health_check():
    advisor = app.state.orchestrator.validator.advisor
    state = {
        "status": "ok",
        "advisory": bool(advisor and advisor.is_available),
    }
    if isinstance(advisor, LLMQueryAdvisor):
        state["providers"] = advisor.router.provider_health_state
    return state


app.include_router(heal_router)
app.include_router(history_router)

if __name__ == "__main__":
    uvicorn.run("main:app", host="127.0.0.1", port=8000, reload=True)

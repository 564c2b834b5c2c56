import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI

from .agent.client import AgentClient
from .api.identity import session_cookie_middleware
from .api.routes import router
from .chat.orchestrator import TurnOrchestrator
from .config import DATA_DIR, PORT, ROOT_PATH, SQLITE_PATH
from .data.sqlite_store import SQLiteStore

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(name)s %(levelname)s %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    DATA_DIR.mkdir(parents=True, exist_ok=True)

    logger.info("Initializing SQLite store...")
    sqlite_store = SQLiteStore(str(SQLITE_PATH))
    await sqlite_store.initialize()

    logger.info("Initializing agent client...")
    agent_client = AgentClient()

    app.state.sqlite_store = sqlite_store
    app.state.agent_client = agent_client
    app.state.orchestrator = TurnOrchestrator(sqlite_store, agent_client)

    logger.info("Startup complete, ready to serve")
    yield

    # Shutdown
    logger.info("Shutting down...")
    await agent_client.close()
    await sqlite_store.close()


app = FastAPI(title="Chat Relay", root_path=ROOT_PATH, lifespan=lifespan)
app.middleware("http")(session_cookie_middleware)
app.include_router(router)


def run() -> None:
    uvicorn.run("chat_relay.main:app", host="0.0.0.0", port=PORT)

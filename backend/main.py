"""Entry point for the line tracker FastAPI application."""

import asyncio
import logging
import os
import shutil
from contextlib import asynccontextmanager

# Configure GitPython to find git executable
git_path = shutil.which("git")
if not git_path:
    # Try common Git installation paths on Windows
    common_paths = [
        r"C:\Program Files\Git\cmd\git.exe",
        r"C:\Program Files (x86)\Git\cmd\git.exe",
        r"C:\Users\{}\AppData\Local\Programs\Git\cmd\git.exe".format(os.getenv("USERNAME", "")),
    ]
    for path in common_paths:
        if os.path.exists(path):
            git_path = path
            break

if git_path:
    os.environ["GIT_PYTHON_GIT_EXECUTABLE"] = git_path
    import git
    git.refresh(path=git_path)
else:
    raise RuntimeError(
        "Git executable not found. Please install Git from https://git-scm.com/downloads "
        "or set GIT_PYTHON_GIT_EXECUTABLE environment variable to the path of the git executable"
    )

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.routes import router as api_router
from services.tracker_services import build_retry_scheduler
from utils.settings import configure_logging, load_settings

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = load_settings()
    configure_logging(settings.log_level)

    stop_event = asyncio.Event()
    retry_task = None
    if settings.enable_retry_scheduler:
        scheduler = build_retry_scheduler(settings)
        retry_task = asyncio.create_task(scheduler.run_forever(stop_event))
    else:
        logger.info("Failed operation retry scheduler is disabled.")

    yield

    stop_event.set()
    if retry_task is not None:
        await retry_task


app = FastAPI(title="Repo Line Tracker", version="0.1.0", lifespan=lifespan)

# Dashboards run on their own dev servers
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(api_router)


@app.get("/")
async def root() -> dict:
    """
    Simple heartbeat endpoint to confirm the API is online.

    Returns:
        dict: App metadata payload.
    """
    return {"status": "ok", "app": "Repo Line Tracker"}

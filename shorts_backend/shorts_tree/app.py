import asyncio
import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles

# Ensure .env is loaded before importing modules that initialize API clients
from .settings import has_all_keys, ALLOWED_ORIGINS, FILE_MAX_AGE_HOURS, GENERATED_DIR
from . import llm
from .errors import CompositionError, ExecutionNotFoundError, ProviderError, StateTransitionError, ValidationError
from .models import CleanupRequest, ComposeRequest, ExecuteRequest
from .prompts import default_tree_template, example_tree_template
from .providers import default_providers
from .registry import registry
from .storage import store

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

CLEANUP_INTERVAL_S = 6 * 60 * 60

async def _periodic_cleanup():
    while True:
        await asyncio.sleep(CLEANUP_INTERVAL_S)
        logger.info("Running periodic file cleanup")
        store.cleanup_old_files(FILE_MAX_AGE_HOURS)

@asynccontextmanager
async def lifespan(app: FastAPI):
    store.ensure_directories()
    store.cleanup_old_files(FILE_MAX_AGE_HOURS)
    task = asyncio.create_task(_periodic_cleanup())
    try:
        yield
    finally:
        task.cancel()

app = FastAPI(title="Shorts Tree Backend", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS or ["*"],
    allow_credentials=True,
    allow_methods=["POST", "GET", "DELETE", "OPTIONS"],
    allow_headers=["*"],
)

app.mount("/generated", StaticFiles(directory=GENERATED_DIR, check_dir=False), name="generated")

@app.get("/health")
def health():
    keys_ok = has_all_keys()
    logger.info(f"Health check: API keys present = {keys_ok}")
    return {"ok": True, "has_keys": keys_ok}

@app.get("/api/tree/example")
def tree_example():
    return example_tree_template().model_dump(mode="json")

@app.get("/api/tree/default")
def tree_default():
    return default_tree_template().model_dump(mode="json")

@app.get("/api/models")
async def models():
    try:
        return await llm.list_models()
    except ProviderError as e:
        logger.error(f"Model listing failed: {e}")
        raise HTTPException(502, e.to_dict())

@app.post("/api/tree/execute")
async def execute_tree(req: ExecuteRequest):
    logger.info(f"Starting tree execution for input: {req.initial_input[:50]}...")
    try:
        execution_id = registry.submit(req.initial_input, req.tree_config, default_providers())
    except ValidationError as e:
        logger.error(f"Rejected tree template: {e}")
        raise HTTPException(400, e.to_dict())
    return {"execution_id": execution_id, "status": "running"}

# Async so snapshots run on the loop thread that mutates the graph
@app.get("/api/tree/result/{execution_id}")
async def tree_result(execution_id: str):
    try:
        return registry.poll(execution_id)
    except ExecutionNotFoundError:
        raise HTTPException(404, "execution not found")

@app.delete("/api/tree/{execution_id}")
async def discard_tree(execution_id: str):
    try:
        registry.discard(execution_id)
    except ExecutionNotFoundError:
        raise HTTPException(404, "execution not found")
    return {"success": True, "execution_id": execution_id}

@app.post("/api/video/compose")
async def compose(req: ComposeRequest):
    try:
        video_path = await registry.compose(req.execution_id, req.scenes)
    except ExecutionNotFoundError:
        raise HTTPException(404, "execution not found")
    except StateTransitionError as e:
        raise HTTPException(409, str(e))
    except CompositionError as e:
        logger.error(f"Video composition failed for {req.execution_id}: {e}")
        raise HTTPException(500, e.to_dict())
    video_url = f"/generated/videos/{os.path.basename(video_path)}"
    return {"success": True, "video_path": video_path, "video_url": video_url}

@app.post("/api/files/cleanup")
def files_cleanup(req: CleanupRequest):
    deleted = store.cleanup_old_files(req.max_age_hours)
    return {"success": True, "deleted_count": deleted}

@app.get("/api/files/usage")
def files_usage():
    return store.disk_usage()

@app.delete("/api/files/{execution_id}")
def files_delete(execution_id: str):
    deleted = store.delete_execution_files(execution_id)
    return {"success": True, "deleted_count": deleted}

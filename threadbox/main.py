"""
FastAPI application: the threadbox entry point.

JSON API over the thread orchestrator:
  conversations   CRUD, settings, activation, title summarization
  messages        send (streams in the background), retry, stop, variants
  search          per-message results, engine selection
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from threadbox import __version__
from threadbox.backends.provider import CompletionProvider
from threadbox.config import get_config
from threadbox.enricher import ContentEnricher
from threadbox.errors import ThreadboxError
from threadbox.orchestrator import ThreadOrchestrator
from threadbox.search.engines import SearchManager
from threadbox.storage.sqlite_store import SQLiteStore

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Globals, initialized at startup
# ---------------------------------------------------------------------------
orchestrator: ThreadOrchestrator | None = None
provider: CompletionProvider | None = None
_background: set[asyncio.Task] = set()


def _setup_logging(cfg: dict):
    log_cfg = cfg.get("logging", {})
    level = getattr(logging, str(log_cfg.get("level", "INFO")).upper(), logging.INFO)
    log_file = log_cfg.get("file")

    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=handlers,
    )


def build_orchestrator(cfg: dict) -> ThreadOrchestrator:
    """Wire store, provider, search and enricher from config."""
    store = SQLiteStore(cfg["storage"]["sqlite_path"])
    completion = CompletionProvider(cfg.get("providers", []))
    search = SearchManager(cfg.get("search", {}))
    enricher = ContentEnricher.from_config(cfg)

    orch = ThreadOrchestrator(
        store,
        completion,
        search,
        enricher=enricher,
        defaults=cfg.get("defaults", {}),
        model_overrides=cfg.get("models", {}),
    )
    assistant_cfg = cfg.get("search_assistant") or {}
    if assistant_cfg.get("model_id") and assistant_cfg.get("provider_id"):
        orch.set_search_assistant_model(assistant_cfg["model_id"], assistant_cfg["provider_id"])
    return orch


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown lifecycle."""
    global orchestrator, provider

    cfg = get_config()
    _setup_logging(cfg)

    orchestrator = build_orchestrator(cfg)
    provider = orchestrator.provider
    await orchestrator.recover_unfinished_messages()

    logger.info(
        "threadbox %s started, listening on %s:%s",
        __version__, cfg["server"]["host"], cfg["server"]["port"],
    )
    logger.info("Storage: SQLite=%s", cfg["storage"]["sqlite_path"])
    logger.info("Providers: %s", ", ".join(provider.backends) or "(none)")
    logger.info("Search engine: %s", orchestrator.get_active_search_engine()["name"])

    yield

    for task in list(_background):
        task.cancel()
    await provider.aclose()
    orchestrator.close()
    logger.info("threadbox shutting down")


app = FastAPI(title="threadbox", version=__version__, lifespan=lifespan)


@app.exception_handler(ThreadboxError)
async def threadbox_error_handler(request: Request, exc: ThreadboxError):
    return JSONResponse({"error": exc.message, **exc.extra}, status_code=exc.http_status)


@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError):
    return JSONResponse({"error": str(exc)}, status_code=400)


async def _json_body(request: Request) -> dict:
    try:
        body = await request.json()
    except ValueError:
        raise ValueError("invalid JSON") from None
    if not isinstance(body, dict):
        raise ValueError("body must be a JSON object")
    return body


def _spawn_generation(conversation_id: str, query_message_id: str | None = None):
    """Run start_stream_completion detached; failures are already persisted."""
    task = asyncio.create_task(
        orchestrator.start_stream_completion(conversation_id, query_message_id)
    )
    _background.add(task)

    def _done(t: asyncio.Task):
        _background.discard(t)
        if not t.cancelled() and t.exception() is not None:
            logger.error("Generation for %s failed: %s", conversation_id, t.exception())

    task.add_done_callback(_done)


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------

@app.get("/api/v1/health")
async def health():
    return JSONResponse({
        "status": "ok",
        "version": __version__,
        "providers": await provider.health(),
        "search_engine": orchestrator.get_active_search_engine()["name"],
    })


# ---------------------------------------------------------------------------
# Conversations
# ---------------------------------------------------------------------------

@app.get("/api/v1/conversations")
async def list_conversations(page: int = 1, page_size: int = 20):
    total, convs = orchestrator.get_conversation_list(page, page_size)
    return JSONResponse({"total": total, "list": [c.to_dict() for c in convs]})


@app.post("/api/v1/conversations")
async def create_conversation(request: Request):
    body = await _json_body(request)
    conv = orchestrator.create_conversation(body.get("title", ""), body.get("settings") or {})
    return JSONResponse(conv.to_dict(), status_code=201)


@app.get("/api/v1/conversations/{conversation_id}")
async def get_conversation(conversation_id: str):
    return JSONResponse(orchestrator.get_conversation(conversation_id).to_dict())


@app.patch("/api/v1/conversations/{conversation_id}")
async def rename_conversation(conversation_id: str, request: Request):
    body = await _json_body(request)
    title = body.get("title")
    if not isinstance(title, str):
        raise ValueError("title must be a string")
    return JSONResponse(orchestrator.rename_conversation(conversation_id, title).to_dict())


@app.delete("/api/v1/conversations/{conversation_id}")
async def delete_conversation(conversation_id: str):
    await orchestrator.stop_conversation_generation(conversation_id)
    orchestrator.delete_conversation(conversation_id)
    return JSONResponse({"ok": True})


@app.patch("/api/v1/conversations/{conversation_id}/settings")
async def update_conversation_settings(conversation_id: str, request: Request):
    body = await _json_body(request)
    conv = orchestrator.update_conversation_settings(conversation_id, body)
    return JSONResponse(conv.to_dict())


@app.post("/api/v1/conversations/{conversation_id}/activate")
async def activate_conversation(conversation_id: str):
    orchestrator.set_active_conversation(conversation_id)
    return JSONResponse({"ok": True, "active": conversation_id})


@app.post("/api/v1/conversations/{conversation_id}/title")
async def summarize_title(conversation_id: str):
    orchestrator.set_active_conversation(conversation_id)
    title = await orchestrator.summary_titles()
    orchestrator.update_conversation_title(conversation_id, title)
    return JSONResponse({"title": title})


@app.get("/api/v1/conversations/{conversation_id}/messages")
async def list_messages(conversation_id: str, page: int = 1, page_size: int = 50):
    orchestrator.get_conversation(conversation_id)
    total, msgs = orchestrator.get_messages(conversation_id, page, page_size)
    return JSONResponse({"total": total, "list": [m.to_dict() for m in msgs]})


@app.post("/api/v1/conversations/{conversation_id}/messages")
async def send_message(conversation_id: str, request: Request):
    """
    Send a user turn. Answers 202 with the assistant placeholder; poll the
    message to watch its blocks fill in.
    """
    body = await _json_body(request)
    if not isinstance(body.get("text", ""), str):
        raise ValueError("text must be a string")
    assistant = await orchestrator.send_message(conversation_id, {
        "text": body.get("text", ""),
        "files": body.get("files") or [],
        "search": bool(body.get("search", False)),
    })
    _spawn_generation(conversation_id)
    return JSONResponse(assistant.to_dict(), status_code=202)


@app.delete("/api/v1/conversations/{conversation_id}/messages")
async def clear_messages(conversation_id: str):
    orchestrator.get_conversation(conversation_id)
    await orchestrator.clear_all_messages(conversation_id)
    return JSONResponse({"ok": True})


@app.post("/api/v1/conversations/{conversation_id}/stop")
async def stop_conversation(conversation_id: str):
    await orchestrator.stop_conversation_generation(conversation_id)
    return JSONResponse({"ok": True})


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------

@app.get("/api/v1/messages/{message_id}")
async def get_message(message_id: str):
    msg = orchestrator.get_message(message_id)
    data = msg.to_dict()
    data["generating"] = orchestrator.get_generating_message_state(message_id) is not None
    return JSONResponse(data)


@app.delete("/api/v1/messages/{message_id}")
async def delete_message(message_id: str):
    await orchestrator.stop_message_generation(message_id)
    orchestrator.delete_message(message_id)
    return JSONResponse({"ok": True})


@app.post("/api/v1/messages/{message_id}/retry")
async def retry_message(message_id: str):
    variant = await orchestrator.retry_message(message_id)
    _spawn_generation(variant.conversation_id, variant.id)
    return JSONResponse(variant.to_dict(), status_code=202)


@app.post("/api/v1/messages/{message_id}/stop")
async def stop_message(message_id: str):
    await orchestrator.stop_message_generation(message_id)
    return JSONResponse({"ok": True})


@app.get("/api/v1/messages/{message_id}/variants")
async def message_variants(message_id: str):
    orchestrator.get_message(message_id)
    return JSONResponse({"list": [m.to_dict() for m in orchestrator.get_message_variants(message_id)]})


@app.get("/api/v1/messages/{message_id}/search-results")
async def message_search_results(message_id: str):
    orchestrator.get_message(message_id)
    results = orchestrator.get_search_results(message_id)
    return JSONResponse({"results": [r.to_dict() for r in results], "count": len(results)})


# ---------------------------------------------------------------------------
# Search engines
# ---------------------------------------------------------------------------

@app.get("/api/v1/search/engines")
async def search_engines():
    return JSONResponse({
        "engines": orchestrator.get_search_engines(),
        "active": orchestrator.get_active_search_engine()["name"],
    })


@app.post("/api/v1/search/engines/{name}/activate")
async def activate_search_engine(name: str):
    orchestrator.set_active_search_engine(name)
    return JSONResponse({"ok": True, "active": name})

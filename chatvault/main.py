"""
FastAPI application — the chatvault HTTP entry point.

One process serves one session: the SessionContext (current conversation)
and every collaborator live on app.state, created in the lifespan hook.

Assistant output is streamed as server-sent events; each event carries the
full text so far:

    data: {"content": "Hel"}
    data: {"content": "Hello"}
    data: {"done": true, "conversation_id": 3, "content": "Hello"}
"""

import asyncio
import json
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, StreamingResponse

from chatvault.backends import BaseBackend, make_backend
from chatvault.backup import BackupFormatError
from chatvault.config import get_config, setup_logging
from chatvault.conversations import ConversationService, SessionContext
from chatvault.errors import Conflict, NotFound, StorageFault, UpstreamFault
from chatvault.session import SessionController
from chatvault.storage.sqlite_store import SQLiteStore
from chatvault.system_prompt import SystemPromptFile
from chatvault.wiretap import WireLog

logger = logging.getLogger(__name__)

ERROR_STATUS = [
    (NotFound, 404),
    (Conflict, 409),
    (BackupFormatError, 400),
    (IndexError, 400),
    (ValueError, 400),
    (StorageFault, 503),
    (UpstreamFault, 502),
]


def _conversation_json(conversation) -> dict:
    data = conversation.to_dict()
    data["version"] = conversation.version
    return data


async def _json_object(request: Request) -> dict:
    """The request body as a JSON object. Anything else is a ValueError (400)."""
    try:
        body = await request.json()
    except json.JSONDecodeError as e:
        raise ValueError("Body is not valid JSON") from e
    if not isinstance(body, dict):
        raise ValueError("Body must be a JSON object")
    return body


def create_app(cfg: dict | None = None, backend: BaseBackend | None = None) -> FastAPI:
    """Build the app. `cfg`/`backend` default to config.yaml and the configured backend."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        conf = cfg if cfg is not None else get_config()
        setup_logging(conf)

        store = SQLiteStore(
            conf["storage"]["sqlite_path"],
            page_size=conf["storage"].get("page_size", 50),
        )
        service = ConversationService(
            store,
            preview_chars=conf.get("conversations", {}).get("preview_chars", 100),
        )
        wire = WireLog(conf.get("wiretap", {}).get("path", "./data/wire.jsonl"))
        app.state.store = store
        app.state.ctx = SessionContext()
        app.state.controller = SessionController(
            service=service,
            backend=backend or make_backend(conf["backend"]),
            system_prompt=SystemPromptFile.from_config(conf),
            wire=wire,
        )
        logger.info("chatvault ready (store: %s)", store.db_path)
        yield
        wire.close()

    app = FastAPI(title="chatvault", lifespan=lifespan)

    def _handler(status: int):
        async def handle(request: Request, exc: Exception):
            return JSONResponse({"error": str(exc)}, status_code=status)
        return handle

    for exc_cls, status in ERROR_STATUS:
        app.add_exception_handler(exc_cls, _handler(status))

    # ── Health ──────────────────────────────────────────────────────────

    @app.get("/health")
    async def health(request: Request):
        stats = await request.app.state.store.get_stats()
        return {"status": "ok", "store": stats}

    # ── Conversations ───────────────────────────────────────────────────

    @app.get("/api/v1/conversations")
    async def list_conversations(request: Request):
        state = request.app.state
        summaries = await state.controller.list_conversations(state.ctx)
        return {
            "current": state.ctx.current_conversation_id,
            "conversations": [s.to_dict() for s in summaries],
        }

    @app.post("/api/v1/conversations")
    async def new_conversation(request: Request):
        state = request.app.state
        conversation = await state.controller.new_conversation(state.ctx)
        return _conversation_json(conversation)

    @app.get("/api/v1/conversations/{conversation_id}")
    async def get_conversation(conversation_id: int, request: Request):
        conversation = await request.app.state.controller.service.get(conversation_id)
        return _conversation_json(conversation)

    @app.post("/api/v1/conversations/{conversation_id}/select")
    async def select_conversation(conversation_id: int, request: Request):
        state = request.app.state
        conversation = await state.controller.select(state.ctx, conversation_id)
        return _conversation_json(conversation)

    @app.delete("/api/v1/conversations/{conversation_id}")
    async def delete_conversation(conversation_id: int, request: Request):
        state = request.app.state
        summaries = await state.controller.delete_conversation(state.ctx, conversation_id)
        return {
            "current": state.ctx.current_conversation_id,
            "conversations": [s.to_dict() for s in summaries],
        }

    @app.post("/api/v1/conversations/{conversation_id}/truncate")
    async def truncate_conversation(conversation_id: int, request: Request):
        body = await _json_object(request)
        index = body.get("index")
        if not isinstance(index, int) or isinstance(index, bool):
            return JSONResponse({"error": "'index' must be an integer"}, status_code=400)
        service = request.app.state.controller.service
        conversation = await service.truncate_from(conversation_id, index)
        return _conversation_json(conversation)

    # ── Chat ────────────────────────────────────────────────────────────

    @app.post("/api/v1/chat")
    async def chat(request: Request):
        state = request.app.state
        body = await _json_object(request)
        content = body.get("content", "")
        if not isinstance(content, str) or not content.strip():
            return JSONResponse({"error": "'content' must be a non-empty string"}, status_code=400)

        controller: SessionController = state.controller
        queue: asyncio.Queue = asyncio.Queue()

        async def sink(text: str):
            await queue.put({"content": text})

        async def run_turn():
            try:
                result = await controller.send_message(state.ctx, content, sink)
                if result.ok:
                    await queue.put({
                        "done": True,
                        "conversation_id": result.conversation_id,
                        "content": result.content,
                    })
                elif not result.cancelled:
                    await queue.put({"error": result.error, "conversation_id": result.conversation_id})
            except Exception as e:
                logger.exception("Chat turn failed")
                await queue.put({"error": str(e)})
            finally:
                await queue.put(None)

        task = asyncio.create_task(run_turn())

        async def _event_stream():
            try:
                while True:
                    item = await queue.get()
                    if item is None:
                        break
                    yield f"data: {json.dumps(item, ensure_ascii=False)}\n\n"
            finally:
                if not task.done():
                    # client went away mid-stream
                    controller.cancel()
                    await asyncio.gather(task, return_exceptions=True)

        return StreamingResponse(_event_stream(), media_type="text/event-stream")

    # ── System prompt ───────────────────────────────────────────────────

    @app.get("/api/v1/system-prompt")
    async def get_system_prompt(request: Request):
        return {"content": request.app.state.controller.get_system_prompt()}

    @app.post("/api/v1/system-prompt")
    async def set_system_prompt(request: Request):
        body = await _json_object(request)
        content = body.get("content")
        if not isinstance(content, str):
            return JSONResponse({"error": "'content' must be a string"}, status_code=400)
        request.app.state.controller.set_system_prompt(content)
        return {"saved": True, "length": len(content)}

    # ── Backup / restore ────────────────────────────────────────────────

    @app.get("/api/v1/export")
    async def export_backup(request: Request):
        return await request.app.state.controller.backup()

    @app.post("/api/v1/import")
    async def import_backup(request: Request):
        state = request.app.state
        try:
            document = await request.json()
        except json.JSONDecodeError:
            return JSONResponse({"error": "Body is not valid JSON"}, status_code=400)
        summaries = await state.controller.restore(state.ctx, document)
        return {
            "current": state.ctx.current_conversation_id,
            "conversations": [s.to_dict() for s in summaries],
        }

    return app


app = create_app()

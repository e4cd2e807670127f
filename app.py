"""
chatloom: branching chat server over a file-backed conversation tree

- Stores each chat as <CHATLOOM_DATA_DIR>/chats/<chatId>/chat.json
- Messages form a tree; branches are named tip pointers into it, so a fork
  shares its history with the origin branch up to the fork point.
- On reply, builds context = system prompt + root->tip path of the branch + new user msg
- Debug artifacts per turn under <chatId>/turns/

Run:
  pip install -e .
  export CHATLOOM_DATA_DIR="/absolute/path/to/data"
  export OPENAI_API_KEY="..."
  uvicorn app:app --reload --port 8787
"""

from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from typing import Any, Callable, Dict, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from starlette.exceptions import HTTPException as StarletteHTTPException

# OpenAI Python SDK (official)
from openai import OpenAI

from chatstore import (
    BRANCH_TIP,
    ChatStore,
    ChatStoreError,
    Result,
    Settings,
    TurnLogger,
    build_context,
)

logger = logging.getLogger(__name__)

CompletionFn = Callable[[List[Dict[str, str]]], str]


# ----------------------------
# OpenAI call
# ----------------------------
def call_chatgpt(client: OpenAI, model: str, messages: List[Dict[str, str]]) -> str:
    """
    Uses Responses API via official SDK.
    """
    resp = client.responses.create(
        model=model,
        input=messages,
    )
    return resp.output_text.strip()


# ----------------------------
# Dependencies
# ----------------------------
def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_store(request: Request) -> ChatStore:
    return request.app.state.store


def get_turn_logger(request: Request) -> TurnLogger:
    return request.app.state.turn_logger


def get_completion(request: Request) -> CompletionFn:
    state = request.app.state
    if getattr(state, "openai_client", None) is None:
        state.openai_client = OpenAI()
    client = state.openai_client
    model = state.settings.openai_model
    return lambda messages: call_chatgpt(client, model, messages)


# ----------------------------
# Response helpers
# ----------------------------
def _dump(value: Any) -> Any:
    if isinstance(value, BaseModel) and hasattr(value, "to_document"):
        return value.to_document()
    if isinstance(value, list):
        return [_dump(v) for v in value]
    return value


def _unwrap(result: Result) -> Result:
    if not result.success:
        raise ChatStoreError(result.error, status_code=result.status_code, error_code=result.error_code)
    return result


# ----------------------------
# Request models
# ----------------------------
class CamelReq(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CreateChatReq(CamelReq):
    template_id: str = Field(..., min_length=1)
    title: Optional[str] = None
    provider_override: Optional[Any] = None


class UpdateChatReq(CamelReq):
    # null is rejected; omit the key to keep the current title
    title: str = Field(None, min_length=1)
    template_id: Optional[str] = None
    provider_override: Optional[Any] = None


class AddMessageReq(CamelReq):
    role: str = "user"
    content: str = Field(..., min_length=1)
    parent_id: Optional[str] = None
    branch_id: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None


class SendMessageReq(CamelReq):
    content: str = Field(..., min_length=1)
    branch_id: Optional[str] = None
    max_history: Optional[int] = Field(None, ge=1)


class CreateBranchReq(CamelReq):
    fork_point_message_id: Optional[str] = None
    name: Optional[str] = None


class UpdateBranchReq(CamelReq):
    name: Optional[str] = None
    set_active: bool = False


class ImportChatReq(CamelReq):
    content: str
    overwrite: bool = False


# ----------------------------
# FastAPI
# ----------------------------
def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or Settings()
    logging.basicConfig(
        level=settings.log_level.value,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        _app.state.store.initialize()
        yield

    app = FastAPI(title="chatloom", lifespan=lifespan)
    app.state.settings = settings
    app.state.store = ChatStore.from_settings(settings)
    app.state.turn_logger = TurnLogger(app.state.store)
    app.state.openai_client = None

    setup_exception_handlers(app)
    setup_routes(app)
    return app


def setup_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        if isinstance(exc.detail, dict) and "message" in exc.detail:
            message = exc.detail["message"]
            error_code = exc.detail.get("error_code", "HTTP_ERROR")
        else:
            message = str(exc.detail) if exc.detail else "An error occurred"
            error_code = "HTTP_ERROR"
        return JSONResponse(
            status_code=exc.status_code,
            content={"success": False, "error": message, "error_code": error_code},
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        errors = [
            {"loc": list(e.get("loc", [])), "msg": str(e.get("msg", "Validation error"))}
            for e in exc.errors()
        ]
        return JSONResponse(
            status_code=422,
            content={
                "success": False,
                "error": "Validation error",
                "error_code": "VALIDATION_ERROR",
                "details": errors,
            },
        )


def setup_routes(app: FastAPI) -> None:
    # ----- chats -----
    @app.get("/api/chat")
    def api_list_chats(store: ChatStore = Depends(get_store)):
        return {"success": True, "chats": store.list_chats()}

    @app.post("/api/chat", status_code=201)
    def api_create_chat(req: CreateChatReq, store: ChatStore = Depends(get_store)):
        result = _unwrap(store.create_chat(req.template_id, req.title, req.provider_override))
        return {"success": True, "chat": _dump(result.chat)}

    @app.post("/api/chat/import", status_code=201)
    def api_import_chat(req: ImportChatReq, store: ChatStore = Depends(get_store)):
        result = _unwrap(store.import_chat(req.content, overwrite=req.overwrite))
        return {"success": True, "chat": _dump(result.chat)}

    @app.get("/api/chat/{chat_id}")
    def api_get_chat(chat_id: str, store: ChatStore = Depends(get_store)):
        chat = store.get_chat(chat_id)
        if chat is None:
            raise HTTPException(404, "Chat not found")
        return {"success": True, "chat": _dump(chat)}

    @app.put("/api/chat/{chat_id}")
    def api_update_chat(chat_id: str, req: UpdateChatReq, store: ChatStore = Depends(get_store)):
        result = _unwrap(store.update_chat(chat_id, req.model_dump(exclude_unset=True)))
        return {"success": True, "chat": _dump(result.chat)}

    @app.delete("/api/chat/{chat_id}")
    def api_delete_chat(chat_id: str, store: ChatStore = Depends(get_store)):
        result = _unwrap(store.delete_chat(chat_id))
        return {"success": True, "message": result.message}

    # ----- messages -----
    @app.post("/api/chat/{chat_id}/message")
    def api_send_message(
        chat_id: str,
        req: SendMessageReq,
        store: ChatStore = Depends(get_store),
        turns: TurnLogger = Depends(get_turn_logger),
        complete: CompletionFn = Depends(get_completion),
        settings: Settings = Depends(get_settings),
    ):
        user = _unwrap(store.add_message(chat_id, "user", req.content, branch_id=req.branch_id))
        branch_id = req.branch_id or user.chat.active_branch_id
        turn = user.message.turn

        ctx = build_context(
            user.chat, branch_id, settings.system_prompt, req.max_history or settings.history_max_messages
        )
        turns.log_request(chat_id, turn, {"model": settings.openai_model, "messages": ctx}, branch_id)

        started = time.monotonic()
        try:
            assistant_text = complete(ctx)
        except Exception as e:
            logger.error(f"Chat {chat_id}: completion failed: {e}")
            turns.log_response(chat_id, turn, {"error": str(e)}, branch_id)
            raise HTTPException(502, f"AI provider error: {e}") from e
        duration_ms = int((time.monotonic() - started) * 1000)

        assistant = _unwrap(
            store.add_message(
                chat_id,
                "assistant",
                assistant_text,
                metadata={"provider": "openai", "model": settings.openai_model, "duration": duration_ms},
                branch_id=branch_id,
            )
        )
        turns.log_response(chat_id, turn, {"content": assistant_text, "duration": duration_ms}, branch_id)
        return {
            "success": True,
            "userMessage": _dump(user.message),
            "assistantMessage": _dump(assistant.message),
            "branchId": branch_id,
            "turn": turn,
        }

    @app.post("/api/chat/{chat_id}/messages", status_code=201)
    def api_add_message(chat_id: str, req: AddMessageReq, store: ChatStore = Depends(get_store)):
        parent = req.parent_id if "parent_id" in req.model_fields_set else BRANCH_TIP
        result = _unwrap(
            store.add_message(
                chat_id, req.role, req.content, metadata=req.metadata, parent_id=parent, branch_id=req.branch_id
            )
        )
        return {"success": True, "message": _dump(result.message)}

    def _messages(store: ChatStore, chat_id: str, branch_id: Optional[str], limit, offset):
        result = _unwrap(store.get_messages(chat_id, limit=limit, offset=offset, branch_id=branch_id))
        return {
            "success": True,
            "messages": _dump(result.messages),
            "total": result.total,
            "branchId": result.branch_id,
        }

    @app.get("/api/chat/{chat_id}/messages")
    def api_get_messages(
        chat_id: str,
        limit: Optional[int] = Query(None, ge=1),
        offset: int = Query(0, ge=0),
        store: ChatStore = Depends(get_store),
    ):
        return _messages(store, chat_id, None, limit, offset)

    @app.delete("/api/chat/{chat_id}/messages")
    def api_clear_messages(chat_id: str, store: ChatStore = Depends(get_store)):
        result = _unwrap(store.clear_messages(chat_id))
        return {"success": True, "message": result.message}

    # ----- branches -----
    @app.get("/api/chat/{chat_id}/branches")
    def api_list_branches(chat_id: str, store: ChatStore = Depends(get_store)):
        result = _unwrap(store.list_branches(chat_id))
        return {"success": True, "branches": result.branches}

    @app.get("/api/chat/{chat_id}/tree")
    def api_tree(chat_id: str, store: ChatStore = Depends(get_store)):
        result = _unwrap(store.get_tree(chat_id))
        return {
            "success": True,
            "tree": result.tree,
            "branches": _dump(result.branches),
            "activeBranchId": result.active_branch_id,
        }

    @app.post("/api/chat/{chat_id}/branch", status_code=201)
    def api_create_branch(chat_id: str, req: CreateBranchReq, store: ChatStore = Depends(get_store)):
        result = _unwrap(store.create_branch(chat_id, req.fork_point_message_id, req.name))
        return {"success": True, "branch": _dump(result.branch), "chat": _dump(result.chat)}

    @app.get("/api/chat/{chat_id}/branch/{branch_id}/messages")
    def api_branch_messages(
        chat_id: str,
        branch_id: str,
        limit: Optional[int] = Query(None, ge=1),
        offset: int = Query(0, ge=0),
        store: ChatStore = Depends(get_store),
    ):
        return _messages(store, chat_id, branch_id, limit, offset)

    @app.put("/api/chat/{chat_id}/branch/{branch_id}")
    def api_update_branch(
        chat_id: str, branch_id: str, req: UpdateBranchReq, store: ChatStore = Depends(get_store)
    ):
        if req.set_active:
            result = _unwrap(store.set_active_branch(chat_id, branch_id))
        else:
            result = _unwrap(store.update_branch(chat_id, branch_id, name=req.name))
        return {"success": True, "branch": _dump(result.branch), "chat": _dump(result.chat)}

    @app.delete("/api/chat/{chat_id}/branch/{branch_id}")
    def api_delete_branch(
        chat_id: str,
        branch_id: str,
        delete_messages: bool = Query(False, alias="deleteMessages"),
        store: ChatStore = Depends(get_store),
    ):
        result = _unwrap(store.delete_branch(chat_id, branch_id, delete_messages))
        return {
            "success": True,
            "message": result.message,
            "removedMessageIds": result.removed_message_ids,
            "chat": _dump(result.chat),
        }

    # ----- export -----
    @app.get("/api/chat/{chat_id}/export")
    def api_export(
        chat_id: str,
        format: str = Query("json"),
        branch_id: Optional[str] = Query(None, alias="branchId"),
        store: ChatStore = Depends(get_store),
    ):
        result = _unwrap(store.export_chat(chat_id, format, branch_id))
        if result.format == "markdown":
            media_type, ext = "text/markdown", "md"
        else:
            media_type, ext = "application/json", "json"
        return Response(
            content=result.content,
            media_type=media_type,
            headers={"Content-Disposition": f'attachment; filename="chat-{chat_id}.{ext}"'},
        )

    # ----- turn logs -----
    @app.get("/api/chat/{chat_id}/turns")
    def api_list_turns(
        chat_id: str,
        branch_id: Optional[str] = Query(None, alias="branchId"),
        store: ChatStore = Depends(get_store),
        turns: TurnLogger = Depends(get_turn_logger),
    ):
        chat = store.get_chat(chat_id)
        if chat is None:
            raise HTTPException(404, "Chat not found")
        branch_id = branch_id or chat.active_branch_id
        try:
            numbers = turns.list_turns(chat_id, branch_id)
        except ValueError:
            raise HTTPException(404, "Branch not found") from None
        return {
            "success": True,
            "turns": numbers,
            "current": turns.current_turn_number(chat_id, branch_id),
        }

    @app.get("/api/chat/{chat_id}/turns/{turn_number}")
    def api_turn_logs(
        chat_id: str,
        turn_number: int,
        branch_id: Optional[str] = Query(None, alias="branchId"),
        store: ChatStore = Depends(get_store),
        turns: TurnLogger = Depends(get_turn_logger),
    ):
        chat = store.get_chat(chat_id)
        if chat is None:
            raise HTTPException(404, "Chat not found")
        branch_id = branch_id or chat.active_branch_id
        try:
            logs = turns.get_turn_logs(chat_id, turn_number, branch_id)
        except ValueError:
            logs = None
        if logs is None:
            raise HTTPException(404, "Turn not found")
        return {"success": True, "turn": turn_number, "logs": logs}


app = create_app()

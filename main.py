import logging
import os
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, Query, Request, WebSocket
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, Field

import database
from auth import authenticate
from config import settings
from errors import ChatError, TransientStorageFailure, ValidationFailure
from events import parse_send_message, serialize_message
from hub import ConnectionHub, build_hub
from store import MongoChatStore

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    owns_database = False
    if getattr(app.state, "hub", None) is None:
        db = database.connect()
        if db is not None:
            owns_database = True
            await database.ensure_indexes()
            app.state.hub = build_hub(MongoChatStore(db), settings)
    yield
    if owns_database:
        await database.disconnect()


app = FastAPI(title="Vibe Chat API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(ChatError)
async def chat_error_handler(request: Request, exc: ChatError):
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": exc.message, "code": exc.code},
    )


class CreateConversationRequest(BaseModel):
    user_id: str = Field(..., alias="userId")


class CreateGroupRequest(BaseModel):
    name: str
    description: str = ""
    participants: List[str]


class MarkReadRequest(BaseModel):
    message_id: Optional[str] = Field(None, alias="messageId")


bearer = HTTPBearer(auto_error=False)


def get_hub(request: Request) -> ConnectionHub:
    hub = getattr(request.app.state, "hub", None)
    if hub is None:
        raise TransientStorageFailure("Database not initialized")
    return hub


async def current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer),
    hub: ConnectionHub = Depends(get_hub),
) -> Dict[str, Any]:
    return await authenticate(credentials.credentials if credentials else None, hub.store)


@app.get("/")
def read_root():
    return {"message": "Vibe Chat API is running"}


@app.get("/test")
async def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": None,
        "database_name": None,
        "connection_status": "Not Connected",
        "collections": []
    }

    try:
        if database.db is not None:
            response["database"] = "✅ Available"
            response["database_url"] = "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set"
            response["database_name"] = database.db.name
            response["connection_status"] = "Connected"
            try:
                collections = await database.db.list_collection_names()
                response["collections"] = collections[:10]
                response["database"] = "✅ Connected & Working"
            except Exception as e:
                response["database"] = f"⚠️  Connected but Error: {str(e)[:50]}"
        else:
            response["database"] = "⚠️  Available but not initialized"
    except Exception as e:
        response["database"] = f"❌ Error: {str(e)[:50]}"

    return response


@app.get("/api/conversations", response_model=List[dict])
async def list_conversations(user=Depends(current_user), hub: ConnectionHub = Depends(get_hub)):
    return await hub.conversations.list_for(user["_id"])


@app.get("/api/conversations/{conversation_id}", response_model=dict)
async def get_conversation(conversation_id: str, user=Depends(current_user), hub: ConnectionHub = Depends(get_hub)):
    return await hub.conversations.get_for(conversation_id, user["_id"])


@app.post("/api/conversations", response_model=dict)
async def create_conversation(
    payload: CreateConversationRequest, user=Depends(current_user), hub: ConnectionHub = Depends(get_hub)
):
    conversation, created = await hub.conversations.create_or_get_direct(user["_id"], payload.user_id)
    if created:
        hub.membership.join_conversation(conversation["_id"], conversation["participants"])
    body = await hub.conversations.describe(conversation, user["_id"])
    return JSONResponse(status_code=201 if created else 200, content=jsonable_encoder(body))


@app.post("/api/conversations/group", response_model=dict, status_code=201)
async def create_group(payload: CreateGroupRequest, user=Depends(current_user), hub: ConnectionHub = Depends(get_hub)):
    group = await hub.conversations.create_group(user["_id"], payload.name, payload.participants, payload.description)
    hub.membership.join_conversation(group["_id"], group["participants"])
    return await hub.conversations.describe(group, user["_id"])


@app.post("/api/conversations/{conversation_id}/read", response_model=dict)
async def mark_conversation_read(
    conversation_id: str, user=Depends(current_user), hub: ConnectionHub = Depends(get_hub)
):
    result = await hub.receipts.mark_read(conversation_id, user["_id"])
    return {"success": True, "message": "Conversation marked as read", "count": result["count"]}


@app.delete("/api/conversations/{conversation_id}", response_model=dict)
async def delete_conversation(
    conversation_id: str, user=Depends(current_user), hub: ConnectionHub = Depends(get_hub)
):
    return await hub.conversations.delete_or_leave(conversation_id, user["_id"])


@app.get("/api/messages/search", response_model=List[dict])
async def search_messages(
    q: Optional[str] = None,
    conversation_id: Optional[str] = Query(None, alias="conversationId"),
    user=Depends(current_user),
    hub: ConnectionHub = Depends(get_hub),
):
    return await hub.conversations.search_messages(user["_id"], q, conversation_id, limit=settings.message_page_size)


@app.get("/api/messages/{conversation_id}", response_model=List[dict])
async def list_messages(
    conversation_id: str,
    page: int = Query(1, ge=1),
    limit: int = Query(settings.message_page_size, ge=1, le=settings.max_message_page_size),
    user=Depends(current_user),
    hub: ConnectionHub = Depends(get_hub),
):
    await hub.conversations.require_participant(conversation_id, user["_id"])
    messages = await hub.store.list_messages(conversation_id, skip=(page - 1) * limit, limit=limit)
    senders = {u["_id"]: u for u in await hub.store.get_users(list({m["sender_id"] for m in messages}))}
    history = [serialize_message(m, senders.get(m["sender_id"])) for m in reversed(messages)]

    # Fetching history counts as receipt for everything sent by others.
    await hub.receipts.mark_delivered(conversation_id, user["_id"])
    return history


@app.post("/api/messages", response_model=dict, status_code=201)
async def send_message(request: Request, user=Depends(current_user), hub: ConnectionHub = Depends(get_hub)):
    try:
        body = await request.json()
    except ValueError:
        raise ValidationFailure("Request body is not valid JSON")
    payload = parse_send_message(body)
    return await hub.pipeline.send(user["_id"], payload)


@app.post("/api/messages/{conversation_id}/read", response_model=dict)
async def mark_messages_read(
    conversation_id: str,
    payload: Optional[MarkReadRequest] = None,
    user=Depends(current_user),
    hub: ConnectionHub = Depends(get_hub),
):
    message_id = payload.message_id if payload else None
    return await hub.receipts.mark_read(conversation_id, user["_id"], message_id)


@app.delete("/api/messages/{message_id}", response_model=dict)
async def delete_message(message_id: str, user=Depends(current_user), hub: ConnectionHub = Depends(get_hub)):
    await hub.pipeline.delete(user["_id"], message_id)
    return {"success": True, "data": {}}


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    hub = getattr(websocket.app.state, "hub", None)
    if hub is None:
        await websocket.close(code=1011, reason="Database not initialized")
        return
    await hub.serve(websocket)


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)

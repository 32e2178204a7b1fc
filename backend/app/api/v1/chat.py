"""Chat endpoints: text/voice messages, receipt scans, pending reset, history."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from app.core.auth import CurrentUser, get_current_user
from app.core.dependencies import get_db
from app.schemas.finance import (
    ChatHistoryResponse,
    ChatRequest,
    ChatResponse,
    Provenance,
    ReceiptRequest,
)
from app.services.chat_service import ChatService, build_chat_service

router = APIRouter()


def get_chat_service(db: Session = Depends(get_db)) -> ChatService:
    return build_chat_service(db)


@router.post("/chat", response_model=ChatResponse)
async def post_chat_message(
    payload: ChatRequest,
    current_user: CurrentUser = Depends(get_current_user),
    service: ChatService = Depends(get_chat_service),
):
    provenance = Provenance.VOICE if payload.source == "voice" else Provenance.CHAT
    result = await service.chat(current_user.id, payload.message.strip(), provenance)
    return result.as_response()


@router.post("/chat/receipt", response_model=ChatResponse)
async def post_receipt(
    payload: ReceiptRequest,
    current_user: CurrentUser = Depends(get_current_user),
    service: ChatService = Depends(get_chat_service),
):
    result = await service.process_receipt(current_user.id, payload.image_base64)
    return result.as_response()


@router.delete("/chat/state")
async def reset_chat_state(
    current_user: CurrentUser = Depends(get_current_user),
    service: ChatService = Depends(get_chat_service),
):
    cleared = await service.reset(current_user.id)
    return {"cleared": cleared}


@router.get("/chat/history", response_model=ChatHistoryResponse)
def get_chat_history(
    limit: int = Query(20, ge=1, le=100),
    current_user: CurrentUser = Depends(get_current_user),
    service: ChatService = Depends(get_chat_service),
):
    return ChatHistoryResponse(items=service.history(current_user.id, limit))

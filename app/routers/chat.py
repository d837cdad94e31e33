"""Conversational CRM analytics endpoint"""
from typing import Any, List, Optional

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, ConfigDict, Field

from app.core.chat_pipeline import ChatPipeline
from app.core.thread_store import ThreadStore
from app.deps import get_chat_pipeline, get_thread_store
from app.smart_logger import SmartLogger


router = APIRouter(prefix="/chat", tags=["Chat"])

STREAM_HEADERS = {
    "Cache-Control": "no-cache, no-transform",
    "Connection": "keep-alive",
}


class ChatPrompt(BaseModel):
    """User turn as sent by the chat UI; extra fields are kept on the thread"""
    model_config = ConfigDict(extra="allow")

    role: str = Field(default="user", description="Message role")
    content: Any = Field(default="", description="Message text")


class ChatRequest(BaseModel):
    """Request model for POST /chat"""
    model_config = ConfigDict(populate_by_name=True)

    prompt: ChatPrompt
    thread_id: str = Field(..., alias="threadId", min_length=1, description="Conversation id")
    response_id: str = Field(..., alias="responseId", min_length=1, description="Id for the assistant reply")


class ThreadMessageModel(BaseModel):
    role: str
    content: Any
    id: Optional[str] = None


class ThreadHistoryResponse(BaseModel):
    thread_id: str
    messages: List[ThreadMessageModel]


@router.post("", response_class=StreamingResponse)
async def chat(
    request: ChatRequest,
    pipeline: ChatPipeline = Depends(get_chat_pipeline),
) -> StreamingResponse:
    """
    Answer a CRM question in the context of a thread.

    The body is a live stream of answer text. Query failures are narrated by
    the answer, never returned as HTTP errors.
    """
    SmartLogger.log(
        "INFO",
        "chat.request",
        category="chat.request",
        params={"thread_id": request.thread_id, "response_id": request.response_id},
    )
    stream = pipeline.stream_answer(
        prompt=request.prompt.model_dump(),
        thread_id=request.thread_id,
        response_id=request.response_id,
    )
    return StreamingResponse(stream, media_type="text/event-stream", headers=STREAM_HEADERS)


@router.get("/threads/{thread_id}", response_model=ThreadHistoryResponse)
async def get_thread_history(
    thread_id: str,
    thread_store: ThreadStore = Depends(get_thread_store),
) -> ThreadHistoryResponse:
    """Messages recorded for a thread, oldest first"""
    thread = thread_store.get(thread_id)
    if thread is None:
        raise HTTPException(status_code=404, detail=f"Thread not found: {thread_id}")
    return ThreadHistoryResponse(
        thread_id=thread_id,
        messages=[
            ThreadMessageModel(role=m.role, content=m.content, id=m.id)
            for m in thread.history()
        ],
    )

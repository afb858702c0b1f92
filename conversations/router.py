from __future__ import annotations

import logging
from typing import Any, Dict, NoReturn

from fastapi import APIRouter, File, HTTPException, Response, UploadFile

from conversations.models import PostMessageRequest, SearchHit, SearchRequest, SearchResponse
from core.deps import ProvidersDep
from core.errors import (
    ChatGenerationError,
    DocumentRefreshError,
    EmbeddingError,
    ValidationError,
    VectorStoreError,
)
from rag import service

log = logging.getLogger(__name__)

router = APIRouter(prefix="/api/conversations", tags=["conversations"])

MAX_UPLOAD_BYTES = 10 << 20


def _raise_http(exc: Exception, action: str) -> NoReturn:
    """
    Map domain errors onto HTTP status codes. Anything unrecognised is
    re-raised untouched.
    """
    if isinstance(exc, ValidationError):
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    if isinstance(exc, service.DocumentNotFoundError):
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    if isinstance(exc, DocumentRefreshError):
        status = 502 if exc.stage == "embed" else 500
        raise HTTPException(status_code=status, detail=f"{action}: {exc}") from exc
    if isinstance(exc, (EmbeddingError, ChatGenerationError)):
        raise HTTPException(status_code=502, detail=f"{action}: {exc}") from exc
    if isinstance(exc, VectorStoreError):
        raise HTTPException(status_code=503, detail=f"{action}: {exc}") from exc
    raise exc


# ---------------------------------------------------------------------
# conversations
# ---------------------------------------------------------------------

@router.post("", status_code=201)
def create_conversation(providers: ProvidersDep) -> Dict[str, str]:
    return {"id": providers.conversations.new_conversation_id()}


@router.delete("/{conversation_id}", status_code=204)
def delete_conversation(conversation_id: str, providers: ProvidersDep) -> Response:
    try:
        service.delete_conversation(providers, conversation_id)
    except Exception as e:
        _raise_http(e, "delete conversation")
    return Response(status_code=204)


# ---------------------------------------------------------------------
# messages
# ---------------------------------------------------------------------

@router.get("/{conversation_id}/messages")
def get_messages(conversation_id: str, providers: ProvidersDep) -> Dict[str, Any]:
    try:
        history = providers.conversations.load_history(conversation_id)
    except Exception as e:
        _raise_http(e, "load history")
    return {"messages": [m.model_dump(mode="json") for m in history]}


@router.post("/{conversation_id}/messages")
def post_message(conversation_id: str, req: PostMessageRequest, providers: ProvidersDep) -> Dict[str, Any]:
    try:
        reply = service.answer_message(providers, conversation_id, req.content)
    except Exception as e:
        _raise_http(e, "generate response")
    return {"message": reply.model_dump(mode="json")}


# ---------------------------------------------------------------------
# documents
# ---------------------------------------------------------------------

@router.get("/{conversation_id}/documents")
def list_documents(conversation_id: str, providers: ProvidersDep) -> Dict[str, Any]:
    try:
        docs = providers.conversations.list_documents(conversation_id)
    except Exception as e:
        _raise_http(e, "list documents")
    return {"documents": [d.model_dump(mode="json") for d in docs]}


@router.post("/{conversation_id}/documents", status_code=201)
def upload_document(conversation_id: str, providers: ProvidersDep, file: UploadFile = File(...)) -> Dict[str, Any]:
    data = file.file.read(MAX_UPLOAD_BYTES + 1)
    if len(data) > MAX_UPLOAD_BYTES:
        raise HTTPException(status_code=413, detail=f"upload exceeds {MAX_UPLOAD_BYTES} bytes")

    try:
        doc, chunks = service.upload_document(providers, conversation_id, file.filename or "", data)
    except Exception as e:
        _raise_http(e, "store document")
    return {"document": doc.model_dump(mode="json"), "chunks": chunks}


@router.post("/{conversation_id}/documents/{document_id}/refresh")
def refresh_document(conversation_id: str, document_id: str, providers: ProvidersDep) -> Dict[str, Any]:
    try:
        chunks = service.reindex_document(providers, conversation_id, document_id)
    except Exception as e:
        _raise_http(e, "refresh document")
    return {"document_id": document_id, "chunks": chunks}


# ---------------------------------------------------------------------
# retrieval
# ---------------------------------------------------------------------

@router.post("/{conversation_id}/search", response_model=SearchResponse)
def search(conversation_id: str, req: SearchRequest, providers: ProvidersDep) -> SearchResponse:
    try:
        hits = service.search_conversation(providers, conversation_id, req.query, req.top_k)
    except Exception as e:
        _raise_http(e, "search")
    return SearchResponse(
        hits=[
            SearchHit(
                chunk_id=h.id,
                document_id=h.document_id,
                chunk_index=h.chunk_index,
                content=h.content,
                score=float(h.score or 0.0),
            )
            for h in hits
        ]
    )

from __future__ import annotations

import json
import logging
import os
import re
import shutil
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from conversations.locks import ConversationLocks
from conversations.models import DocumentMeta, Message
from core.errors import InvalidIdentifierError, UnsupportedFileTypeError

log = logging.getLogger(__name__)

SUPPORTED_EXTENSIONS = (".txt", ".md", ".markdown")

_ID_RE = re.compile(r"^[A-Za-z0-9_-]+$")


def check_id(value: str, what: str) -> str:
    v = (value or "").strip()
    if not v or not _ID_RE.match(v):
        raise InvalidIdentifierError(f"invalid {what}: {value!r}")
    return v


def is_supported_extension(ext: str) -> bool:
    return (ext or "").lower() in SUPPORTED_EXTENSIONS


def extract_text(ext: str, data: bytes) -> str:
    # .txt / .md / .markdown are all stored as-is
    return data.decode("utf-8", errors="ignore")


class ConversationStore:
    """
    Filesystem layout for conversations, their documents and transcripts:

      {root}/conversations/{id}/history.json
      {root}/conversations/{id}/documents.json
      {root}/conversations/{id}/documents/{doc_id}{ext}   (raw upload)
      {root}/conversations/{id}/documents/{doc_id}.txt    (extracted text)
      {root}/conversations/{id}/transcripts/{YYYYMMDDTHHMMSSZ}.md

    history.json and documents.json are rewritten in full, so every change to
    them holds the conversation's lock.
    """

    def __init__(self, root: str, locks: Optional[ConversationLocks] = None):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)
        self.locks = locks or ConversationLocks()

    # -----------------------------------------------------------------
    # paths
    # -----------------------------------------------------------------

    def _conversation_dir(self, conversation_id: str) -> Path:
        return self.root / "conversations" / check_id(conversation_id, "conversation id")

    def _history_path(self, conversation_id: str) -> Path:
        return self._conversation_dir(conversation_id) / "history.json"

    def _documents_path(self, conversation_id: str) -> Path:
        return self._conversation_dir(conversation_id) / "documents.json"

    # -----------------------------------------------------------------
    # conversations
    # -----------------------------------------------------------------

    def new_conversation_id(self) -> str:
        conversation_id = str(uuid.uuid4())
        self.ensure_conversation(conversation_id)
        return conversation_id

    def ensure_conversation(self, conversation_id: str) -> Path:
        d = self._conversation_dir(conversation_id)
        for sub in (d, d / "documents", d / "transcripts"):
            sub.mkdir(parents=True, exist_ok=True)
        return d

    def delete_conversation(self, conversation_id: str) -> bool:
        """Remove everything on disk for the conversation. Missing is fine."""
        d = self._conversation_dir(conversation_id)
        with self.locks.hold(conversation_id):
            if not d.exists():
                return False
            shutil.rmtree(d)
        log.info("deleted conversation directory %s", d)
        return True

    # -----------------------------------------------------------------
    # history
    # -----------------------------------------------------------------

    def load_history(self, conversation_id: str) -> List[Message]:
        """
        Stored history in order. A missing history file is an empty
        conversation.
        """
        path = self._history_path(conversation_id)
        if not path.exists():
            return []
        with path.open("r", encoding="utf-8") as f:
            data = json.load(f)
        return [Message.model_validate(m) for m in (data or [])]

    def append_message(self, conversation_id: str, message: Message) -> None:
        self.ensure_conversation(conversation_id)
        with self.locks.hold(conversation_id):
            history = self.load_history(conversation_id)
            history.append(message)
            self._write_json(self._history_path(conversation_id), [m.model_dump(mode="json") for m in history])

    def save_transcript(self, conversation_id: str, content: str, timestamp: datetime) -> Path:
        """
        Write an assistant reply to a markdown file for later reference.
        """
        d = self.ensure_conversation(conversation_id)
        ts = timestamp.astimezone(timezone.utc)
        path = d / "transcripts" / f"{ts.strftime('%Y%m%dT%H%M%SZ')}.md"

        body = "".join(
            [
                "---\n",
                f"conversation_id: {conversation_id}\n",
                f"timestamp: {ts.isoformat()}\n",
                "---\n\n",
                content,
                "\n",
            ]
        )
        path.write_text(body, encoding="utf-8")
        return path

    # -----------------------------------------------------------------
    # documents
    # -----------------------------------------------------------------

    def save_document(self, conversation_id: str, original_name: str, data: bytes) -> DocumentMeta:
        """
        Store the uploaded bytes and their extracted text, then record the
        document in documents.json.
        """
        ext = os.path.splitext(original_name or "")[1].lower() or ".txt"
        if not is_supported_extension(ext):
            raise UnsupportedFileTypeError(ext)

        d = self.ensure_conversation(conversation_id)
        doc_id = str(uuid.uuid4())

        # keep the exact upload so it can be downloaded again later
        stored_path = d / "documents" / f"{doc_id}{ext}"
        stored_path.write_bytes(data)

        text = extract_text(ext, data)
        text_path = d / "documents" / f"{doc_id}.txt"
        if text_path != stored_path:
            text_path.write_text(text, encoding="utf-8")

        doc = DocumentMeta(
            id=doc_id,
            name=original_name or f"{doc_id}{ext}",
            stored_path=str(stored_path),
            text_path=str(text_path),
            size=len(data),
            uploaded_at=datetime.now(timezone.utc),
            content_cache=text,
        )

        with self.locks.hold(conversation_id):
            docs = self._load_documents(conversation_id)
            docs.append(doc)
            self._write_json(self._documents_path(conversation_id), [x.model_dump(mode="json") for x in docs])

        return doc

    def list_documents(self, conversation_id: str) -> List[DocumentMeta]:
        """
        All documents of the conversation, with content_cache filled in where
        the extracted text is readable.
        """
        self.ensure_conversation(conversation_id)
        docs = self._load_documents(conversation_id)
        for doc in docs:
            if not doc.content_cache:
                try:
                    doc.content_cache = Path(doc.text_path).read_text(encoding="utf-8", errors="ignore")
                except OSError:
                    log.warning("extracted text missing for document %s (%s)", doc.id, doc.text_path)
        return docs

    def get_document(self, conversation_id: str, document_id: str) -> Optional[DocumentMeta]:
        check_id(document_id, "document id")
        for doc in self.list_documents(conversation_id):
            if doc.id == document_id:
                return doc
        return None

    def document_text(self, doc: DocumentMeta) -> str:
        if doc.content_cache:
            return doc.content_cache
        return Path(doc.text_path).read_text(encoding="utf-8", errors="ignore")

    def load_document_texts(self, conversation_id: str) -> List[str]:
        """
        Extracted text of every document, in upload order. Unlike
        list_documents, an unreadable text file is an error here.
        """
        texts: List[str] = []
        for doc in self._load_documents(conversation_id):
            texts.append(Path(doc.text_path).read_text(encoding="utf-8", errors="ignore"))
        return texts

    def _load_documents(self, conversation_id: str) -> List[DocumentMeta]:
        path = self._documents_path(conversation_id)
        if not path.exists():
            return []
        with path.open("r", encoding="utf-8") as f:
            data = json.load(f)
        return [DocumentMeta.model_validate(d) for d in (data or [])]

    @staticmethod
    def _write_json(path: Path, payload: List[Dict[str, Any]]) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("w", encoding="utf-8") as f:
            json.dump(payload, f, indent=2, ensure_ascii=False)

"""RAG orchestration: document ingestion, queue processing and chat responses."""

import mimetypes
import os
import re
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence

from botkit_rag.config import Settings, get_settings
from botkit_rag.database.session import get_session_context
from botkit_rag.models.conversation import (
    Attachment,
    BotConfig,
    ChatResponse,
    ChatTurn,
    CompletionResult,
    RequestIdentity,
)
from botkit_rag.models.document import DocumentStatus, LoadedDocument, ProcessingResult, SourceType
from botkit_rag.models.retrieval import ContextChunk
from botkit_rag.repositories.chatbot_repository import ChatbotRepository, ContentRelationshipRepository
from botkit_rag.repositories.chunk_repository import ChunkRepository
from botkit_rag.repositories.document_repository import DocumentRepository
from botkit_rag.services.chunking_service import TextChunker
from botkit_rag.services.conversation_service import ConversationHistory
from botkit_rag.services.document_loader import DocumentLoader
from botkit_rag.services.embedding_service import EmbeddingsGenerator
from botkit_rag.services.llm_providers import LLMProvider
from botkit_rag.services.rate_limiter import RateLimiter
from botkit_rag.services.retriever import Retriever
from botkit_rag.services.vector_store import SessionScope, VectorStore
from botkit_rag.utils.errors import RAGEngineError, RAGException, RateLimitedError
from botkit_rag.utils.logging import get_logger

logger = get_logger("rag_engine")

SYSTEM_PROMPT_TEMPLATE = """You are a {chatbot_personality} for {site_name}. Help visitors with accurate, \
helpful answers drawn from the context below.

How to use the conversation:
- Reply to greetings warmly without searching the context.
- If the visitor refers to an earlier question, use the chat history first, then the context.
- Stay consistent with answers you already gave.
- If the question is unclear, ask one short clarifying question.

How to answer:
- Keep replies short, friendly and under 50 words.
- Only use facts from the context or the chat history. If the answer is not there, say so and suggest \
where the visitor could look.
- Format with HTML only: <b> for bold, <i> for italics, <br> for line breaks.
- Answer in the language the visitor writes in.
- Use a {chat_tone} tone.

Attachments:
- Attached files and images are listed as links in the visitor's message. If you cannot open an image, \
ask the visitor to describe it and help from the description.

Context:
{context}"""

ATTACHMENT_PREAMBLE = "The user has attached the following files. Consider them when answering:"

GREETING_MAX_LENGTH = 10


def format_context_for_prompt(context: Sequence[ContextChunk]) -> str:
    """Render retrieved chunks as labelled source blocks."""
    blocks = []
    for chunk in context:
        source = chunk.source
        label = source.title or source.url or source.type or "unknown"
        blocks.append(f"Source: {label} ({source.url})\n{chunk.content}")
    return "\n\n".join(blocks)


def find_banned_keyword(message: str, keywords: Sequence[str]) -> Optional[str]:
    """First banned keyword present in the message as a whole word, case-insensitively."""
    for keyword in keywords:
        if re.search(r"\b" + re.escape(keyword) + r"\b", message, flags=re.IGNORECASE):
            return keyword
    return None


class RAGEngine:
    """
    Coordinates the ingestion and query pipelines.

    Ingestion:  loader -> chunker -> embeddings -> vector store
    Query:      banned words -> rate limit -> greeting -> history ->
                retrieval -> prompt -> LLM -> history persistence

    Constructed once by the application entry point (see ``botkit_rag.container``)
    with all collaborators injected.
    """

    def __init__(
        self,
        loader: DocumentLoader,
        chunker: TextChunker,
        embeddings: EmbeddingsGenerator,
        vector_store: VectorStore,
        retriever: Retriever,
        llm: LLMProvider,
        history: ConversationHistory,
        rate_limiter: Optional[RateLimiter] = None,
        session_scope: SessionScope = get_session_context,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self.loader = loader
        self.chunker = chunker
        self.embeddings = embeddings
        self.vector_store = vector_store
        self.retriever = retriever
        self.llm = llm
        self.history = history
        self.rate_limiter = rate_limiter
        self._session_scope = session_scope

    def process_document(
        self,
        source: str,
        source_type: str,
        document_id: Optional[int] = None,
        options: Optional[Dict[str, Any]] = None,
    ) -> ProcessingResult:
        """
        Ingest one document.

        Existing chunks of the document are purged first so re-ingestion
        never duplicates vectors.

        Args:
            source: File path, URL, post id, or raw content for other source types
            source_type: file, url, post, or any custom type
            document_id: Existing document id; resolved through
                ``get_or_create_document`` when omitted
            options: source_id, title, bot_id and extra metadata for raw content

        Raises:
            RAGEngineError: Wrapping any loading, embedding or storage failure
        """
        options = dict(options or {})
        if document_id is None:
            document_id = self.get_or_create_document(source_type, options.get("source_id"), options)

        try:
            with self._session_scope() as session:
                is_update = bool(ChunkRepository(session).ids_for_document(document_id))
                DocumentRepository(session).set_status(document_id, DocumentStatus.PROCESSING)

            cleanup_result = None
            if is_update:
                try:
                    cleanup_result = self.vector_store.delete_document_embeddings(document_id)
                except RAGException as e:
                    logger.warning(f"Cleanup before re-ingesting document {document_id} failed: {e.message}")
                    cleanup_result = {"deleted_chunks": 0, "deleted_embeddings": 0, "success": False}

            document = self._load(source, source_type, document_id, options)
            metadata = {
                **document.metadata,
                "source_type": source_type,
                "document_id": document_id,
            }
            metadata.setdefault("created_at", datetime.now(timezone.utc).isoformat())

            chunks = self.chunker.split_text(document.content, metadata)
            embeddings = self.embeddings.generate_embeddings(chunks)
            stored = self.vector_store.store_embeddings(embeddings)

            with self._session_scope() as session:
                DocumentRepository(session).set_status(document_id, DocumentStatus.COMPLETED)
                if options.get("bot_id"):
                    ContentRelationshipRepository(session).link(int(options["bot_id"]), document_id)
        except Exception as e:
            self._mark_failed(document_id, e)
            message = e.message if isinstance(e, RAGException) else str(e)
            raise RAGEngineError(
                f"Failed to process document: {message}",
                details={"document_id": document_id},
            ) from e

        logger.info(
            f"Processed document {document_id}: source_type={source_type}, chunks={len(chunks)}, "
            f"embeddings={len(embeddings)}, stored={len(stored)}, update={is_update}"
        )
        return ProcessingResult(
            document_id=document_id,
            chunk_count=len(chunks),
            embedding_count=len(embeddings),
            stored_count=len(stored),
            metadata=document.metadata,
            is_update=is_update,
            cleanup_result=cleanup_result,
        )

    def _load(
        self, source: str, source_type: str, document_id: int, options: Dict[str, Any]
    ) -> LoadedDocument:
        if source_type == SourceType.FILE.value:
            return self.loader.load_from_file(source, document_id)
        if source_type == SourceType.URL.value:
            return self.loader.load_from_url(source, document_id)
        if source_type == SourceType.POST.value:
            return self.loader.load_from_post(int(source), document_id)
        # Any other type carries its content inline
        extra = {k: v for k, v in options.items() if k not in ("bot_id", "source_id")}
        return LoadedDocument(
            content=source,
            metadata={"source_type": source_type, "document_id": document_id, **extra},
        )

    def _mark_failed(self, document_id: int, error: Exception) -> None:
        message = error.message if isinstance(error, RAGException) else str(error)
        try:
            with self._session_scope() as session:
                repo = DocumentRepository(session)
                repo.set_status(document_id, DocumentStatus.FAILED)
                repo.upsert_meta(
                    document_id,
                    {"error": message, "error_time": datetime.now(timezone.utc).isoformat()},
                )
        except RAGException as e:
            logger.error(f"Failed to mark document {document_id} as failed: {e.message}")

    def get_or_create_document(
        self, source_type: str, source_id: Optional[int], options: Optional[Dict[str, Any]] = None
    ) -> int:
        """Find a document by (source_type, source_id) or insert a new pending one."""
        options = options or {}
        with self._session_scope() as session:
            repo = DocumentRepository(session)
            if source_id:
                existing = repo.find_by_source(source_type, int(source_id))
                if existing is not None:
                    return existing.id
            document = repo.create(
                title=options.get("title") or "Untitled Document",
                source_type=source_type,
                source_id=int(source_id) if source_id else None,
                file_path=options.get("file_path"),
                mime_type=options.get("mime_type"),
                status=DocumentStatus.PENDING.value,
            )
            return document.id

    def store_document_metadata(self, document_id: int, metadata: Dict[str, Any]) -> None:
        with self._session_scope() as session:
            DocumentRepository(session).upsert_meta(document_id, metadata)

    def process_queue(self, limit: int = 5) -> Dict[str, int]:
        """
        Process pending documents oldest-first.

        A failing document is marked failed with the reason stored in its
        metadata, and the loop moves on to the next one.

        Returns:
            Counts of processed and failed documents
        """
        with self._session_scope() as session:
            pending = [
                (d.id, d.source_type, d.source_id, d.file_path, d.mime_type)
                for d in DocumentRepository(session).get_pending(limit=limit)
            ]

        processed = 0
        failed = 0
        for document_id, source_type, source_id, file_path, mime_type in pending:
            started = time.perf_counter()
            try:
                source = file_path or (str(source_id) if source_id else None)
                if not source:
                    raise RAGEngineError("No valid source found for document")

                if source_type == SourceType.FILE.value and not mime_type:
                    mime_type = mimetypes.guess_type(file_path)[0]
                    with self._session_scope() as session:
                        DocumentRepository(session).update(document_id, mime_type=mime_type)

                result = self.process_document(source, source_type, document_id)
                self.store_document_metadata(
                    document_id,
                    {
                        "processing_results": result.model_dump(mode="json"),
                        "chunk_count": result.chunk_count,
                        "embedding_count": result.embedding_count,
                        "processing_time": round(time.perf_counter() - started, 3),
                        "mime_type": mime_type,
                        "file_size": (
                            os.path.getsize(file_path)
                            if source_type == SourceType.FILE.value and file_path and os.path.exists(file_path)
                            else None
                        ),
                    },
                )
                processed += 1
            except Exception as e:
                failed += 1
                message = e.message if isinstance(e, RAGException) else str(e)
                logger.error(f"Queue processing failed for document {document_id}: {message}")
                self._mark_failed(document_id, e)
                try:
                    self.store_document_metadata(
                        document_id, {"processing_time": round(time.perf_counter() - started, 3)}
                    )
                except RAGException as meta_error:
                    logger.error(f"Could not store timing for document {document_id}: {meta_error.message}")

        if pending:
            logger.info(f"Queue run complete: processed={processed}, failed={failed}")
        return {"processed": processed, "failed": failed}

    def generate_response(
        self,
        message: str,
        conversation_id: str,
        bot_id: int,
        identity: Optional[RequestIdentity] = None,
        attachments: Optional[List[Attachment]] = None,
    ) -> ChatResponse:
        """
        Answer a chat message grounded in the bot's knowledge base.

        Raises:
            RateLimitedError: If the caller exceeded a usage cap
            RAGEngineError: Wrapping any other failure
        """
        started = time.perf_counter()
        try:
            return self._respond(message, conversation_id, bot_id, identity, attachments, None, started)
        except RateLimitedError:
            raise
        except Exception as e:
            raise self._wrap("Failed to generate response", e) from e

    def stream_response(
        self,
        message: str,
        conversation_id: str,
        bot_id: int,
        callback: Callable[[str], None],
        identity: Optional[RequestIdentity] = None,
        attachments: Optional[List[Attachment]] = None,
    ) -> ChatResponse:
        """
        Same pipeline as ``generate_response`` with incremental output.

        Short-circuit replies (banned word, greeting, fallback) are delivered
        through ``callback`` in one piece. The assistant turn is persisted
        only after the stream has completed.
        """
        started = time.perf_counter()
        try:
            return self._respond(message, conversation_id, bot_id, identity, attachments, callback, started)
        except RateLimitedError:
            raise
        except Exception as e:
            raise self._wrap("Failed to stream response", e) from e

    @staticmethod
    def _wrap(prefix: str, error: Exception) -> RAGEngineError:
        message = error.message if isinstance(error, RAGException) else str(error)
        return RAGEngineError(f"{prefix}: {message}", details={"error_type": type(error).__name__})

    def _respond(
        self,
        message: str,
        conversation_id: str,
        bot_id: int,
        identity: Optional[RequestIdentity],
        attachments: Optional[List[Attachment]],
        callback: Optional[Callable[[str], None]],
        started: float,
    ) -> ChatResponse:
        identity = identity or RequestIdentity()
        bot = self._get_bot(bot_id)

        def short_circuit(text: str) -> ChatResponse:
            if callback is not None:
                callback(text)
            return ChatResponse(response=text)

        banned = find_banned_keyword(message, self.settings.chat.banned_keywords)
        if banned:
            logger.info(f"Rejected message with banned keyword for bot {bot_id}")
            return short_circuit(f'⚠️ The word "{banned}" is not allowed in this chat.')

        if self.rate_limiter is not None:
            status = self.rate_limiter.check_user_limits(identity)
            if status is not None:
                raise RateLimitedError(
                    status.message,
                    reason=status.reason,
                    details={
                        "usage": status.usage,
                        "limit": status.limit,
                        "reset_time": status.reset_time.isoformat(),
                    },
                )

        if self._is_greeting(message):
            return short_circuit(self.settings.chat.greeting_reply)

        history = self.history.get_history(conversation_id)

        retrieval_options = {
            "max_results": bot.context_length or self.settings.retrieval.max_context_chunks,
            "min_similarity": (
                bot.min_chunk_relevance
                if bot.min_chunk_relevance is not None
                else self.settings.retrieval.min_chunk_relevance
            ),
        }
        context = self.retriever.find_context(message, bot_id, retrieval_options)
        if not context:
            logger.info(f"No context found for bot {bot_id}; returning fallback message")
            return short_circuit(bot.fallback_message or self.settings.chat.fallback_message)

        messages = self.build_conversation_messages(message, history, context, bot, attachments)
        params = {
            "model": bot.model or self.settings.llm.default_model,
            "max_tokens": bot.max_tokens or self.settings.llm.max_tokens,
            "temperature": bot.temperature if bot.temperature is not None else self.settings.llm.temperature,
        }
        if callback is None:
            completion = self.llm.complete(messages, **params)
        else:
            completion = self.llm.stream(messages, callback, **params)

        self._store_turns(conversation_id, bot_id, identity, message, completion)

        return ChatResponse(
            response=completion.response,
            context=context,
            metadata={
                "tokens": completion.usage,
                "model": completion.model,
                "context_chunks": len(context),
                "conversation_id": conversation_id,
                "processing_time": round(time.perf_counter() - started, 3),
            },
        )

    def _get_bot(self, bot_id: int) -> BotConfig:
        with self._session_scope() as session:
            bot = ChatbotRepository(session).get_config(bot_id)
        if bot is None:
            raise RAGEngineError("Chatbot not found", details={"bot_id": bot_id})
        return bot

    def _is_greeting(self, message: str) -> bool:
        text = message.strip().lower()
        return len(text) < GREETING_MAX_LENGTH and text in self.settings.chat.greeting_words

    def _store_turns(
        self,
        conversation_id: str,
        bot_id: int,
        identity: RequestIdentity,
        message: str,
        completion: CompletionResult,
    ) -> None:
        # Per-turn tokens sum to the completion's total
        prompt_tokens = int(completion.usage.get("prompt_tokens", 0))
        completion_tokens = completion.total_tokens - prompt_tokens
        conversation_pk = self.history.save(conversation_id, bot_id, identity)
        self.history.add_turn(
            conversation_id,
            conversation_pk,
            ChatTurn(role="user", content=message),
            metadata={"model": completion.model, "tokens": prompt_tokens},
        )
        self.history.add_turn(
            conversation_id,
            conversation_pk,
            ChatTurn(role="assistant", content=completion.response),
            metadata={"model": completion.model, "tokens": completion_tokens, "usage": completion.usage},
        )

    def build_conversation_messages(
        self,
        message: str,
        history: Sequence[ChatTurn],
        context: Sequence[ContextChunk],
        bot: BotConfig,
        attachments: Optional[List[Attachment]] = None,
    ) -> List[Dict[str, str]]:
        """System prompt, the last ``bot.max_messages`` turns and the user message."""
        system_prompt = (
            SYSTEM_PROMPT_TEMPLATE.replace("{context}", format_context_for_prompt(context))
            .replace("{chatbot_personality}", bot.personality or "Website Chatbot")
            .replace("{site_name}", self.settings.chat.site_name)
            .replace("{chat_tone}", bot.tone or "friendly")
        )
        messages = [{"role": "system", "content": system_prompt}]

        turns = list(history)
        if bot.max_messages > 0:
            turns = turns[-bot.max_messages:]
        messages.extend({"role": t.role, "content": t.content} for t in turns)

        user_content = message
        links = [f"[{a.type}]({a.url})" for a in attachments or [] if a.url]
        if links:
            user_content += f"\n\n{ATTACHMENT_PREAMBLE} " + ", ".join(links)
        messages.append({"role": "user", "content": user_content})
        return messages

    def get_settings(self) -> Dict[str, Any]:
        return {
            "document_loader": self.loader.get_settings(),
            "text_chunker": self.chunker.get_settings(),
            "embeddings_generator": self.embeddings.get_settings(),
            "retriever": self.retriever.get_settings(),
            "default_settings": {
                "max_context_chunks": self.settings.retrieval.max_context_chunks,
                "min_chunk_relevance": self.settings.retrieval.min_chunk_relevance,
                "max_conversation_turns": self.settings.chat.max_conversation_turns,
                "conversation_expiry": self.settings.cache.conversation_ttl,
            },
        }

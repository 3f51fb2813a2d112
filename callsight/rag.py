from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

from .embeddings import EmbeddingClient
from .llm_client import ChatCompletionOptions, ChatMessage
from .logging_utils import get_logger
from .processor import ClientResolver
from .schemas import ChatHistoryMessage, RAGChatRequest, RAGQueryRequest, RAGResponse, RAGSource
from .store import HydratedChunk, TranscriptStore
from .vector_index import VectorFilter, VectorIndex, VectorMatch

ANSWER_TEMPERATURE = 0.2
ANSWER_MAX_TOKENS = 1500

NO_SOURCES_ACCOUNT_ANSWER = (
    "I couldn't find any relevant transcript segments for this account matching your query."
)
NO_SOURCES_ANSWER = "I couldn't find any relevant transcript segments matching your query."
EMPTY_COMPLETION_ANSWER = "Unable to generate an answer."

_BASE_RULES = """You are a helpful assistant that answers questions about customer accounts based on call transcript data.

RULES:
1. ONLY use information from the provided transcript sources.
2. Cite sources using [Source N] notation.
3. If the sources don't contain enough information to answer, say so honestly.
4. Be specific and include any quantified metrics you find.
5. Keep answers concise but complete."""

QUERY_SYSTEM_PROMPT = _BASE_RULES
CHAT_SYSTEM_PROMPT = (
    _BASE_RULES
    + "\n6. When the user asks follow-up questions, use the conversation history for context."
)

logger = get_logger(__name__)


class TenantMismatchError(PermissionError):
    pass


@dataclass(frozen=True)
class CallerContext:
    """Identity established by the authenticating gateway, never by request bodies."""

    organization_id: str
    user_id: Optional[str] = None
    role: Optional[str] = None


def _scope_organization(requested: Optional[str], caller: CallerContext) -> str:
    if requested and requested != caller.organization_id:
        raise TenantMismatchError(
            f"organization {requested} does not match the authenticated organization"
        )
    return caller.organization_id


def format_context_block(sources: Sequence[RAGSource]) -> str:
    blocks: List[str] = []
    for position, source in enumerate(sources, start=1):
        title = source.call_title or "Untitled"
        call_date = source.call_date.isoformat() if source.call_date else "unknown date"
        speaker = f" - {source.speaker}" if source.speaker else ""
        blocks.append(f'[Source {position}] Call: "{title}" ({call_date}){speaker}\n{source.text}')
    return "\n\n---\n\n".join(blocks)


def _question_message(query: str, sources: Sequence[RAGSource]) -> ChatMessage:
    return ChatMessage(
        role="user",
        content=f"QUESTION: {query}\n\nTRANSCRIPT SOURCES:\n{format_context_block(sources)}",
    )


class RAGEngine:
    def __init__(
        self,
        store: TranscriptStore,
        vector_index: VectorIndex,
        embedder: EmbeddingClient,
        client_resolver: ClientResolver,
        max_history: int = 50,
    ) -> None:
        self._store = store
        self._vector_index = vector_index
        self._embedder = embedder
        self._client_resolver = client_resolver
        self._max_history = max(0, int(max_history))

    def query(self, request: RAGQueryRequest, caller: CallerContext) -> RAGResponse:
        organization_id = _scope_organization(request.organization_id, caller)
        sources = self._retrieve(
            request.query,
            VectorFilter(
                organization_id=organization_id,
                account_id=request.account_id,
                funnel_stages=request.funnel_stages,
            ),
            request.top_k,
        )
        if not sources:
            logger.info(
                "rag.no_sources mode=query org=%s account_id=%s",
                organization_id,
                request.account_id,
            )
            return RAGResponse(answer=NO_SOURCES_ACCOUNT_ANSWER, sources=[], tokens_used=0)

        messages = [
            ChatMessage(role="system", content=QUERY_SYSTEM_PROMPT),
            _question_message(request.query, sources),
        ]
        return self._answer(organization_id, messages, sources, mode="query")

    def chat(self, request: RAGChatRequest, caller: CallerContext) -> RAGResponse:
        organization_id = _scope_organization(request.organization_id, caller)
        sources = self._retrieve(
            request.query,
            VectorFilter(
                organization_id=organization_id,
                account_id=request.account_id,
                funnel_stages=request.funnel_stages,
            ),
            request.top_k,
        )
        if not sources:
            logger.info(
                "rag.no_sources mode=chat org=%s account_id=%s",
                organization_id,
                request.account_id,
            )
            return RAGResponse(answer=NO_SOURCES_ANSWER, sources=[], tokens_used=0)

        messages = [ChatMessage(role="system", content=CHAT_SYSTEM_PROMPT)]
        messages.extend(self._history_messages(request.history))
        messages.append(_question_message(request.query, sources))
        return self._answer(organization_id, messages, sources, mode="chat")

    def _history_messages(self, history: Sequence[ChatHistoryMessage]) -> List[ChatMessage]:
        if self._max_history == 0:
            return []
        recent = list(history)[-self._max_history:]
        return [ChatMessage(role=item.role, content=item.content) for item in recent]

    def _answer(
        self,
        organization_id: str,
        messages: List[ChatMessage],
        sources: List[RAGSource],
        *,
        mode: str,
    ) -> RAGResponse:
        client = self._client_resolver.resolve(organization_id)
        completion = client.chat_completion(
            messages,
            ChatCompletionOptions(temperature=ANSWER_TEMPERATURE, max_tokens=ANSWER_MAX_TOKENS),
        )
        logger.info(
            "rag.answered mode=%s org=%s sources=%s tokens=%s",
            mode,
            organization_id,
            len(sources),
            completion.total_tokens,
        )
        return RAGResponse(
            answer=completion.content or EMPTY_COMPLETION_ANSWER,
            sources=sources,
            tokens_used=completion.total_tokens,
        )

    def _retrieve(self, query: str, filters: VectorFilter, top_k: int) -> List[RAGSource]:
        vector = self._embedder.embed(query)
        matches = self._vector_index.query(vector, top_k, filters)
        return self._hydrate(matches, filters.organization_id)

    def _hydrate(self, matches: Sequence[VectorMatch], organization_id: str) -> List[RAGSource]:
        scoped: List[VectorMatch] = []
        for match in matches:
            chunk_id = match.metadata.get("chunk_id")
            if not chunk_id:
                continue
            if match.metadata.get("organization_id") != organization_id:
                logger.warning(
                    "rag.cross_tenant_match_dropped vector_id=%s org=%s",
                    match.vector_id,
                    organization_id,
                )
                continue
            scoped.append(match)
        if not scoped:
            return []

        chunks: Dict[str, HydratedChunk] = self._store.hydrate_chunks(
            [str(match.metadata["chunk_id"]) for match in scoped]
        )
        sources: List[RAGSource] = []
        for match in scoped:
            chunk = chunks.get(str(match.metadata["chunk_id"]))
            if chunk is None:
                continue
            if chunk.organization_id != organization_id:
                logger.warning(
                    "rag.cross_tenant_chunk_dropped chunk_id=%s org=%s",
                    chunk.chunk_id,
                    organization_id,
                )
                continue
            sources.append(
                RAGSource(
                    chunk_id=chunk.chunk_id,
                    call_id=chunk.call_id,
                    call_title=chunk.call_title,
                    call_date=chunk.call_date,
                    text=chunk.text,
                    speaker=chunk.speaker,
                    relevance_score=match.score,
                )
            )
        return sources

"""
RAG Orchestrator for Kenyan legal questions.

    retrieve_context   -- embed the query, search the index, keep matches above
                          the similarity threshold, average their scores
    generate_answer    -- pick a model by confidence, build the grounded prompt,
                          call the chat model
    query              -- retrieve_context + generate_answer
    query_without_rag  -- ungrounded answer from the generic prompt

RAGService lets provider and index errors propagate. LegalAssistant sits on
the caller side and decides between grounded and ungrounded answers.
"""

import os
import logging
from dataclasses import dataclass, field
from typing import Optional

from .embeddings import EmbeddingService
from .errors import ConfigurationError, LegalKBError, ProviderAuthError, classify_provider_error
from .metrics import get_metrics_collector

logger = logging.getLogger(__name__)

NO_ANSWER = "I apologize, but I could not generate a response."

UNGROUNDED_SYSTEM_PROMPT = """You are an expert legal assistant specializing in Kenyan law.
Provide accurate, helpful information about Kenyan legal matters.
Always cite specific laws, acts, and articles when possible.
If you're uncertain, clearly state that and recommend consulting a licensed advocate."""

GROUNDED_INSTRUCTIONS = """--- INSTRUCTIONS ---
Based on the above legal documents, provide a comprehensive answer to the user's question.

IMPORTANT:
- Cite specific laws, acts, sections, and articles from the provided documents
- Use exact legal language when quoting statutes
- If the provided documents don't fully answer the question, clearly state what information is missing
- Include procedural steps, timelines, costs, and requirements where relevant
- Format your response with clear headings and bullet points for readability
- End with a recommendation to consult a licensed advocate for personalized legal advice

Always prioritize accuracy over completeness. If you're uncertain, say so."""


def _env_flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


@dataclass
class RAGConfig:
    """Configuration for retrieval and generation."""
    top_k: int = 5
    similarity_threshold: float = 0.70
    high_confidence_threshold: float = 0.85
    use_simple_model_for_high_confidence: bool = False
    complex_model: str = "gpt-4"
    simple_model: str = "gpt-3.5-turbo"
    temperature: float = 0.3
    max_output_tokens: int = 1500
    history_turns: int = 5
    namespace: str = "default"
    mode: str = "grounded"  # "grounded" or "ungrounded"
    fallback_to_ungrounded: bool = True

    @classmethod
    def from_env(cls) -> "RAGConfig":
        return cls(
            top_k=int(os.getenv("MAX_RETRIEVAL_DOCS", "5")),
            similarity_threshold=float(os.getenv("SIMILARITY_THRESHOLD", "0.7")),
            high_confidence_threshold=float(os.getenv("HIGH_CONFIDENCE_THRESHOLD", "0.85")),
            use_simple_model_for_high_confidence=_env_flag("USE_SIMPLE_MODEL_FOR_HIGH_CONFIDENCE"),
            complex_model=os.getenv("OPENAI_CHAT_MODEL_COMPLEX", "gpt-4"),
            simple_model=os.getenv("OPENAI_CHAT_MODEL_SIMPLE", "gpt-3.5-turbo"),
            temperature=float(os.getenv("RAG_TEMPERATURE", "0.3")),
            max_output_tokens=int(os.getenv("RAG_MAX_OUTPUT_TOKENS", "1500")),
            namespace=os.getenv("VECTOR_NAMESPACE", "default"),
            mode=os.getenv("RAG_MODE", "grounded").strip().lower(),
            fallback_to_ungrounded=_env_flag("RAG_FALLBACK_TO_UNGROUNDED", "true"),
        )


@dataclass
class RAGSource:
    document_id: str
    title: str
    text: str
    score: float
    citation: Optional[str] = None
    section: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "document_id": self.document_id,
            "title": self.title,
            "text": self.text,
            "citation": self.citation,
            "section": self.section,
            "score": self.score,
        }


@dataclass
class RAGContext:
    sources: list[RAGSource] = field(default_factory=list)
    avg_confidence: float = 0.0

    @property
    def retrieved_count(self) -> int:
        return len(self.sources)


@dataclass
class RAGResponse:
    answer: str
    context: RAGContext
    tokens_used: int
    model_used: str
    mode: str = "grounded"

    @property
    def confidence(self) -> float:
        return self.context.avg_confidence

    def to_dict(self) -> dict:
        return {
            "answer": self.answer,
            "sources": [s.to_dict() for s in self.context.sources],
            "confidence": self.confidence,
            "tokens_used": self.tokens_used,
            "model_used": self.model_used,
            "mode": self.mode,
        }


def build_system_prompt(context: RAGContext) -> str:
    """Grounded system prompt listing every retained source."""
    parts = [
        "You are an expert legal assistant specializing in Kenyan law.\n\n"
        "I have retrieved the following relevant legal documents to help answer "
        "the user's question:\n"
    ]
    if not context.sources:
        parts.append("\n(No documents met the relevance threshold for this question.)\n")
    for idx, source in enumerate(context.sources, start=1):
        block = [f"\n--- SOURCE {idx} ---", f"Document: {source.title}"]
        if source.citation:
            block.append(f"Citation: {source.citation}")
        if source.section:
            block.append(f"Section: {source.section}")
        block.append(f"Relevance Score: {source.score * 100:.1f}%")
        block.append(f"\nContent:\n{source.text}\n")
        parts.append("\n".join(block))
    parts.append("\n\n" + GROUNDED_INSTRUCTIONS)
    return "".join(parts)


class RAGService:
    """
    Retrieval-augmented answering over the legal vector index.

    Usage:
        rag = RAGService(embeddings, vector_index)
        response = rag.query("How long does a tenant have to respond to an eviction notice?")
    """

    def __init__(
        self,
        embeddings: EmbeddingService,
        vector_index,
        config: Optional[RAGConfig] = None,
        llm_client=None,
    ):
        self.embeddings = embeddings
        self.vector_index = vector_index
        self.config = config or RAGConfig()
        self._llm_client = llm_client
        self._metrics = get_metrics_collector()

    def get_llm_client(self):
        """Get or create the cached OpenAI chat client."""
        if self._llm_client is None:
            api_key = os.getenv("OPENAI_API_KEY")
            if not api_key:
                raise ConfigurationError("OPENAI_API_KEY not set", missing=["OPENAI_API_KEY"])
            from openai import OpenAI
            self._llm_client = OpenAI(api_key=api_key, timeout=120.0)
        return self._llm_client

    def retrieve_context(self, query: str) -> RAGContext:
        """
        Find the chunks most similar to the query.

        Returns:
            RAGContext holding only sources with score >= similarity_threshold,
            avg_confidence 0 when none qualify
        """
        embedding = self.embeddings.generate_embedding(query, input_type="query")
        if embedding.fallback:
            logger.warning(f"Query embedded with fallback provider '{embedding.provider}'")

        matches = self.vector_index.search_similar(
            embedding.vector, top_k=self.config.top_k, namespace=self.config.namespace
        )
        threshold = self.config.similarity_threshold
        sources = [
            RAGSource(
                document_id=m.metadata.get("documentId", ""),
                title=m.metadata.get("documentTitle", "Untitled"),
                text=m.metadata.get("text", ""),
                citation=m.metadata.get("citation"),
                section=m.metadata.get("section"),
                score=min(max(m.score, 0.0), 1.0),
            )
            for m in matches
            if m.score >= threshold
        ]
        if not sources:
            logger.warning(f"No documents found above similarity threshold ({threshold})")

        avg = sum(s.score for s in sources) / len(sources) if sources else 0.0
        logger.info(f"Retrieved {len(sources)} relevant documents (avg confidence: {avg:.3f})")
        return RAGContext(sources=sources, avg_confidence=avg)

    def select_model(self, context: RAGContext) -> str:
        """The simple model only when confidence is high and explicitly allowed."""
        if (
            self.config.use_simple_model_for_high_confidence
            and context.avg_confidence >= self.config.high_confidence_threshold
        ):
            return self.config.simple_model
        return self.config.complex_model

    def _messages(self, system_prompt: str, query: str, history: Optional[list[dict]]) -> list[dict]:
        messages = [{"role": "system", "content": system_prompt}]
        for turn in (history or [])[-self.config.history_turns:]:
            messages.append({"role": turn["role"], "content": turn["content"]})
        messages.append({"role": "user", "content": query})
        return messages

    def _complete(self, model: str, messages: list[dict]) -> tuple[str, int]:
        client = self.get_llm_client()
        try:
            response = client.chat.completions.create(
                model=model,
                messages=messages,
                temperature=self.config.temperature,
                max_tokens=self.config.max_output_tokens,
            )
        except Exception as e:
            logger.error(f"Chat completion failed ({model}): {type(e).__name__}: {e}")
            raise classify_provider_error(e, "openai") from e

        answer = (response.choices[0].message.content or "").strip() or NO_ANSWER
        usage = getattr(response, "usage", None)
        tokens = getattr(usage, "total_tokens", 0) or 0
        return answer, tokens

    def generate_answer(
        self,
        query: str,
        context: RAGContext,
        history: Optional[list[dict]] = None,
    ) -> RAGResponse:
        """Answer the query from the retrieved context."""
        model = self.select_model(context)
        logger.info(f"Using model: {model} (confidence: {context.avg_confidence:.3f})")

        messages = self._messages(build_system_prompt(context), query, history)
        answer, tokens = self._complete(model, messages)
        logger.info(f"Generated answer using {model} ({tokens} tokens)")
        return RAGResponse(
            answer=answer, context=context, tokens_used=tokens, model_used=model, mode="grounded"
        )

    def query(self, user_query: str, history: Optional[list[dict]] = None) -> RAGResponse:
        """Full grounded pipeline."""
        logger.info(f"RAG query: \"{user_query[:100]}\"")
        with self._metrics.track_query("grounded") as tracker:
            context = self.retrieve_context(user_query)
            response = self.generate_answer(user_query, context, history)
            tracker.set_result(response.model_used, response.tokens_used)
        logger.info(
            f"RAG query completed ({context.retrieved_count} sources, {response.tokens_used} tokens)"
        )
        return response

    def query_without_rag(self, user_query: str, history: Optional[list[dict]] = None) -> RAGResponse:
        """Ungrounded answer: generic prompt, complex model, no sources, confidence 0."""
        logger.info("Answering without retrieval")
        model = self.config.complex_model
        with self._metrics.track_query("ungrounded") as tracker:
            messages = self._messages(UNGROUNDED_SYSTEM_PROMPT, user_query, history)
            answer, tokens = self._complete(model, messages)
            tracker.set_result(model, tokens)
        return RAGResponse(
            answer=answer, context=RAGContext(), tokens_used=tokens, model_used=model, mode="ungrounded"
        )


class LegalAssistant:
    """
    Caller-side routing between grounded and ungrounded answers.

    RAG_MODE=grounded answers through retrieval and, when
    RAG_FALLBACK_TO_UNGROUNDED is on, degrades to an ungrounded answer if
    retrieval or generation fails. RAG_MODE=ungrounded skips retrieval.
    """

    def __init__(self, rag: RAGService, config: Optional[RAGConfig] = None):
        self.rag = rag
        self.config = config or rag.config
        if self.config.mode not in ("grounded", "ungrounded"):
            raise ConfigurationError(f"Unknown RAG_MODE '{self.config.mode}'", missing=["RAG_MODE"])

    def answer(self, question: str, history: Optional[list[dict]] = None) -> dict:
        if self.config.mode == "ungrounded":
            return self.rag.query_without_rag(question, history).to_dict()
        try:
            return self.rag.query(question, history).to_dict()
        except LegalKBError as e:
            if not self.config.fallback_to_ungrounded or isinstance(e, (ConfigurationError, ProviderAuthError)):
                raise
            logger.warning(f"Grounded answer failed ({type(e).__name__}: {e}), answering without retrieval")
            return self.rag.query_without_rag(question, history).to_dict()


# CLI for testing
if __name__ == "__main__":
    import sys
    import json
    from dotenv import load_dotenv

    from .services import build_services

    load_dotenv()
    logging.basicConfig(level=logging.INFO)

    services = build_services()
    question = " ".join(sys.argv[1:]) or "What are the grounds for divorce under the Marriage Act 2014?"
    print(json.dumps(services.assistant.answer(question), indent=2))

"""
HTTP-style interface for the interview agent tools.

The voice agent calls two tools during an interview: ``get_context`` to pull
company knowledge for a question and ``recall_interview_memory`` to check what
the candidate has already said. ``AgentToolAPI`` translates those JSON tool
payloads into :class:`RecallEngine` calls and returns ``(status, body)`` pairs
so any web framework can mount the handlers.
"""

from __future__ import annotations

import logging
from http import HTTPStatus
from typing import Any, Dict, Mapping, Tuple

from .errors import NotFound, OwnerMismatch, RecallEngineError
from .service import RecallEngine
from .types import RecalledFact, SessionMemoryFact

logger = logging.getLogger(__name__)

__all__ = ("AgentToolAPI", "CONTEXT_UNAVAILABLE_MESSAGE")

CONTEXT_UNAVAILABLE_MESSAGE = "I am having trouble accessing my memory right now."


class AgentToolAPI:
    """Minimal synchronous handlers for the agent tool endpoints.

    Attributes:
        _engine: Recall engine serving every request.

    Examples:
        >>> from InterviewKG.RecallEngine.config import RecallEngineConfig
        >>> from InterviewKG.RecallEngine.devtools import HashingEmbeddingProvider
        >>> engine = RecallEngine(RecallEngineConfig.from_dict({"vector": {"dim": 16}}),
        ...                       provider=HashingEmbeddingProvider(dim=16))
        >>> api = AgentToolAPI(engine)
        >>> status, body = api.post_recall_memory({"session_id": "s1"})
        >>> int(status), body["covered_topics"]
        (200, [])
        >>> engine.close()
    """

    def __init__(self, engine: RecallEngine) -> None:
        if not isinstance(engine, RecallEngine):
            raise TypeError("engine must be a RecallEngine instance")
        self._engine = engine

    def post_get_context(self, payload: Mapping[str, Any]) -> Tuple[int, Mapping[str, Any]]:
        """Handle ``POST /v1/tools/get-context``.

        Args:
            payload: Tool input with ``query`` and ``owner_id`` (required) and
                optional ``top_k`` and ``max_tokens``.

        Returns:
            Tuple of (HTTP status code, response dictionary):
            - 200: ``{"context", "chunk_ids", "cached", "degraded"}``. Engine
              failures still answer 200 with a fallback context so the agent can
              keep talking.
            - 400: Missing or invalid parameters.
            - 403: ``owner_id`` does not own a referenced chunk.
        """
        try:
            query = self._require_str(payload, "query")
            owner_id = self._require_str(payload, "owner_id")
            top_k = int(payload.get("top_k", 5))
            max_tokens = payload.get("max_tokens")
            max_tokens = None if max_tokens is None else int(max_tokens)
            if top_k <= 0:
                raise ValueError("top_k must be positive")
        except (TypeError, ValueError) as exc:
            return HTTPStatus.BAD_REQUEST, {"error": str(exc)}

        logger.info(
            "agent-tool-get-context",
            extra={"event": {"owner_id": owner_id, "query_chars": len(query), "top_k": top_k}},
        )
        try:
            result = self._engine.get_context(owner_id, query, top_k, max_tokens=max_tokens)
        except OwnerMismatch as exc:
            return HTTPStatus.FORBIDDEN, {"error": str(exc)}
        except ValueError as exc:
            return HTTPStatus.BAD_REQUEST, {"error": str(exc)}
        except RecallEngineError:
            logger.exception("agent-tool-get-context-failed", extra={"event": {"owner_id": owner_id}})
            return HTTPStatus.OK, {
                "context": CONTEXT_UNAVAILABLE_MESSAGE,
                "chunk_ids": [],
                "cached": False,
                "degraded": True,
            }
        return HTTPStatus.OK, {
            "context": result.text,
            "chunk_ids": list(result.chunk_ids),
            "cached": result.cached,
            "degraded": result.degraded,
        }

    def post_recall_memory(self, payload: Mapping[str, Any]) -> Tuple[int, Mapping[str, Any]]:
        """Handle ``POST /v1/tools/recall-interview-memory``.

        With a ``query`` the best matching fact is returned together with an
        instruction not to ask again; without one every covered topic is listed.

        Returns:
            Tuple of (HTTP status code, response dictionary):
            - 200: Recall result (see above).
            - 400: Missing ``session_id``.
            - 404: Unknown resource.
        """
        try:
            session_id = self._require_str(payload, "session_id")
        except (TypeError, ValueError) as exc:
            return HTTPStatus.BAD_REQUEST, {"error": str(exc)}
        query = payload.get("query")

        try:
            if query:
                recalled = self._engine.memory_recall_by_query(session_id, str(query))
                return HTTPStatus.OK, {
                    "found": recalled is not None,
                    "recall": None if recalled is None else self._recall_body(recalled),
                    "instruction": (
                        "The candidate already mentioned this. Do NOT ask again."
                        if recalled is not None
                        else "No matching memory found. You may ask about this."
                    ),
                }
            facts = self._engine.memory_list(session_id)
        except NotFound as exc:
            return HTTPStatus.NOT_FOUND, {"error": str(exc)}
        except RecallEngineError:
            logger.exception("agent-tool-recall-failed", extra={"event": {"session_id": session_id}})
            return HTTPStatus.OK, {
                "covered_topics": [],
                "facts": {},
                "instruction": "Memory system unavailable.",
            }

        covered = [fact.topic for fact in facts]
        return HTTPStatus.OK, {
            "covered_topics": covered,
            "facts": {fact.topic: self._fact_body(fact) for fact in facts},
            "instruction": (
                "Do NOT ask about: " + ", ".join(covered) + ". These are already covered."
                if covered
                else "No topics covered yet."
            ),
        }

    @staticmethod
    def _require_str(payload: Mapping[str, Any], key: str) -> str:
        value = payload.get(key)
        if value is None or (isinstance(value, str) and not value.strip()):
            raise ValueError(f"'{key}' is required")
        if not isinstance(value, str):
            raise TypeError(f"'{key}' must be a string")
        return value

    @staticmethod
    def _fact_body(fact: SessionMemoryFact) -> Dict[str, Any]:
        return {
            "content": fact.content,
            "source": fact.source_message,
            "extracted_at": fact.updated_at.isoformat(),
        }

    @classmethod
    def _recall_body(cls, recalled: RecalledFact) -> Dict[str, Any]:
        body = cls._fact_body(recalled.fact)
        body["topic"] = recalled.fact.topic
        body["relevance"] = round(recalled.relevance, 2)
        return body

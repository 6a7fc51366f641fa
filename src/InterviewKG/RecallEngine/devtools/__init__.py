# === NAVMAP v1 ===
# {
#   "module": "InterviewKG.RecallEngine.devtools.__init__",
#   "purpose": "Developer tooling helpers for the InterviewKG recall engine.",
#   "sections": []
# }
# === /NAVMAP ===

"""Developer tooling helpers for the InterviewKG recall engine.

The ``devtools`` package provides embedding providers that need no network
access so tests and notebooks can run the full engine offline while still
conforming to the :class:`~InterviewKG.RecallEngine.embeddings.EmbeddingProvider`
protocol.
"""

from .features import FlakyEmbeddingProvider, HashingEmbeddingProvider

__all__ = ("FlakyEmbeddingProvider", "HashingEmbeddingProvider")

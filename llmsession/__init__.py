"""
llmsession - a serialized, cancellable session over a local language model.

One Session holds a loaded model and a single inference context and exposes
streaming text generation and normalized embeddings on top of it.

Quick Start:
    from llmsession import Session, SamplingParameters

    with Session.open("Qwen/Qwen2.5-0.5B-Instruct") as session:
        for fragment in session.generate("Hello", SamplingParameters(temperature=0.0), max_tokens=32):
            print(fragment, end="", flush=True)

        vector = session.embed("Hello")

Environment Variables:
    LLMSESSION_CONTEXT_LENGTH, LLMSESSION_MAX_TOKENS, LLMSESSION_STOP,
    LLMSESSION_DEVICE, LLMSESSION_DTYPE, LLMSESSION_POOLING,
    LLMSESSION_ADD_SPECIAL_TOKENS, LLMSESSION_NUM_THREADS:
        Read by `SessionConfig.from_env()`.
"""

from llmsession._version import __version__

from llmsession.engine.config import SessionConfig
from llmsession.engine.embedding import Embedding, cosine_similarity, l2_normalize
from llmsession.engine.errors import (
    ContextNotReady,
    ContextOverflow,
    DecodeFailure,
    EmbeddingExtractionFailure,
    InvalidEmbeddingDimension,
    ModelLoadFailure,
    ModelNotLoaded,
    SessionError,
    TokenizationFailure,
)
from llmsession.engine.modes import ContextMode
from llmsession.engine.registry import get_backend, list_backend_families, register_backend
from llmsession.engine.session import Session
from llmsession.engine.streaming import GenerationStream
from llmsession.engine.types import (
    ChatMessage,
    Completion,
    GenerationState,
    ModelInfo,
    Prompt,
    SamplingParameters,
    Timing,
    Usage,
)

# Runtime utilities
from llmsession.runtime import (
    default_device,
    is_cuda_available,
)

__all__ = [
    # Version
    "__version__",
    # Session
    "Session",
    "SessionConfig",
    "GenerationStream",
    "Embedding",
    "cosine_similarity",
    "l2_normalize",
    # Types
    "ChatMessage",
    "Completion",
    "ContextMode",
    "GenerationState",
    "ModelInfo",
    "Prompt",
    "SamplingParameters",
    "Timing",
    "Usage",
    # Errors
    "SessionError",
    "ModelLoadFailure",
    "ModelNotLoaded",
    "ContextNotReady",
    "TokenizationFailure",
    "ContextOverflow",
    "DecodeFailure",
    "EmbeddingExtractionFailure",
    "InvalidEmbeddingDimension",
    # Backends
    "get_backend",
    "register_backend",
    "list_backend_families",
    # Runtime
    "default_device",
    "is_cuda_available",
]

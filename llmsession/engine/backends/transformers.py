"""Backend for Hugging Face Transformers models."""

from __future__ import annotations

import gc
import logging
from dataclasses import dataclass, field
from typing import Any, Sequence

import torch

from ... import runtime
from ..errors import ModelLoadFailure, TokenizationFailure
from ..types import ChatMessage, ModelInfo
from .base import BaseBackend

logger = logging.getLogger(__name__)

_DTYPES: dict[str, torch.dtype] = {
    "float16": torch.float16,
    "fp16": torch.float16,
    "half": torch.float16,
    "bfloat16": torch.bfloat16,
    "bf16": torch.bfloat16,
    "float32": torch.float32,
    "fp32": torch.float32,
    "float": torch.float32,
}

# Fallback when neither the model config nor the tokenizer declares a limit.
_DEFAULT_CONTEXT_LENGTH = 2048


# =============================================================================
# Handles
# =============================================================================


@dataclass
class _ModelHandle:
    model: Any
    tokenizer: Any
    model_path: str
    device: str
    dtype: torch.dtype
    causal: bool
    pooling: str
    eog_token_ids: frozenset[int]
    info: ModelInfo | None = None


@dataclass
class _ContextHandle:
    """Mutable per-session state: the KV cache and the last decode's outputs."""

    handle: _ModelHandle
    context_length: int
    past_key_values: Any = None
    n_past: int = 0
    embedding_mode: bool = False
    last_logits: torch.Tensor | None = None
    last_embedding: torch.Tensor | None = None


@dataclass
class _Batch:
    input_ids: torch.Tensor
    start_pos: int
    tokens: list[int] = field(default_factory=list)


# =============================================================================
# Backend
# =============================================================================


class TransformersBackend(BaseBackend):
    """
    Backend running `transformers` models in-process with PyTorch.

    Causal LMs (loaded with `AutoModelForCausalLM`) support both generation and
    embeddings; embeddings pool the final hidden layer. Encoder-only models fall
    back to `AutoModel` and support embeddings only.

    Thread Safety:
        This backend is NOT thread-safe. Do not decode concurrently on the same
        context; the Session serializes all context access.
    """

    family = "transformers"

    def __init__(self, *, num_threads: int | None = None) -> None:
        self._num_threads = num_threads

    # -------------------------------------------------------------------------
    # Process-wide lifecycle
    # -------------------------------------------------------------------------

    def initialize(self) -> None:
        if self._num_threads:
            torch.set_num_threads(int(self._num_threads))
        logger.info(
            "torch %s (cuda=%s, mps=%s, threads=%d)",
            torch.__version__,
            runtime.is_cuda_available(),
            runtime.is_mps_available(),
            torch.get_num_threads(),
        )

    def shutdown(self) -> None:
        gc.collect()
        if runtime.is_cuda_available():
            torch.cuda.empty_cache()

    # -------------------------------------------------------------------------
    # Model / context
    # -------------------------------------------------------------------------

    def load_model(self, model_path: str, **kwargs) -> _ModelHandle:
        """Load a model and tokenizer.

        Args:
            model_path: Local directory or HF hub id.
            device: Device to load on (default: best available).
            dtype: Torch dtype or its name (default: float16 on cuda, else float32).
            pooling: Embedding pooling, "mean", "last" or "cls" (default: "mean").
            trust_remote_code: Passed to `from_pretrained()` (default: False).
            **kwargs: Additional kwargs passed to `from_pretrained()`.
        """
        from transformers import AutoModel, AutoModelForCausalLM, AutoTokenizer

        device = kwargs.pop("device", None) or runtime.default_device()
        dtype = _resolve_dtype(kwargs.pop("dtype", None), device)
        pooling = kwargs.pop("pooling", "mean")
        trust_remote_code = kwargs.pop("trust_remote_code", False)

        try:
            tokenizer = AutoTokenizer.from_pretrained(model_path, trust_remote_code=trust_remote_code)
        except Exception as exc:
            raise ModelLoadFailure(f"Could not load tokenizer from {model_path!r}: {exc}") from exc

        causal = True
        try:
            model = AutoModelForCausalLM.from_pretrained(
                model_path,
                torch_dtype=dtype,
                trust_remote_code=trust_remote_code,
                **kwargs,
            )
        except ValueError:
            # Unrecognized configuration for a causal LM: treat it as an encoder.
            causal = False
            try:
                model = AutoModel.from_pretrained(
                    model_path,
                    torch_dtype=dtype,
                    trust_remote_code=trust_remote_code,
                    **kwargs,
                )
            except Exception as exc:
                raise ModelLoadFailure(f"Could not load model from {model_path!r}: {exc}") from exc
        except Exception as exc:
            raise ModelLoadFailure(f"Could not load model from {model_path!r}: {exc}") from exc

        try:
            model.to(device)
        except Exception as exc:
            raise ModelLoadFailure(f"Could not move model to {device!r}: {exc}") from exc
        model.eval()

        handle = _ModelHandle(
            model=model,
            tokenizer=tokenizer,
            model_path=model_path,
            device=device,
            dtype=dtype,
            causal=causal,
            pooling=pooling,
            eog_token_ids=_end_of_generation_ids(model, tokenizer),
        )
        handle.info = self._build_info(handle)
        logger.info(
            "Loaded %s (causal=%s, device=%s, dtype=%s, dim=%d, n_ctx=%d)",
            model_path,
            causal,
            device,
            str(dtype).replace("torch.", ""),
            handle.info.embedding_dimension,
            handle.info.max_context_length,
        )
        return handle

    def _build_info(self, handle: _ModelHandle) -> ModelInfo:
        config = handle.model.config
        dim = getattr(config, "hidden_size", None) or getattr(config, "d_model", None) or getattr(config, "n_embd", None)
        if not dim:
            raise ModelLoadFailure(f"Model config for {handle.model_path!r} declares no hidden size.")

        n_ctx = None
        for attr in ("max_position_embeddings", "n_positions", "max_sequence_length", "seq_length"):
            value = getattr(config, attr, None)
            if isinstance(value, int) and value > 0:
                n_ctx = value
                break
        if n_ctx is None:
            value = getattr(handle.tokenizer, "model_max_length", None)
            # Tokenizers without a limit report a huge sentinel value.
            if isinstance(value, int) and 0 < value < 1_000_000:
                n_ctx = value
        if n_ctx is None:
            n_ctx = _DEFAULT_CONTEXT_LENGTH

        return ModelInfo(
            model_path=handle.model_path,
            model_family=self.family,
            dtype=str(handle.dtype).replace("torch.", ""),
            device=handle.device,
            embedding_dimension=int(dim),
            max_context_length=int(n_ctx),
            vocab_size=getattr(config, "vocab_size", None),
            extra={
                "model_type": getattr(config, "model_type", None),
                "causal": handle.causal,
                "pooling": handle.pooling,
            },
        )

    def model_info(self, model: _ModelHandle) -> ModelInfo:
        return model.info

    def create_context(self, model: _ModelHandle, *, context_length: int) -> _ContextHandle:
        return _ContextHandle(handle=model, context_length=int(context_length))

    def free_context(self, context: _ContextHandle) -> None:
        context.past_key_values = None
        context.last_logits = None
        context.last_embedding = None
        context.n_past = 0

    def free_model(self, model: _ModelHandle) -> None:
        model.model = None
        model.tokenizer = None
        gc.collect()
        if runtime.is_cuda_available():
            torch.cuda.empty_cache()

    # -------------------------------------------------------------------------
    # Text <-> tokens
    # -------------------------------------------------------------------------

    def tokenize(self, context: _ContextHandle, text: str, *, add_special: bool = True) -> list[int]:
        tokenizer = context.handle.tokenizer
        try:
            ids = tokenizer(text, add_special_tokens=add_special)["input_ids"]
        except Exception as exc:
            raise TokenizationFailure(f"{type(exc).__name__}: {exc}") from exc
        return [int(t) for t in ids]

    def detokenize(self, model: _ModelHandle, tokens: Sequence[int]) -> str:
        return model.tokenizer.decode(list(tokens), skip_special_tokens=True)

    def render_prompt(self, model: _ModelHandle, messages: Sequence[ChatMessage]) -> str:
        tokenizer = model.tokenizer
        if getattr(tokenizer, "chat_template", None) is None:
            return super().render_prompt(model, messages)
        return tokenizer.apply_chat_template(
            [{"role": m.role, "content": m.content} for m in messages],
            tokenize=False,
            add_generation_prompt=True,
        )

    def is_end_of_generation(self, model: _ModelHandle, token: int) -> bool:
        return int(token) in model.eog_token_ids

    # -------------------------------------------------------------------------
    # Context state
    # -------------------------------------------------------------------------

    def set_embedding_mode(self, context: _ContextHandle, enabled: bool) -> None:
        context.embedding_mode = bool(enabled)
        context.last_embedding = None

    def clear_cache(self, context: _ContextHandle) -> None:
        context.past_key_values = None
        context.n_past = 0
        context.last_logits = None

    def position(self, context: _ContextHandle) -> int:
        if context.embedding_mode:
            return 0
        return context.n_past

    # -------------------------------------------------------------------------
    # Decode
    # -------------------------------------------------------------------------

    def create_batch(self, context: _ContextHandle, tokens: Sequence[int]) -> _Batch:
        device = context.handle.device
        return _Batch(
            input_ids=torch.tensor([list(tokens)], dtype=torch.long, device=device),
            start_pos=self.position(context),
            tokens=list(tokens),
        )

    def free_batch(self, batch: _Batch) -> None:
        batch.input_ids = None
        batch.tokens = []

    def decode(self, context: _ContextHandle, batch: _Batch) -> int:
        handle = context.handle
        if handle.model is None:
            return -1
        if context.embedding_mode:
            return self._decode_embedding(context, batch)
        if not handle.causal:
            # Encoder-only models produce no logits; get_logits() reports None.
            context.last_logits = None
            return 0
        return self._decode_generation(context, batch)

    def _decode_generation(self, context: _ContextHandle, batch: _Batch) -> int:
        model = context.handle.model
        n_tokens = batch.input_ids.shape[1]
        cache_position = torch.arange(batch.start_pos, batch.start_pos + n_tokens, device=batch.input_ids.device)

        with torch.no_grad():
            outputs = model(
                batch.input_ids,
                past_key_values=context.past_key_values,
                cache_position=cache_position,
                use_cache=True,
            )

        context.past_key_values = outputs.past_key_values
        context.n_past = batch.start_pos + n_tokens
        context.last_logits = outputs.logits[0, -1, :].detach()
        return 0

    def _decode_embedding(self, context: _ContextHandle, batch: _Batch) -> int:
        handle = context.handle
        attention_mask = torch.ones_like(batch.input_ids)

        with torch.no_grad():
            if handle.causal:
                outputs = handle.model(
                    batch.input_ids,
                    attention_mask=attention_mask,
                    output_hidden_states=True,
                    use_cache=False,
                )
                hidden = outputs.hidden_states[-1]
            else:
                outputs = handle.model(input_ids=batch.input_ids, attention_mask=attention_mask)
                hidden = outputs.last_hidden_state

        context.last_embedding = _pool(hidden[0], attention_mask[0], handle.pooling).detach()
        return 0

    def get_logits(self, context: _ContextHandle) -> torch.Tensor | None:
        return context.last_logits

    def get_embeddings(self, context: _ContextHandle) -> torch.Tensor | None:
        if not context.embedding_mode:
            return None
        return context.last_embedding


# =============================================================================
# Helpers
# =============================================================================


def _resolve_dtype(dtype: Any, device: str) -> torch.dtype:
    if dtype is None or dtype == "auto":
        return torch.float16 if device.startswith("cuda") else torch.float32
    if isinstance(dtype, torch.dtype):
        return dtype
    key = str(dtype).lower().replace("torch.", "")
    if key not in _DTYPES:
        raise ModelLoadFailure(f"Unsupported dtype: {dtype!r}. Expected one of: {', '.join(sorted(_DTYPES))}")
    return _DTYPES[key]


def _end_of_generation_ids(model: Any, tokenizer: Any) -> frozenset[int]:
    ids: set[int] = set()
    if tokenizer.eos_token_id is not None:
        ids.add(int(tokenizer.eos_token_id))
    generation_config = getattr(model, "generation_config", None)
    eos = getattr(generation_config, "eos_token_id", None)
    if isinstance(eos, int):
        ids.add(eos)
    elif isinstance(eos, (list, tuple)):
        ids.update(int(t) for t in eos)
    return frozenset(ids)


def _pool(hidden: torch.Tensor, mask: torch.Tensor, pooling: str) -> torch.Tensor:
    """Reduce per-token hidden states (seq, dim) to one vector (dim,)."""
    hidden = hidden.float()
    if pooling == "cls":
        return hidden[0]
    if pooling == "last":
        return hidden[int(mask.sum().item()) - 1]
    weights = mask.to(hidden.dtype).unsqueeze(-1)
    return (hidden * weights).sum(dim=0) / weights.sum().clamp(min=1.0)

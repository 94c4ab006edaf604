"""Sampler pipeline.

Turns the logits of the last decoded position into the next token id.
Stages run in a fixed order:

    repeat penalty -> top-k -> top-p -> temperature -> categorical draw

All stages are pure functions of their inputs. The only state is owned by
`SamplerChain`: the RNG (seeded once per generation) and the window of the
last `penalty_last_n` emitted tokens.
"""

from __future__ import annotations

import secrets
from collections import deque
from typing import Iterable

import torch

from .types import SamplingParameters


def apply_repeat_penalty(logits: torch.Tensor, recent_tokens: Iterable[int], penalty: float) -> torch.Tensor:
    """Scale down the logits of recently emitted tokens.

    Positive logits are divided by `penalty`, negative ones multiplied, so the
    token always becomes less likely. Each distinct token is penalized once.
    """
    if penalty == 1.0 or penalty <= 0:
        return logits

    vocab = logits.shape[-1]
    ids = sorted({int(t) for t in recent_tokens if 0 <= int(t) < vocab})
    if not ids:
        return logits

    index = torch.tensor(ids, dtype=torch.long, device=logits.device)
    selected = logits.index_select(-1, index)
    penalized = torch.where(selected > 0, selected / penalty, selected * penalty)

    out = logits.clone()
    out[index] = penalized
    return out


def top_k_filter(logits: torch.Tensor, k: int) -> torch.Tensor:
    """Keep the `k` highest logits; everything else becomes -inf."""
    if k <= 0 or k >= logits.shape[-1]:
        return logits

    top_k_logits, top_k_indices = torch.topk(logits, k, dim=-1)
    out = torch.full_like(logits, float("-inf"))
    out.scatter_(-1, top_k_indices, top_k_logits)
    return out


def top_p_filter(logits: torch.Tensor, p: float) -> torch.Tensor:
    """Keep the smallest prefix of probability-sorted tokens whose mass reaches `p`."""
    if p >= 1.0:
        return logits

    sorted_logits, sorted_indices = torch.sort(logits, descending=True, dim=-1)
    probs = torch.softmax(sorted_logits, dim=-1)
    cumulative = torch.cumsum(probs, dim=-1)

    # A token stays if the mass strictly before it is still below p.
    sorted_remove = (cumulative - probs) >= p
    sorted_remove[..., 0] = False

    remove = torch.zeros_like(sorted_remove).scatter(-1, sorted_indices, sorted_remove)
    return logits.masked_fill(remove, float("-inf"))


def sample_token(
    logits: torch.Tensor,
    params: SamplingParameters,
    recent_tokens: Iterable[int] = (),
    generator: torch.Generator | None = None,
) -> int:
    """Run the full pipeline over a 1-D logits vector and return one token id.

    Identical `(logits, params, generator state)` always return the same token.
    """
    # fp32 on CPU: avoids fp16 softmax overflow and keeps draws device-independent.
    logits = logits.detach().to(device="cpu", dtype=torch.float32).reshape(-1)

    logits = apply_repeat_penalty(logits, recent_tokens, params.repeat_penalty)

    if params.temperature == 0:
        return int(torch.argmax(logits, dim=-1).item())

    logits = top_k_filter(logits, params.top_k)
    logits = top_p_filter(logits, params.top_p)
    logits = logits / float(params.temperature)

    probs = torch.softmax(logits, dim=-1)
    if not bool(torch.isfinite(probs).all()) or float(probs.sum()) <= 0:
        return int(torch.argmax(logits, dim=-1).item())

    return int(torch.multinomial(probs, 1, generator=generator).item())


class SamplerChain:
    """Per-generation sampler state: seeded RNG plus the repeat-penalty window."""

    def __init__(self, params: SamplingParameters) -> None:
        params.validate()
        self.params = params
        self.seed = params.seed if params.seed is not None else secrets.randbits(63)
        self._generator = torch.Generator(device="cpu")
        self._generator.manual_seed(self.seed)
        self._recent: deque[int] = deque(maxlen=params.penalty_last_n)

    @property
    def recent_tokens(self) -> tuple[int, ...]:
        return tuple(self._recent)

    def sample(self, logits: torch.Tensor) -> int:
        return sample_token(logits, self.params, self._recent, self._generator)

    def accept(self, token: int) -> None:
        """Record an emitted token in the penalty window."""
        self._recent.append(int(token))

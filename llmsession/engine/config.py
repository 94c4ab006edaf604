"""Session-wide defaults and limits."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Any, Mapping

_ENV_PREFIX = "LLMSESSION_"
_POOLING_MODES = ("mean", "last", "cls")


@dataclass(frozen=True)
class SessionConfig:
    """Configuration for a Session.

    Notes:
    - `context_length=None` uses the model's own limit; larger values are capped to it.
    - `max_tokens=None` lets generation run until a stop condition or the context limit.
    - `device=None` / `dtype=None` let the backend choose.
    - `pooling` selects how per-token hidden states become one embedding vector.
    """

    context_length: int | None = None
    max_tokens: int | None = None
    stop: tuple[str, ...] = field(default_factory=tuple)
    device: str | None = None
    dtype: str | None = None
    pooling: str = "mean"
    add_special_tokens: bool = True
    num_threads: int | None = None

    def validate(self) -> None:
        if self.context_length is not None and self.context_length <= 0:
            raise ValueError("'context_length' must be > 0.")
        if self.max_tokens is not None and self.max_tokens <= 0:
            raise ValueError("'max_tokens' must be > 0.")
        if any(not isinstance(s, str) or not s for s in self.stop):
            raise ValueError("'stop' must contain non-empty strings.")
        if self.pooling not in _POOLING_MODES:
            raise ValueError(f"'pooling' must be one of: {', '.join(_POOLING_MODES)}.")
        if self.num_threads is not None and self.num_threads <= 0:
            raise ValueError("'num_threads' must be > 0.")

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "SessionConfig":
        """Build a config from `LLMSESSION_*` environment variables.

        Recognized: CONTEXT_LENGTH, MAX_TOKENS, STOP (comma separated), DEVICE,
        DTYPE, POOLING, ADD_SPECIAL_TOKENS (0/1), NUM_THREADS.
        """
        env = os.environ if environ is None else environ

        def get(name: str) -> str | None:
            value = env.get(_ENV_PREFIX + name)
            if value is None or not value.strip():
                return None
            return value.strip()

        data: dict[str, Any] = {}
        if (v := get("CONTEXT_LENGTH")) is not None:
            data["context_length"] = _coerce_int(v, "CONTEXT_LENGTH")
        if (v := get("MAX_TOKENS")) is not None:
            data["max_tokens"] = _coerce_int(v, "MAX_TOKENS")
        if (v := get("STOP")) is not None:
            data["stop"] = tuple(s for s in v.split(",") if s)
        if (v := get("DEVICE")) is not None:
            data["device"] = v
        if (v := get("DTYPE")) is not None:
            data["dtype"] = v
        if (v := get("POOLING")) is not None:
            data["pooling"] = v.lower()
        if (v := get("ADD_SPECIAL_TOKENS")) is not None:
            data["add_special_tokens"] = v.lower() not in {"0", "false", "no", "off"}
        if (v := get("NUM_THREADS")) is not None:
            data["num_threads"] = _coerce_int(v, "NUM_THREADS")

        config = cls(**data)
        config.validate()
        return config


def _coerce_int(value: Any, name: str, *, min_value: int = 1) -> int:
    try:
        out = int(value)
    except Exception as exc:
        raise ValueError(f"'{_ENV_PREFIX}{name}' must be an integer.") from exc
    if out < min_value:
        raise ValueError(f"'{_ENV_PREFIX}{name}' must be >= {min_value}.")
    return out

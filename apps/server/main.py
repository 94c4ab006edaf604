"""llmsession inference server entrypoint (FastAPI + OpenAI-style Completions/Embeddings).

Example:
    python -m apps.server.main --model Qwen/Qwen2.5-0.5B-Instruct --host 0.0.0.0 --port 8787
"""

from __future__ import annotations

import argparse
import dataclasses
import os

from apps.server.app import create_app
from llmsession.engine.config import SessionConfig
from llmsession.engine.registry import list_backend_families
from llmsession.engine.session import Session


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="llmsession inference server")
    p.add_argument("--model", required=True, help="Model path or HF repo id")
    p.add_argument("--host", default="0.0.0.0", help="Bind host (default: 0.0.0.0)")
    p.add_argument("--port", type=int, default=8787, help="Bind port (default: 8787)")

    p.add_argument(
        "--family",
        default="transformers",
        choices=list_backend_families(),
        help="Backend family (default: transformers)",
    )
    p.add_argument("--device", default=None, help="Device (default: best available)")
    p.add_argument("--dtype", default=None, help="Torch dtype: float16|bfloat16|float32 (default: per device)")
    p.add_argument("--context-length", type=int, default=None, help="Context window (default: model limit)")
    p.add_argument("--max-tokens", type=int, default=None, help="Default completion token cap")
    p.add_argument(
        "--pooling",
        default=None,
        choices=["mean", "last", "cls"],
        help="Embedding pooling (default: mean)",
    )
    p.add_argument("--num-threads", type=int, default=None, help="torch CPU threads")
    p.add_argument(
        "--trust-remote-code",
        action="store_true",
        help="Allow custom model code from the hub",
    )

    p.add_argument(
        "--http-max-concurrency",
        type=int,
        default=0,
        help="Max in-flight completion/embedding requests (0 = unlimited)",
    )
    p.add_argument(
        "--http-max-completion-tokens",
        type=int,
        default=0,
        help="Reject requests with max_tokens above this cap (0 = unlimited)",
    )
    p.add_argument("--log-level", default="info", help="uvicorn log level (default: info)")
    return p.parse_args(argv)


def _build_config(args: argparse.Namespace) -> SessionConfig:
    """Environment (`LLMSESSION_*`) first, command-line flags override."""
    config = SessionConfig.from_env()
    overrides = {
        "device": args.device,
        "dtype": args.dtype,
        "context_length": args.context_length,
        "max_tokens": args.max_tokens,
        "pooling": args.pooling,
        "num_threads": args.num_threads,
    }
    config = dataclasses.replace(config, **{k: v for k, v in overrides.items() if v is not None})
    config.validate()
    return config


def main(argv: list[str] | None = None) -> None:
    args = _parse_args(argv)
    config = _build_config(args)

    print(f"[server] loading model: {args.model} (family={args.family})", flush=True)
    session = Session.open(
        args.model,
        family=args.family,
        config=config,
        trust_remote_code=bool(args.trust_remote_code),
    )
    info = session.model_info
    print(
        "[server] model loaded: "
        f"device={info.device} dtype={info.dtype} "
        f"context_length={session.context_length} embedding_dimension={info.embedding_dimension}",
        flush=True,
    )

    model_id = os.path.basename(args.model.rstrip("/")) or "llmsession"
    app = create_app(
        session=session,
        model_id=model_id,
        http_max_concurrency=None if args.http_max_concurrency <= 0 else int(args.http_max_concurrency),
        http_max_completion_tokens=None
        if args.http_max_completion_tokens <= 0
        else int(args.http_max_completion_tokens),
    )

    import uvicorn

    try:
        uvicorn.run(
            app,
            host=args.host,
            port=args.port,
            log_level=args.log_level,
        )
    finally:
        session.close()
        print("[server] session closed", flush=True)


if __name__ == "__main__":
    main()

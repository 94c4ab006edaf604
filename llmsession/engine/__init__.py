# Model-agnostic inference session
#
# This package wraps one loaded model and one inference context behind a
# serialized, cancellable API for text generation and embeddings.
#
# Key components:
#   - backends/      Engine-specific backends (model, context, decode)
#   - registry.py    Maps model family names to backends
#   - session.py     Session facade (queue, modes, lifecycle)
#   - streaming.py   Cancellable generation streams
#   - embedding.py   Embedding extraction + normalization
#   - sampling.py    Sampler pipeline
#   - batch.py       Batch lifecycle and decode error mapping
#   - modes.py       Generation/embedding mode switching
#   - scheduling.py  FIFO operation queue

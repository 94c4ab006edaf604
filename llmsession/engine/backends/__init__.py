from .base import BaseBackend
from .transformers import TransformersBackend

__all__ = ["BaseBackend", "TransformersBackend"]

"""
Exception taxonomy for the inference engine.

Every failure the engine can surface to a host derives from EngineError, so a
host boundary can catch one type and still tell the cases apart:

  IoTruncated          weight stream ended before a declared tensor was read
  UnsupportedDtype     unknown or unsupported quantization code
  ArchitectureMismatch tensor shape disagrees with the header-derived config
  NumericBackendError  anything that fails inside forward() or sampling
  CacheOverflow        the KV cache would grow past seq_len
  TokenizerError       encode/decode failure from the tokenizer collaborator
  ModelNotFound        the dispatcher has no family for a model identifier

Load-time errors abort before generation starts. Errors raised while a
sequence is running end that sequence; tokens already delivered stay
delivered.

Cancellation is NOT an error. A cancelled stream simply closes, and its end
reason (see chat_engine.stream.StreamEnd) tells it apart from a natural finish.
"""


class EngineError(Exception):
    """Base class for all engine failures."""


class IoTruncated(EngineError):
    """The weight stream ended before a declared tensor was fully read."""


class UnsupportedDtype(EngineError):
    """A tensor uses a quantization code this engine cannot decode."""


class ArchitectureMismatch(EngineError):
    """A tensor's shape is inconsistent with the model configuration."""


class NumericBackendError(EngineError):
    """A failure inside the forward pass or the sampler."""


class CacheOverflow(NumericBackendError):
    """Writing to the KV cache would exceed the model's context length."""


class TokenizerError(EngineError):
    """Surfaced from the tokenizer; never recovered."""


class ModelNotFound(EngineError):
    """No registered model family matches the requested identifier."""

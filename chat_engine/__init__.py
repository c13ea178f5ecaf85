"""
chat-engine: local quantized-transformer inference for a chat host.

Loads a quantized (GGUF) or legacy llama2.c weight file, runs an
autoregressive forward pass with a per-request KV cache, samples tokens and
exposes them as a cancellable async stream.

Key modules:
  - config:    ModelConfig, GenerationRequest, EngineConfig
  - errors:    Engine error taxonomy
  - quant:     GGML block (de)quantization
  - weights:   GGUF and legacy weight readers/writers -> WeightMap
  - cache:     KV cache and causal mask cache
  - model:     LlamaModel and PhiModel forward passes
  - sampler:   Temperature / top-k / top-p / repetition-penalty sampling
  - tokenizer: SentencePiece and Hugging Face tokenizer wrappers
  - generate:  Generation driver state machine
  - pipeline:  Model families, dispatcher, Pipeline
  - stream:    Worker thread -> asyncio bridge with cancellation
  - utils:     Logging, timing, device and size helpers
"""

__version__ = "0.1.0"

"""
Model families and the dispatcher.

A family is a registry entry: which model ids it answers to, where its
weight and tokenizer files live on the Hugging Face Hub, and which stop
heuristic its iterator uses. Loading and iteration are shared:

  load(model_id, prompt, request, engine_config)
      resolve_family(model_id)       exact id, then longest prefix
      fetch weights + tokenizer      hf_hub_download, or local overrides
      build_model                    LlamaModel / PhiModel from the WeightMap
      encode prompt
    -> Pipeline

  Pipeline.iter() -> GenerationDriver (fresh cache, fresh sampler)

FAMILIES:
  quantized-llama       GGUF llama-2 chat weights, llama tokenizer.json
  tiny-llama-C-format   legacy llama2.c dump (stories15M.bin)
  quantized-phi         GGUF phi-2 weights, phi tokenizer.json

Unknown ids raise ModelNotFound; routing them to a hosted API is the
host's business.
"""

import logging
from dataclasses import dataclass, field
from typing import Callable, Optional

from huggingface_hub import hf_hub_download

from chat_engine.cache import KVCache
from chat_engine.config import EngineConfig, GenerationRequest
from chat_engine.errors import ModelNotFound
from chat_engine.generate import (
    EosHeuristic,
    GenerationDriver,
    NewlineRunHeuristic,
    StopHeuristic,
)
from chat_engine.model import build_model
from chat_engine.tokenizer import load_tokenizer
from chat_engine.weights import load_weights

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class HubFile:
    repo_id: str
    filename: str
    revision: Optional[str] = None


def _eos_stop(tokenizer) -> StopHeuristic:
    return EosHeuristic(tokenizer.eos_id)


def _newline_stop(tokenizer) -> StopHeuristic:
    return NewlineRunHeuristic()


@dataclass(frozen=True)
class ModelFamily:
    name: str
    prefixes: tuple
    weights: HubFile
    tokenizer: HubFile
    # tokenizer -> fresh heuristic for one sequence
    stop_heuristic: Callable = field(default=_eos_stop)
    # Model ids matched exactly before any prefix matching.
    model_ids: tuple = ()


LLAMA_TOKENIZER = HubFile("hf-internal-testing/llama-tokenizer", "tokenizer.json")

FAMILIES = (
    ModelFamily(
        name="quantized-llama",
        prefixes=("meta-llama/Llama-2", "TheBloke/Llama-2"),
        weights=HubFile("TheBloke/Llama-2-7B-Chat-GGUF", "llama-2-7b-chat.Q4_0.gguf"),
        tokenizer=LLAMA_TOKENIZER,
        model_ids=("meta-llama/Llama-2-7b-chat-hf",),
    ),
    ModelFamily(
        name="tiny-llama-C-format",
        prefixes=("karpathy/tinyllamas",),
        weights=HubFile("karpathy/tinyllamas", "stories15M.bin"),
        tokenizer=LLAMA_TOKENIZER,
        model_ids=("karpathy/tinyllamas",),
    ),
    ModelFamily(
        name="quantized-phi",
        prefixes=("microsoft/phi", "lmz/candle-quantized-phi", "TheBloke/phi"),
        weights=HubFile("TheBloke/phi-2-GGUF", "phi-2.Q4_K_M.gguf"),
        tokenizer=HubFile("microsoft/phi-2", "tokenizer.json"),
        stop_heuristic=_newline_stop,
    ),
)


def resolve_family(model_id: str, families=FAMILIES) -> ModelFamily:
    """
    Pick the family serving model_id.

    Exact ids win; otherwise the family with the longest matching prefix.

    Raises:
        ModelNotFound: No family matches.
    """
    for family in families:
        if model_id in family.model_ids or model_id == family.name:
            return family
    best, best_len = None, -1
    for family in families:
        for prefix in family.prefixes:
            if model_id.startswith(prefix) and len(prefix) > best_len:
                best, best_len = family, len(prefix)
    if best is None:
        raise ModelNotFound(f"no local model family for {model_id!r}")
    return best


def _fetch(hub_file: HubFile, override: Optional[str], cache_dir: Optional[str]) -> str:
    if override:
        return override
    logger.info("fetching %s from %s", hub_file.filename, hub_file.repo_id)
    return hf_hub_download(
        repo_id=hub_file.repo_id,
        filename=hub_file.filename,
        revision=hub_file.revision,
        cache_dir=cache_dir,
    )


class Pipeline:
    """
    A loaded model plus an encoded prompt, ready to iterate.

    The model, tokenizer and weights are read-only and may be shared; every
    iter() gets its own cache and sampler.
    """

    def __init__(
        self,
        model,
        tokenizer,
        prompt: str,
        request: GenerationRequest,
        family: Optional[ModelFamily] = None,
    ):
        request.validate()
        self.model = model
        self.tokenizer = tokenizer
        self.request = request
        self.family = family
        self.prompt = prompt
        self.prompt_tokens = tokenizer.encode(prompt, bos=True, eos=False)
        self.cache: Optional[KVCache] = None

    @property
    def config(self):
        return self.model.config

    def _heuristic(self) -> StopHeuristic:
        if self.family is None:
            return EosHeuristic(self.tokenizer.eos_id)
        return self.family.stop_heuristic(self.tokenizer)

    def iter(self) -> GenerationDriver:
        self.cache = self.model.new_cache()
        return GenerationDriver(
            self.model,
            self.tokenizer,
            self.prompt_tokens,
            self.request,
            heuristic=self._heuristic(),
            cache=self.cache,
        )

    def reset(self, prompt: Optional[str] = None) -> None:
        """
        Clear the last driver's cache and optionally swap the prompt, so
        the pipeline can serve the next turn of a conversation.
        """
        if self.cache is not None:
            self.cache.reset()
        if prompt is not None:
            self.prompt = prompt
            self.prompt_tokens = self.tokenizer.encode(prompt, bos=True, eos=False)


def load(
    model_id: str,
    prompt: str,
    request: Optional[GenerationRequest] = None,
    engine_config: Optional[EngineConfig] = None,
) -> Pipeline:
    """
    Resolve, fetch and build everything one request needs.

    Raises:
        ModelNotFound, IoTruncated, UnsupportedDtype, ArchitectureMismatch,
        TokenizerError: before any token is generated.
    """
    request = request or GenerationRequest()
    engine_config = engine_config or EngineConfig()
    family = resolve_family(model_id)
    logger.info("model %s -> family %s", model_id, family.name)

    weights_path = _fetch(family.weights, engine_config.weights_path, engine_config.cache_dir)
    tokenizer_path = _fetch(
        family.tokenizer, engine_config.tokenizer_path, engine_config.cache_dir
    )

    config, weights = load_weights(weights_path)
    model = build_model(config, weights, device=engine_config.device)
    tokenizer = load_tokenizer(tokenizer_path)
    return Pipeline(model, tokenizer, prompt, request, family=family)

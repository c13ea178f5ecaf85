"""
Interactive text generation CLI.

USAGE:
    # Interactive mode, model files fetched from the Hugging Face Hub
    python scripts/generate_text.py --model-id karpathy/tinyllamas

    # Single prompt from local files
    python scripts/generate_text.py --model-id karpathy/tinyllamas \
        --weights stories15M.bin --tokenizer tokenizer.json \
        --prompt "Once upon a time"

    # Stream tokens as they are produced (through the async bridge)
    python scripts/generate_text.py --model-id TheBloke/Llama-2-7B-Chat-GGUF \
        --prompt "User: hello\nAssistant:" --stop "User:" --stream

WHAT THIS SCRIPT DOES:
    1. Resolves the model id to a family and loads its weights + tokenizer
    2. Generates a continuation for the prompt (or each typed prompt)
    3. Prints the text with timing information
"""

import os
import sys
import argparse
import asyncio
import logging

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from chat_engine.config import EngineConfig, GenerationRequest
from chat_engine.errors import EngineError
from chat_engine.generate import generate
from chat_engine.pipeline import load
from chat_engine.stream import StreamEnd, StreamSession
from chat_engine.utils import Timer, setup_logging

logger = logging.getLogger("chat_engine.cli")


def load_pipeline(model_id, prompt, request, engine_config):
    with Timer("load") as t:
        pipeline = load(model_id, prompt, request, engine_config)
    logger.info("%s (%s, %d prompt tokens)", t, pipeline.family.name, len(pipeline.prompt_tokens))
    return pipeline


def build_request(args: argparse.Namespace) -> GenerationRequest:
    request = GenerationRequest(
        temperature=args.temperature,
        top_p=args.top_p,
        top_k=args.top_k,
        seed=args.seed,
        repetition_penalty=args.repetition_penalty,
        repeat_last_n=args.repeat_last_n,
        max_new_tokens=args.max_new_tokens,
        stop=list(args.stop or []),
    )
    request.validate()
    return request


async def stream_once(pipeline, session: StreamSession) -> None:
    """Print tokens as they arrive; Ctrl-C cancels the run."""
    async with session.start(pipeline) as stream:
        try:
            async for generation in stream:
                print(generation.text, end="", flush=True)
        except (KeyboardInterrupt, asyncio.CancelledError):
            stream.cancel()
    if stream.end_reason is StreamEnd.CANCELLED:
        print("\n--- cancelled ---")
    else:
        print(f"\n--- {stream.emitted} tokens ---")


def run_prompt(pipeline, prompt: str, args, session) -> None:
    if args.stream:
        asyncio.run(stream_once(pipeline, session))
        return
    result = generate(pipeline)
    print(f"\n{prompt}{result.text}")
    print(f"\n{result.stats_string()}\n")


def interactive_loop(args, request, engine_config) -> None:
    """Run an interactive generation loop."""
    print("\n" + "=" * 60)
    print(f"Interactive Text Generation ({args.model_id})")
    print("=" * 60)
    print(f"Temperature: {request.temperature}")
    print(f"Top-k: {request.top_k}")
    print(f"Top-p: {request.top_p}")
    print(f"Max new tokens: {request.max_new_tokens}")
    print("\nType a prompt and press Enter. Type 'quit' to exit.")
    print("Type 'settings' to see generation parameters.")
    print("=" * 60 + "\n")

    session = StreamSession(engine_config)
    # Loaded on the first prompt, then reused with a cleared cache.
    pipeline = None
    while True:
        try:
            prompt = input(">>> ").strip()
        except (EOFError, KeyboardInterrupt):
            print("\nGoodbye!")
            break

        if not prompt:
            continue
        if prompt.lower() == "quit":
            print("Goodbye!")
            break
        if prompt.lower() == "settings":
            for key, value in request.to_dict().items():
                print(f"  {key}: {value}")
            continue

        try:
            if pipeline is None:
                pipeline = load_pipeline(args.model_id, prompt, request, engine_config)
            else:
                pipeline.reset(prompt)
            run_prompt(pipeline, prompt, args, session)
        except EngineError as e:
            logger.error("%s: %s", type(e).__name__, e)


def main():
    parser = argparse.ArgumentParser(
        description="Generate text with a local quantized model",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )

    parser.add_argument(
        "--model-id", type=str, default="karpathy/tinyllamas",
        help="Model identifier, resolved against the family registry"
    )
    parser.add_argument(
        "--weights", type=str, default=None,
        help="Local weight file (skips the hub download)"
    )
    parser.add_argument(
        "--tokenizer", type=str, default=None,
        help="Local tokenizer file, .json or .model (skips the hub download)"
    )
    parser.add_argument(
        "--cache-dir", type=str, default=None,
        help="Download cache directory"
    )
    parser.add_argument(
        "--device", type=str, default="cpu",
        help="cpu, cuda, mps or auto"
    )
    parser.add_argument(
        "--prompt", type=str, default=None,
        help="Single prompt to generate from (if not provided, enters interactive mode)"
    )
    parser.add_argument(
        "--max-new-tokens", type=int, default=200,
        help="Maximum number of tokens to generate"
    )
    parser.add_argument(
        "--temperature", type=float, default=0.9,
        help="Sampling temperature (0=greedy)"
    )
    parser.add_argument(
        "--top-k", type=int, default=0,
        help="Top-k sampling (0=disabled)"
    )
    parser.add_argument(
        "--top-p", type=float, default=0.95,
        help="Top-p (nucleus) sampling threshold"
    )
    parser.add_argument(
        "--seed", type=int, default=0,
        help="Sampler seed"
    )
    parser.add_argument(
        "--repetition-penalty", type=float, default=1.0,
        help="Penalty for recently generated tokens (1.0=disabled)"
    )
    parser.add_argument(
        "--repeat-last-n", type=int, default=64,
        help="Window for the repetition penalty"
    )
    parser.add_argument(
        "--stop", type=str, action="append", default=None,
        help="Stop string (repeatable)"
    )
    parser.add_argument(
        "--stream", action="store_true",
        help="Print tokens as they are generated"
    )
    parser.add_argument(
        "--log-dir", type=str, default=None,
        help="Also write logs to this directory"
    )
    parser.add_argument(
        "--verbose", action="store_true",
        help="Debug logging"
    )

    args = parser.parse_args()
    setup_logging(logging.DEBUG if args.verbose else logging.INFO, args.log_dir)

    request = build_request(args)
    engine_config = EngineConfig(
        cache_dir=args.cache_dir,
        device=args.device,
        weights_path=args.weights,
        tokenizer_path=args.tokenizer,
    )

    if args.prompt:
        try:
            pipeline = load_pipeline(args.model_id, args.prompt, request, engine_config)
            run_prompt(pipeline, args.prompt, args, StreamSession(engine_config))
        except EngineError as e:
            logger.error("%s: %s", type(e).__name__, e)
            sys.exit(1)
    else:
        interactive_loop(args, request, engine_config)


if __name__ == "__main__":
    main()

"""
Print the configuration and tensor index of a weight file.

USAGE:
    python scripts/inspect_weights.py stories15M.bin
    python scripts/inspect_weights.py llama-2-7b-chat.Q4_0.gguf --metadata

GGUF files are inspected from their index alone (no tensor data is read).
Legacy llama2.c dumps have no index, so the whole file is loaded.
"""

import os
import sys
import argparse

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from chat_engine.errors import EngineError
from chat_engine.quant import dtype_name
from chat_engine.utils import format_size
from chat_engine.weights import (
    GGUF_MAGIC,
    config_from_metadata,
    read_gguf_index,
    read_legacy,
)


def inspect_gguf(path: str, show_metadata: bool) -> None:
    with open(path, "rb") as f:
        index = read_gguf_index(f)

    by_name = {t.name: t for t in index.tensors}
    embedding = by_name.get("token_embd.weight")
    vocab_size = embedding.shape[0] if embedding is not None else 0
    config = config_from_metadata(index.metadata, vocab_size, "output.weight" in by_name)

    print(f"GGUF v{index.version}, {len(index.tensors)} tensors, "
          f"alignment {index.alignment}")
    print(f"Config: {config}")

    if show_metadata:
        print("\nMetadata:")
        for key, value in index.metadata.items():
            if isinstance(value, list) and len(value) > 8:
                value = f"[{len(value)} items]"
            print(f"  {key} = {value}")

    print("\nTensors:")
    total = 0
    for t in index.tensors:
        total += t.nbytes
        print(f"  {t.name:<32} {dtype_name(t.dtype):<5} {str(t.shape):<20} "
              f"{format_size(t.nbytes)}")
    print(f"\nTotal: {format_size(total)}")


def inspect_legacy(path: str) -> None:
    with open(path, "rb") as f:
        config, weights = read_legacy(f)
    print(f"Legacy dump, {len(weights)} tensors")
    print(f"Config: {config}")
    print("\nTensors:")
    for name, tensor in weights.items():
        print(f"  {name:<32} {str(tuple(tensor.shape)):<20} "
              f"{format_size(tensor.numel() * 4)}")
    print(f"\nTotal: {format_size(weights.source_bytes)}")


def main():
    parser = argparse.ArgumentParser(description="Inspect a weight file")
    parser.add_argument("path", type=str, help="GGUF or legacy .bin file")
    parser.add_argument(
        "--metadata", action="store_true",
        help="Also print GGUF metadata"
    )
    args = parser.parse_args()

    with open(args.path, "rb") as f:
        magic = f.read(4)
    try:
        if magic == GGUF_MAGIC:
            inspect_gguf(args.path, args.metadata)
        else:
            inspect_legacy(args.path)
    except EngineError as e:
        print(f"{type(e).__name__}: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()

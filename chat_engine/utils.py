"""
Cross-cutting helpers: sizes, timing, device selection and logging.

Everything here is small on purpose. Modules log through the standard
library's logging (one `logger = logging.getLogger(__name__)` each);
setup_logging() is what the command-line tools call to make those records
visible on the console and, optionally, in a log file.
"""

import logging
import os
import time
from datetime import datetime
from typing import Optional

import torch


# ═══════════════════════════════════════════════════════════════════════════
# SIZES
# ═══════════════════════════════════════════════════════════════════════════

def format_size(size_in_bytes: int) -> str:
    """
    Human-readable size with decimal units.

      999       -> "999B"
      1_500     -> "1.50KB"
      2_000_000 -> "2.00MB"
    """
    if size_in_bytes < 1_000:
        return f"{size_in_bytes}B"
    elif size_in_bytes < 1_000_000:
        return f"{size_in_bytes / 1e3:.2f}KB"
    elif size_in_bytes < 1_000_000_000:
        return f"{size_in_bytes / 1e6:.2f}MB"
    else:
        return f"{size_in_bytes / 1e9:.2f}GB"


# ═══════════════════════════════════════════════════════════════════════════
# DEVICE
# ═══════════════════════════════════════════════════════════════════════════

def resolve_device(requested: str = "auto") -> torch.device:
    """
    Turn a device string into a torch.device.

    "auto" prefers CUDA, then Apple MPS, then CPU. Anything else is passed
    through to torch.device unchanged ("cpu", "cuda:1", ...).
    """
    if requested != "auto":
        return torch.device(requested)
    if torch.cuda.is_available():
        return torch.device("cuda")
    if hasattr(torch.backends, "mps") and torch.backends.mps.is_available():
        return torch.device("mps")
    return torch.device("cpu")


# ═══════════════════════════════════════════════════════════════════════════
# TIMING
# ═══════════════════════════════════════════════════════════════════════════

class Timer:
    """
    Context manager for timing code blocks.

    Usage:
        with Timer("prefill", device) as t:
            logits = model(tokens, 0, cache)
        logger.info("%s", t)   # "prefill: 0.0234s"

    CUDA work is asynchronous, so the device is synchronized on entry and
    exit when it is a CUDA device.
    """

    def __init__(self, name: str = "Block", device: Optional[torch.device] = None):
        self.name = name
        self.device = device
        self.elapsed: float = 0.0

    def __enter__(self):
        if self.device is not None and self.device.type == "cuda":
            torch.cuda.synchronize(self.device)
        self.start = time.perf_counter()
        return self

    def __exit__(self, *args):
        if self.device is not None and self.device.type == "cuda":
            torch.cuda.synchronize(self.device)
        self.elapsed = time.perf_counter() - self.start

    @property
    def elapsed_ms(self) -> float:
        return self.elapsed * 1000

    def __str__(self):
        return f"{self.name}: {self.elapsed:.4f}s"


# ═══════════════════════════════════════════════════════════════════════════
# LOGGING
# ═══════════════════════════════════════════════════════════════════════════

LOG_FORMAT = "[%(levelname)s] %(name)s: %(message)s"


def setup_logging(level: int = logging.INFO, log_dir: Optional[str] = None) -> Optional[str]:
    """
    Route chat_engine log records to the console and an optional file.

    Args:
        level: Threshold for the chat_engine logger.
        log_dir: If given, also write to <log_dir>/engine_<timestamp>.log.

    Returns:
        Path of the log file, or None.
    """
    root = logging.getLogger("chat_engine")
    root.setLevel(level)
    for handler in list(root.handlers):
        root.removeHandler(handler)

    console = logging.StreamHandler()
    console.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(console)

    log_path = None
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        log_path = os.path.join(log_dir, f"engine_{timestamp}.log")
        file_handler = logging.FileHandler(log_path)
        file_handler.setFormatter(logging.Formatter("%(asctime)s " + LOG_FORMAT))
        root.addHandler(file_handler)
        root.info("Logging to: %s", log_path)
    return log_path

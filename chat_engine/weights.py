"""
Weight loading: binary container -> (ModelConfig, WeightMap).

Two on-disk shapes are understood.

LEGACY FIXED-ORDER DUMP (llama2.c "stories" checkpoints):
  Header: 7 little-endian int32
    dim, hidden_dim, n_layers, n_heads, n_kv_heads, vocab_size, seq_len
  Then raw row-major float32 tensors, layers stacked on the first axis:
    token embedding      (vocab_size, dim)
    attention norms      (n_layers, dim)
    wq                   (n_layers, dim, dim)
    wk, wv               (n_layers, kv_dim, dim)
    wo                   (n_layers, dim, dim)
    ffn norms            (n_layers, dim)
    w1 (gate)            (n_layers, hidden_dim, dim)
    w2 (down)            (n_layers, dim, hidden_dim)
    w3 (up)              (n_layers, hidden_dim, dim)
    final norm           (dim,)
    rotary cos table     (seq_len, head_dim / 2)
    rotary sin table     (seq_len, head_dim / 2)
    [classifier          (vocab_size, dim)]  only when vocab_size < 0

  A negative vocab_size in the header is the llama2.c convention for "the
  classifier is not tied to the embedding and follows the rotary tables".

GGUF TAGGED CONTAINER (llama.cpp):
  magic "GGUF", version, tensor count, metadata count
  metadata: key -> typed value (architecture hyperparameters live here)
  tensor index: name -> (dims, ggml dtype, offset into the data section)
  padding to general.alignment, then the data section

Both paths produce tensors under the same logical names, so the model code
does not care which file it came from:

  token_embd.weight, output_norm.weight, output.weight,
  blk.{i}.attn_norm.weight, blk.{i}.attn_q.weight, ... (see expected_shapes)

Every tensor is dequantized to float32 at load time (see chat_engine.quant).
"""

import logging
import struct
import time
from collections.abc import Mapping
from dataclasses import dataclass
from typing import BinaryIO, Iterator, Optional

import numpy as np
import torch

from chat_engine.config import ModelConfig
from chat_engine.errors import ArchitectureMismatch, IoTruncated, UnsupportedDtype
from chat_engine.quant import GGML_TYPE_F32, dequantize, dtype_name, tensor_nbytes
from chat_engine.utils import format_size

logger = logging.getLogger(__name__)

GGUF_MAGIC = b"GGUF"
GGUF_DEFAULT_ALIGNMENT = 32

# GGUF metadata value types
GGUF_TYPE_UINT8 = 0
GGUF_TYPE_INT8 = 1
GGUF_TYPE_UINT16 = 2
GGUF_TYPE_INT16 = 3
GGUF_TYPE_UINT32 = 4
GGUF_TYPE_INT32 = 5
GGUF_TYPE_FLOAT32 = 6
GGUF_TYPE_BOOL = 7
GGUF_TYPE_STRING = 8
GGUF_TYPE_ARRAY = 9
GGUF_TYPE_UINT64 = 10
GGUF_TYPE_INT64 = 11
GGUF_TYPE_FLOAT64 = 12

_SCALAR_FORMATS = {
    GGUF_TYPE_UINT8: "<B",
    GGUF_TYPE_INT8: "<b",
    GGUF_TYPE_UINT16: "<H",
    GGUF_TYPE_INT16: "<h",
    GGUF_TYPE_UINT32: "<I",
    GGUF_TYPE_INT32: "<i",
    GGUF_TYPE_FLOAT32: "<f",
    GGUF_TYPE_BOOL: "<?",
    GGUF_TYPE_UINT64: "<Q",
    GGUF_TYPE_INT64: "<q",
    GGUF_TYPE_FLOAT64: "<d",
}

# GGUF architecture name -> ModelConfig.arch
_ARCHES = {"llama": "llama", "phi2": "phi"}


class WeightMap(Mapping):
    """
    Read-only map of logical tensor name -> float32 tensor.

    Built once per load. Nothing in the engine mutates the tensors, so one
    WeightMap may back several concurrent generation requests.
    """

    def __init__(self, tensors: dict, source_bytes: int = 0,
                 dtypes: Optional[dict] = None):
        self._tensors = dict(tensors)
        # Size of the tensors as stored (before dequantization).
        self.source_bytes = source_bytes
        # name -> storage dtype name, for inspection
        self.dtypes = dict(dtypes or {})

    def __getitem__(self, name: str) -> torch.Tensor:
        return self._tensors[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._tensors)

    def __len__(self) -> int:
        return len(self._tensors)

    def __repr__(self) -> str:
        return f"WeightMap({len(self)} tensors, {format_size(self.source_bytes)})"


# ═══════════════════════════════════════════════════════════════════════════
# Expected tensor layout per architecture
# ═══════════════════════════════════════════════════════════════════════════

def expected_shapes(config: ModelConfig) -> dict:
    """
    Logical name -> shape for every tensor the model needs.

    Linear weights use the (out_features, in_features) convention of
    torch.nn.Linear.
    """
    c = config
    shapes = {
        "token_embd.weight": (c.vocab_size, c.dim),
        "output_norm.weight": (c.dim,),
    }
    if not c.shared_classifier:
        shapes["output.weight"] = (c.vocab_size, c.dim)

    for i in range(c.n_layers):
        p = f"blk.{i}."
        if c.arch == "llama":
            shapes.update({
                p + "attn_norm.weight": (c.dim,),
                p + "attn_q.weight": (c.dim, c.dim),
                p + "attn_k.weight": (c.kv_dim, c.dim),
                p + "attn_v.weight": (c.kv_dim, c.dim),
                p + "attn_output.weight": (c.dim, c.dim),
                p + "ffn_norm.weight": (c.dim,),
                p + "ffn_gate.weight": (c.hidden_dim, c.dim),
                p + "ffn_up.weight": (c.hidden_dim, c.dim),
                p + "ffn_down.weight": (c.dim, c.hidden_dim),
            })
        else:
            qkv = c.dim + 2 * c.kv_dim
            shapes.update({
                p + "attn_norm.weight": (c.dim,),
                p + "attn_norm.bias": (c.dim,),
                p + "attn_qkv.weight": (qkv, c.dim),
                p + "attn_qkv.bias": (qkv,),
                p + "attn_output.weight": (c.dim, c.dim),
                p + "attn_output.bias": (c.dim,),
                p + "ffn_up.weight": (c.hidden_dim, c.dim),
                p + "ffn_up.bias": (c.hidden_dim,),
                p + "ffn_down.weight": (c.dim, c.hidden_dim),
                p + "ffn_down.bias": (c.dim,),
            })

    if c.arch == "phi":
        shapes["output_norm.bias"] = (c.dim,)
        shapes["output.bias"] = (c.vocab_size,)
    return shapes


def check_shapes(config: ModelConfig, tensors: Mapping) -> None:
    """
    Raises:
        ArchitectureMismatch: A required tensor is missing or has a shape
            that disagrees with the config.
    """
    for name, shape in expected_shapes(config).items():
        if name not in tensors:
            raise ArchitectureMismatch(f"missing tensor {name}")
        actual = tuple(tensors[name].shape)
        if actual != tuple(shape):
            raise ArchitectureMismatch(
                f"tensor {name} has shape {actual}, config expects {tuple(shape)}"
            )


# ═══════════════════════════════════════════════════════════════════════════
# Stream helpers
# ═══════════════════════════════════════════════════════════════════════════

def _read_exact(stream: BinaryIO, n: int, what: str) -> bytes:
    data = stream.read(n)
    if data is None or len(data) < n:
        got = 0 if data is None else len(data)
        raise IoTruncated(f"stream ended while reading {what}: wanted {n} bytes, got {got}")
    return data


def _read_struct(stream: BinaryIO, fmt: str, what: str):
    return struct.unpack(fmt, _read_exact(stream, struct.calcsize(fmt), what))[0]


def _read_f32(stream: BinaryIO, shape: tuple, what: str) -> np.ndarray:
    n = int(np.prod(shape))
    raw = _read_exact(stream, n * 4, what)
    return np.frombuffer(raw, dtype="<f4").astype(np.float32).reshape(shape)


def _to_torch(array: np.ndarray) -> torch.Tensor:
    return torch.from_numpy(np.ascontiguousarray(array, dtype=np.float32))


# ═══════════════════════════════════════════════════════════════════════════
# Legacy fixed-order dump
# ═══════════════════════════════════════════════════════════════════════════

def read_legacy_header(stream: BinaryIO) -> ModelConfig:
    """Parse the 7-int header. Sets shared_classifier from the vocab sign."""
    fields = struct.unpack("<7i", _read_exact(stream, 28, "legacy header"))
    dim, hidden_dim, n_layers, n_heads, n_kv_heads, vocab_size, seq_len = fields
    config = ModelConfig(
        dim=dim,
        hidden_dim=hidden_dim,
        n_layers=n_layers,
        n_heads=n_heads,
        n_kv_heads=n_kv_heads,
        vocab_size=abs(vocab_size),
        seq_len=seq_len,
        shared_classifier=vocab_size > 0,
    )
    config.validate()
    return config


def read_legacy(stream: BinaryIO) -> tuple:
    """
    Read a legacy fixed-order dump.

    Returns:
        (ModelConfig, WeightMap). The map also holds "rope.cos" and
        "rope.sin", the file's own rotary tables of shape
        (seq_len, head_dim // 2).

    Raises:
        IoTruncated: The stream ends before the last declared tensor.
        ArchitectureMismatch: The header is inconsistent.
    """
    c = read_legacy_header(stream)
    L, kv = c.n_layers, c.kv_dim

    emb = _read_f32(stream, (c.vocab_size, c.dim), "token embedding")
    rms_att = _read_f32(stream, (L, c.dim), "attention norms")
    wq = _read_f32(stream, (L, c.dim, c.dim), "wq")
    wk = _read_f32(stream, (L, kv, c.dim), "wk")
    wv = _read_f32(stream, (L, kv, c.dim), "wv")
    wo = _read_f32(stream, (L, c.dim, c.dim), "wo")
    rms_ffn = _read_f32(stream, (L, c.dim), "ffn norms")
    w1 = _read_f32(stream, (L, c.hidden_dim, c.dim), "w1")
    w2 = _read_f32(stream, (L, c.dim, c.hidden_dim), "w2")
    w3 = _read_f32(stream, (L, c.hidden_dim, c.dim), "w3")
    rms_final = _read_f32(stream, (c.dim,), "final norm")
    half = c.head_dim // 2
    freq_real = _read_f32(stream, (c.seq_len, half), "rotary cos table")
    freq_imag = _read_f32(stream, (c.seq_len, half), "rotary sin table")

    tensors = {
        "token_embd.weight": emb,
        "output_norm.weight": rms_final,
        "rope.cos": freq_real,
        "rope.sin": freq_imag,
    }
    if not c.shared_classifier:
        tensors["output.weight"] = _read_f32(stream, (c.vocab_size, c.dim), "classifier")

    for i in range(L):
        p = f"blk.{i}."
        tensors[p + "attn_norm.weight"] = rms_att[i]
        tensors[p + "attn_q.weight"] = wq[i]
        tensors[p + "attn_k.weight"] = wk[i]
        tensors[p + "attn_v.weight"] = wv[i]
        tensors[p + "attn_output.weight"] = wo[i]
        tensors[p + "ffn_norm.weight"] = rms_ffn[i]
        tensors[p + "ffn_gate.weight"] = w1[i]
        tensors[p + "ffn_down.weight"] = w2[i]
        tensors[p + "ffn_up.weight"] = w3[i]

    torch_tensors = {name: _to_torch(t) for name, t in tensors.items()}
    check_shapes(c, torch_tensors)
    total = sum(t.size for t in tensors.values()) * 4
    return c, WeightMap(torch_tensors, source_bytes=total,
                        dtypes={name: "F32" for name in tensors})


def write_legacy(stream: BinaryIO, config: ModelConfig, weights: Mapping) -> None:
    """
    Write tensors in legacy order. Inverse of read_legacy.

    weights needs the logical names from expected_shapes plus "rope.cos"
    and "rope.sin".
    """
    c = config
    vocab = c.vocab_size if c.shared_classifier else -c.vocab_size
    stream.write(struct.pack(
        "<7i", c.dim, c.hidden_dim, c.n_layers, c.n_heads, c.n_kv_heads, vocab, c.seq_len
    ))

    def put(name):
        t = weights[name]
        arr = t.detach().cpu().numpy() if isinstance(t, torch.Tensor) else np.asarray(t)
        stream.write(np.ascontiguousarray(arr, dtype="<f4").tobytes())

    put("token_embd.weight")
    for suffix in ("attn_norm", "attn_q", "attn_k", "attn_v", "attn_output",
                   "ffn_norm", "ffn_gate", "ffn_down", "ffn_up"):
        for i in range(c.n_layers):
            put(f"blk.{i}.{suffix}.weight")
    put("output_norm.weight")
    put("rope.cos")
    put("rope.sin")
    if not c.shared_classifier:
        put("output.weight")


# ═══════════════════════════════════════════════════════════════════════════
# GGUF container
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class TensorInfo:
    """One entry of a GGUF tensor index."""
    name: str
    shape: tuple     # row-major (reversed ggml dims)
    dtype: int       # ggml type code
    offset: int      # relative to the start of the data section

    @property
    def n_elements(self) -> int:
        return int(np.prod(self.shape)) if self.shape else 1

    @property
    def nbytes(self) -> int:
        return tensor_nbytes(self.dtype, self.n_elements)


@dataclass
class GGUFIndex:
    version: int
    metadata: dict
    tensors: list

    @property
    def alignment(self) -> int:
        return int(self.metadata.get("general.alignment", GGUF_DEFAULT_ALIGNMENT))


def _read_string(stream: BinaryIO) -> str:
    n = _read_struct(stream, "<Q", "string length")
    return _read_exact(stream, n, "string").decode("utf-8")


def _read_value(stream: BinaryIO, vtype: int):
    if vtype == GGUF_TYPE_STRING:
        return _read_string(stream)
    if vtype == GGUF_TYPE_ARRAY:
        item_type = _read_struct(stream, "<I", "array type")
        count = _read_struct(stream, "<Q", "array length")
        return [_read_value(stream, item_type) for _ in range(count)]
    if vtype not in _SCALAR_FORMATS:
        raise UnsupportedDtype(f"unknown GGUF metadata value type {vtype}")
    return _read_struct(stream, _SCALAR_FORMATS[vtype], "metadata value")


def read_gguf_index(stream: BinaryIO) -> GGUFIndex:
    """
    Parse everything up to (not including) the data section.

    On return the stream is positioned just after the tensor index; the
    caller still has to skip the alignment padding.
    """
    magic = _read_exact(stream, 4, "magic")
    if magic != GGUF_MAGIC:
        raise ArchitectureMismatch(f"not a GGUF container (magic {magic!r})")
    version = _read_struct(stream, "<I", "version")
    if version not in (2, 3):
        raise UnsupportedDtype(f"unsupported GGUF version {version}")
    n_tensors = _read_struct(stream, "<Q", "tensor count")
    n_kv = _read_struct(stream, "<Q", "metadata count")

    metadata = {}
    for _ in range(n_kv):
        key = _read_string(stream)
        vtype = _read_struct(stream, "<I", "value type")
        metadata[key] = _read_value(stream, vtype)

    tensors = []
    for _ in range(n_tensors):
        name = _read_string(stream)
        n_dims = _read_struct(stream, "<I", "tensor rank")
        dims = struct.unpack(f"<{n_dims}Q", _read_exact(stream, 8 * n_dims, "tensor dims"))
        dtype = _read_struct(stream, "<I", "tensor dtype")
        offset = _read_struct(stream, "<Q", "tensor offset")
        tensors.append(TensorInfo(name, tuple(reversed(dims)), dtype, offset))

    return GGUFIndex(version=version, metadata=metadata, tensors=tensors)


def config_from_metadata(metadata: dict, vocab_size: int, has_output: bool) -> ModelConfig:
    """Translate "<arch>.*" GGUF metadata into a ModelConfig."""
    gguf_arch = metadata.get("general.architecture", "llama")
    if gguf_arch not in _ARCHES:
        raise ArchitectureMismatch(f"unsupported architecture {gguf_arch!r}")
    arch = _ARCHES[gguf_arch]

    def get(key, default=None):
        full = f"{gguf_arch}.{key}"
        if full not in metadata:
            if default is None:
                raise ArchitectureMismatch(f"missing metadata key {full}")
            return default
        return metadata[full]

    n_heads = int(get("attention.head_count"))
    if arch == "llama":
        eps = float(get("attention.layer_norm_rms_epsilon", 1e-5))
        rotary_dim = None
    else:
        eps = float(get("attention.layer_norm_epsilon", 1e-5))
        rotary_dim = int(get("rope.dimension_count"))

    config = ModelConfig(
        dim=int(get("embedding_length")),
        hidden_dim=int(get("feed_forward_length")),
        n_layers=int(get("block_count")),
        n_heads=n_heads,
        n_kv_heads=int(get("attention.head_count_kv", n_heads)),
        vocab_size=vocab_size,
        seq_len=int(get("context_length")),
        norm_eps=eps,
        rope_theta=float(get("rope.freq_base", 10000.0)),
        arch=arch,
        rotary_dim=rotary_dim,
        shared_classifier=not has_output,
    )
    config.validate()
    return config


def read_gguf(stream: BinaryIO) -> tuple:
    """
    Read a GGUF container.

    The stream is read front to back without seeking; only tell() is needed
    to find the alignment padding.

    Returns:
        (ModelConfig, WeightMap)

    Raises:
        IoTruncated, UnsupportedDtype, ArchitectureMismatch
    """
    index = read_gguf_index(stream)
    by_name = {t.name: t for t in index.tensors}
    if "token_embd.weight" not in by_name:
        raise ArchitectureMismatch("missing tensor token_embd.weight")
    vocab_size = by_name["token_embd.weight"].shape[0]
    config = config_from_metadata(index.metadata, vocab_size, "output.weight" in by_name)

    # Reject unknown codes before touching the data section.
    for info in index.tensors:
        tensor_nbytes(info.dtype, info.n_elements)

    # Header bytes consumed so far decide the padding before the data section.
    pos = stream.tell()
    align = index.alignment
    _read_exact(stream, (-pos) % align, "alignment padding")

    tensors, dtypes = {}, {}
    total = 0
    cursor = 0
    for info in sorted(index.tensors, key=lambda t: t.offset):
        if info.offset < cursor:
            raise ArchitectureMismatch(f"tensor {info.name} overlaps the previous tensor")
        _read_exact(stream, info.offset - cursor, "tensor padding")
        raw = _read_exact(stream, info.nbytes, f"tensor {info.name}")
        cursor = info.offset + info.nbytes
        tensors[info.name] = _to_torch(dequantize(raw, info.dtype, info.shape))
        dtypes[info.name] = dtype_name(info.dtype)
        total += info.nbytes

    check_shapes(config, tensors)
    return config, WeightMap(tensors, source_bytes=total, dtypes=dtypes)


def _value_type(value) -> int:
    if isinstance(value, bool):
        return GGUF_TYPE_BOOL
    if isinstance(value, int):
        if 0 <= value < 2 ** 32:
            return GGUF_TYPE_UINT32
        return GGUF_TYPE_INT64
    if isinstance(value, float):
        return GGUF_TYPE_FLOAT32
    if isinstance(value, str):
        return GGUF_TYPE_STRING
    if isinstance(value, (list, tuple)):
        return GGUF_TYPE_ARRAY
    raise TypeError(f"cannot store {type(value).__name__} in GGUF metadata")


def _write_string(stream: BinaryIO, s: str) -> None:
    data = s.encode("utf-8")
    stream.write(struct.pack("<Q", len(data)))
    stream.write(data)


def _write_value(stream: BinaryIO, value, vtype: int) -> None:
    if vtype == GGUF_TYPE_STRING:
        _write_string(stream, value)
    elif vtype == GGUF_TYPE_ARRAY:
        item_type = _value_type(value[0]) if value else GGUF_TYPE_UINT32
        stream.write(struct.pack("<IQ", item_type, len(value)))
        for item in value:
            _write_value(stream, item, item_type)
    else:
        stream.write(struct.pack(_SCALAR_FORMATS[vtype], value))


def write_gguf(stream: BinaryIO, metadata: dict, tensors: dict) -> None:
    """
    Write a GGUF v3 container.

    Args:
        metadata: key -> bool/int/float/str/list.
        tensors: name -> float array (stored as F32), or
                 name -> (ggml dtype, shape, raw bytes) for pre-encoded data.
    """
    align = int(metadata.get("general.alignment", GGUF_DEFAULT_ALIGNMENT))
    entries = []
    for name, value in tensors.items():
        if isinstance(value, tuple):
            dtype, shape, raw = value
        else:
            arr = value.detach().cpu().numpy() if isinstance(value, torch.Tensor) else value
            arr = np.ascontiguousarray(arr, dtype="<f4")
            dtype, shape, raw = GGML_TYPE_F32, arr.shape, arr.tobytes()
        entries.append((name, dtype, tuple(shape), raw))

    stream.write(GGUF_MAGIC)
    stream.write(struct.pack("<IQQ", 3, len(entries), len(metadata)))
    for key, value in metadata.items():
        _write_string(stream, key)
        vtype = _value_type(value)
        stream.write(struct.pack("<I", vtype))
        _write_value(stream, value, vtype)

    offset = 0
    for name, dtype, shape, raw in entries:
        _write_string(stream, name)
        stream.write(struct.pack("<I", len(shape)))
        stream.write(struct.pack(f"<{len(shape)}Q", *reversed(shape)))
        stream.write(struct.pack("<IQ", dtype, offset))
        offset += len(raw)
        offset += (-offset) % align

    stream.write(b"\x00" * ((-stream.tell()) % align))
    for name, dtype, shape, raw in entries:
        stream.write(raw)
        stream.write(b"\x00" * ((-len(raw)) % align))


# ═══════════════════════════════════════════════════════════════════════════
# Entry point
# ═══════════════════════════════════════════════════════════════════════════

def load_weights(path: str) -> tuple:
    """
    Load a weight file of either format, chosen by its leading magic bytes.

    Returns:
        (ModelConfig, WeightMap)
    """
    start = time.perf_counter()
    with open(path, "rb") as f:
        magic = f.read(4)
        f.seek(0)
        if magic == GGUF_MAGIC:
            config, weights = read_gguf(f)
        else:
            config, weights = read_legacy(f)
    logger.info(
        "loaded %d tensors (%s) in %.2fs",
        len(weights), format_size(weights.source_bytes), time.perf_counter() - start,
    )
    logger.debug("config: %s", config)
    return config, weights

"""
GGML block quantization: decoding to float32 and encoding for tooling.

Quantized weights are stored in fixed-size blocks of 32 elements. Each block
carries its own scale (and for Q4_1 an offset), so the error introduced by
quantization is bounded per block rather than per tensor.

BLOCK LAYOUTS (little-endian):
  Q4_0  18 bytes: fp16 scale d, 16 bytes of nibbles
        value = (q - 8) * d
        low nibbles hold elements 0..15, high nibbles elements 16..31
  Q4_1  20 bytes: fp16 scale d, fp16 min m, 16 bytes of nibbles
        value = q * d + m
  Q8_0  34 bytes: fp16 scale d, 32 signed bytes
        value = q * d

K-QUANTS (super-blocks of 256 elements):
  Q4_K  144 bytes: fp16 d, fp16 dmin, 12 bytes of packed 6-bit
        (scale, min) pairs for 8 sub-blocks of 32, 128 bytes of nibbles
        value = d * sc * q - dmin * m
  Q5_K  176 bytes: as Q4_K plus 32 bytes holding the fifth bit of each q
  Q6_K  210 bytes: 128 bytes low nibbles, 64 bytes of 2-bit highs,
        16 int8 scales (one per 16 elements), fp16 d
        value = d * sc * (q - 32)

  Element order inside a super-block follows ggml's dequantize_row_*_K:
  Q4_K/Q5_K walk four 32-byte chunks, low nibbles first (sub-block 2c)
  then high nibbles (sub-block 2c+1). Q6_K walks two 128-element halves,
  each built from 64 ql bytes and 32 qh bytes.

F32 and F16 tensors are stored plainly. Every other GGML code (Q2_K,
Q3_K, I-quants, ...) is rejected with UnsupportedDtype.

Dequantization happens eagerly at load time, so the forward pass only ever
sees float32 tensors.
"""

import numpy as np

from chat_engine.errors import UnsupportedDtype, IoTruncated


GGML_TYPE_F32 = 0
GGML_TYPE_F16 = 1
GGML_TYPE_Q4_0 = 2
GGML_TYPE_Q4_1 = 3
GGML_TYPE_Q8_0 = 8
GGML_TYPE_Q4_K = 12
GGML_TYPE_Q5_K = 13
GGML_TYPE_Q6_K = 14

QK = 32  # elements per block
QK_K = 256  # elements per k-quant super-block

# dtype code -> (elements per block, bytes per block)
BLOCK_PARAMS: dict[int, tuple[int, int]] = {
    GGML_TYPE_F32: (1, 4),
    GGML_TYPE_F16: (1, 2),
    GGML_TYPE_Q4_0: (QK, 18),
    GGML_TYPE_Q4_1: (QK, 20),
    GGML_TYPE_Q8_0: (QK, 34),
    GGML_TYPE_Q4_K: (QK_K, 144),
    GGML_TYPE_Q5_K: (QK_K, 176),
    GGML_TYPE_Q6_K: (QK_K, 210),
}

DTYPE_NAMES = {
    GGML_TYPE_F32: "F32",
    GGML_TYPE_F16: "F16",
    GGML_TYPE_Q4_0: "Q4_0",
    GGML_TYPE_Q4_1: "Q4_1",
    GGML_TYPE_Q8_0: "Q8_0",
    GGML_TYPE_Q4_K: "Q4_K",
    GGML_TYPE_Q5_K: "Q5_K",
    GGML_TYPE_Q6_K: "Q6_K",
}


def dtype_name(dtype: int) -> str:
    return DTYPE_NAMES.get(dtype, f"ggml_type_{dtype}")


def tensor_nbytes(dtype: int, n_elements: int) -> int:
    """
    On-disk size of a tensor.

    Raises:
        UnsupportedDtype: For codes outside BLOCK_PARAMS, or when a block
            format is used on a tensor that is not a whole number of blocks.
    """
    if dtype not in BLOCK_PARAMS:
        raise UnsupportedDtype(f"unsupported tensor dtype code {dtype}")
    block_elems, block_bytes = BLOCK_PARAMS[dtype]
    if n_elements % block_elems != 0:
        raise UnsupportedDtype(
            f"{dtype_name(dtype)} tensor of {n_elements} elements is not a "
            f"multiple of the {block_elems}-element block"
        )
    return n_elements // block_elems * block_bytes


def _blocks(raw: np.ndarray, n_elements: int, dtype: int) -> np.ndarray:
    block_elems, block_bytes = BLOCK_PARAMS[dtype]
    n_blocks = n_elements // block_elems
    return raw[: n_blocks * block_bytes].reshape(n_blocks, block_bytes)


def _scales(blocks: np.ndarray, start: int) -> np.ndarray:
    # fp16 field per block -> (n_blocks, 1) float32
    return blocks[:, start:start + 2].copy().view(np.float16).astype(np.float32)


def _nibbles(qs: np.ndarray) -> np.ndarray:
    lo = qs & 0x0F
    hi = qs >> 4
    return np.concatenate([lo, hi], axis=1).astype(np.float32)


def dequant_q4_0(raw: np.ndarray, n_elements: int) -> np.ndarray:
    blocks = _blocks(raw, n_elements, GGML_TYPE_Q4_0)
    d = _scales(blocks, 0)
    q = _nibbles(blocks[:, 2:18])
    return ((q - 8.0) * d).reshape(-1)


def dequant_q4_1(raw: np.ndarray, n_elements: int) -> np.ndarray:
    blocks = _blocks(raw, n_elements, GGML_TYPE_Q4_1)
    d = _scales(blocks, 0)
    m = _scales(blocks, 2)
    q = _nibbles(blocks[:, 4:20])
    return (q * d + m).reshape(-1)


def dequant_q8_0(raw: np.ndarray, n_elements: int) -> np.ndarray:
    blocks = _blocks(raw, n_elements, GGML_TYPE_Q8_0)
    d = _scales(blocks, 0)
    q = blocks[:, 2:34].copy().view(np.int8).astype(np.float32)
    return (q * d).reshape(-1)


# ── K-quants ──────────────────────────────────────────────────────────────

def _fp16(blocks: np.ndarray, start: int) -> np.ndarray:
    # fp16 field per super-block -> (n_blocks, 1, 1) float32
    return _scales(blocks, start)[:, :, None]


def _unpack_scale_min(packed: np.ndarray) -> tuple:
    """
    12 packed bytes -> eight 6-bit scales and eight 6-bit mins.

    Sub-blocks 0..3 sit in the low 6 bits of bytes 0..3 (scales) and 4..7
    (mins). Sub-blocks 4..7 take their low 4 bits from bytes 8..11 and
    their top 2 bits from the spare high bits of bytes 0..7.
    """
    sc = np.empty((packed.shape[0], 8), dtype=np.uint8)
    m = np.empty((packed.shape[0], 8), dtype=np.uint8)
    sc[:, :4] = packed[:, 0:4] & 63
    m[:, :4] = packed[:, 4:8] & 63
    sc[:, 4:] = (packed[:, 8:12] & 0x0F) | ((packed[:, 0:4] >> 6) << 4)
    m[:, 4:] = (packed[:, 8:12] >> 4) | ((packed[:, 4:8] >> 6) << 4)
    return sc.astype(np.float32), m.astype(np.float32)


def _pack_scale_min(sc: np.ndarray, m: np.ndarray) -> np.ndarray:
    """Inverse of _unpack_scale_min for 6-bit (n, 8) uint8 inputs."""
    packed = np.empty((sc.shape[0], 12), dtype=np.uint8)
    packed[:, 0:4] = sc[:, :4] | ((sc[:, 4:] >> 4) << 6)
    packed[:, 4:8] = m[:, :4] | ((m[:, 4:] >> 4) << 6)
    packed[:, 8:12] = (sc[:, 4:] & 0x0F) | ((m[:, 4:] & 0x0F) << 4)
    return packed


def _k_nibbles(qs: np.ndarray) -> np.ndarray:
    # (n, 128) bytes -> (n, 8, 32): sub-block 2c low nibbles, 2c+1 high
    chunks = qs.reshape(-1, 4, 1, 32)
    return np.concatenate([chunks & 0x0F, chunks >> 4], axis=2).reshape(-1, 8, 32)


def dequant_q4_k(raw: np.ndarray, n_elements: int) -> np.ndarray:
    blocks = _blocks(raw, n_elements, GGML_TYPE_Q4_K)
    d = _fp16(blocks, 0)
    dmin = _fp16(blocks, 2)
    sc, m = _unpack_scale_min(blocks[:, 4:16])
    q = _k_nibbles(blocks[:, 16:144]).astype(np.float32)
    return (d * sc[:, :, None] * q - dmin * m[:, :, None]).reshape(-1)


def dequant_q5_k(raw: np.ndarray, n_elements: int) -> np.ndarray:
    blocks = _blocks(raw, n_elements, GGML_TYPE_Q5_K)
    d = _fp16(blocks, 0)
    dmin = _fp16(blocks, 2)
    sc, m = _unpack_scale_min(blocks[:, 4:16])
    qh = blocks[:, 16:48]
    # bit b of qh[l] is the fifth bit of element l of sub-block b
    high = (qh[:, None, :] >> np.arange(8, dtype=np.uint8)[None, :, None]) & 1
    q = (_k_nibbles(blocks[:, 48:176]) | (high << 4)).astype(np.float32)
    return (d * sc[:, :, None] * q - dmin * m[:, :, None]).reshape(-1)


def dequant_q6_k(raw: np.ndarray, n_elements: int) -> np.ndarray:
    blocks = _blocks(raw, n_elements, GGML_TYPE_Q6_K)
    ql = blocks[:, 0:128].reshape(-1, 2, 64)
    qh = blocks[:, 128:192].reshape(-1, 2, 32)
    sc = blocks[:, 192:208].copy().view(np.int8).astype(np.float32).reshape(-1, 2, 8)
    d = _scales(blocks, 208)[:, :, None]

    # Each 128-element half is four runs of 32
    q = np.concatenate([
        (ql[:, :, :32] & 0x0F) | ((qh & 3) << 4),
        (ql[:, :, 32:] & 0x0F) | (((qh >> 2) & 3) << 4),
        (ql[:, :, :32] >> 4) | (((qh >> 4) & 3) << 4),
        (ql[:, :, 32:] >> 4) | (((qh >> 6) & 3) << 4),
    ], axis=2).astype(np.float32) - 32.0
    # one int8 scale per 16 consecutive elements
    return (d * np.repeat(sc, 16, axis=2) * q).reshape(-1)


def dequantize(raw: bytes, dtype: int, shape: tuple) -> np.ndarray:
    """
    Decode one tensor's bytes into a float32 array of the given shape.

    Args:
        raw: Exactly tensor_nbytes(dtype, prod(shape)) bytes.
        dtype: GGML type code.
        shape: Row-major shape of the decoded tensor.

    Raises:
        UnsupportedDtype: Unknown code.
        IoTruncated: Fewer bytes than the tensor needs.
    """
    n_elements = int(np.prod(shape)) if len(shape) else 1
    expected = tensor_nbytes(dtype, n_elements)
    if len(raw) < expected:
        raise IoTruncated(
            f"{dtype_name(dtype)} tensor needs {expected} bytes, got {len(raw)}"
        )
    buf = np.frombuffer(raw, dtype=np.uint8, count=expected)

    if dtype == GGML_TYPE_F32:
        values = buf.view("<f4").astype(np.float32)
    elif dtype == GGML_TYPE_F16:
        values = buf.view("<f2").astype(np.float32)
    elif dtype == GGML_TYPE_Q4_0:
        values = dequant_q4_0(buf, n_elements)
    elif dtype == GGML_TYPE_Q4_1:
        values = dequant_q4_1(buf, n_elements)
    elif dtype == GGML_TYPE_Q8_0:
        values = dequant_q8_0(buf, n_elements)
    elif dtype == GGML_TYPE_Q4_K:
        values = dequant_q4_k(buf, n_elements)
    elif dtype == GGML_TYPE_Q5_K:
        values = dequant_q5_k(buf, n_elements)
    else:
        values = dequant_q6_k(buf, n_elements)
    return values.reshape(shape)


# ═══════════════════════════════════════════════════════════════════════════
# Encoders (tests, conversion tooling)
# ═══════════════════════════════════════════════════════════════════════════

def quantize_q8_0(values: np.ndarray) -> bytes:
    """
    Encode float values into Q8_0 blocks.

    Scale per block is max|x| / 127, the same rule ggml uses, so the absolute
    error of every element is at most half a quantization step.
    """
    x = np.asarray(values, dtype=np.float32).reshape(-1, QK)
    amax = np.abs(x).max(axis=1, keepdims=True)
    d = amax / 127.0
    inv = np.divide(1.0, d, out=np.zeros_like(d), where=d != 0)
    q = np.clip(np.round(x * inv), -127, 127).astype(np.int8)

    out = np.empty((x.shape[0], 34), dtype=np.uint8)
    out[:, 0:2] = d.astype(np.float16).view(np.uint8)
    out[:, 2:34] = q.view(np.uint8)
    return out.tobytes()


def quantize_q4_0(values: np.ndarray) -> bytes:
    """
    Encode float values into Q4_0 blocks.

    The element with the largest magnitude maps to -8, giving d = max / -8.
    """
    x = np.asarray(values, dtype=np.float32).reshape(-1, QK)
    idx = np.abs(x).argmax(axis=1)
    signed_max = x[np.arange(x.shape[0]), idx][:, None]
    d = signed_max / -8.0
    inv = np.divide(1.0, d, out=np.zeros_like(d), where=d != 0)
    q = np.clip(np.floor(x * inv + 8.5), 0, 15).astype(np.uint8)

    out = np.empty((x.shape[0], 18), dtype=np.uint8)
    out[:, 0:2] = d.astype(np.float16).view(np.uint8)
    out[:, 2:18] = q[:, :16] | (q[:, 16:] << 4)
    return out.tobytes()


def _quantize_affine_k(values: np.ndarray, levels: int):
    """
    Shared Q4_K / Q5_K encoder: per 32-element sub-block, x ~ d*sc*q - dmin*m.

    Returns (d, dmin, packed scales, q) with q as (n, 8, 32) uint8 in
    [0, levels].
    """
    x = np.asarray(values, dtype=np.float32).reshape(-1, 8, 32)
    sub_min = np.minimum(x.min(axis=2), 0.0)
    step = (x.max(axis=2) - sub_min) / levels
    offset = -sub_min

    d = (step.max(axis=1, keepdims=True) / 63.0).astype(np.float16)
    dmin = (offset.max(axis=1, keepdims=True) / 63.0).astype(np.float16)
    d32, dmin32 = d.astype(np.float32), dmin.astype(np.float32)

    inv_d = np.divide(1.0, d32, out=np.zeros_like(d32), where=d32 != 0)
    inv_dmin = np.divide(1.0, dmin32, out=np.zeros_like(dmin32), where=dmin32 != 0)
    sc = np.clip(np.round(step * inv_d), 0, 63).astype(np.uint8)
    m = np.clip(np.round(offset * inv_dmin), 0, 63).astype(np.uint8)

    scale = (d32 * sc)[:, :, None]
    shift = (dmin32 * m)[:, :, None]
    inv = np.divide(1.0, scale, out=np.zeros_like(scale), where=scale != 0)
    q = np.clip(np.round((x + shift) * inv), 0, levels).astype(np.uint8)
    return d, dmin, _pack_scale_min(sc, m), q


def quantize_q4_k(values: np.ndarray) -> bytes:
    """Encode float values into Q4_K super-blocks (256 elements each)."""
    d, dmin, scales, q = _quantize_affine_k(values, 15)
    out = np.empty((q.shape[0], 144), dtype=np.uint8)
    out[:, 0:2] = d.view(np.uint8)
    out[:, 2:4] = dmin.view(np.uint8)
    out[:, 4:16] = scales
    out[:, 16:144] = (q[:, 0::2] | (q[:, 1::2] << 4)).reshape(-1, 128)
    return out.tobytes()


def quantize_q5_k(values: np.ndarray) -> bytes:
    """Encode float values into Q5_K super-blocks (256 elements each)."""
    d, dmin, scales, q = _quantize_affine_k(values, 31)
    qh = np.zeros((q.shape[0], 32), dtype=np.uint8)
    for sub in range(8):
        qh |= (q[:, sub, :] >> 4) << sub

    out = np.empty((q.shape[0], 176), dtype=np.uint8)
    out[:, 0:2] = d.view(np.uint8)
    out[:, 2:4] = dmin.view(np.uint8)
    out[:, 4:16] = scales
    out[:, 16:48] = qh
    out[:, 48:176] = ((q[:, 0::2] & 0x0F) | ((q[:, 1::2] & 0x0F) << 4)).reshape(-1, 128)
    return out.tobytes()


def quantize_q6_k(values: np.ndarray) -> bytes:
    """
    Encode float values into Q6_K super-blocks (256 elements each).

    Each 16-element group gets an int8 scale relative to one fp16 d per
    super-block; elements are stored as 6-bit values offset by 32.
    """
    x = np.asarray(values, dtype=np.float32).reshape(-1, 16, 16)
    step = np.abs(x).max(axis=2) / 31.0
    d = (step.max(axis=1, keepdims=True) / 127.0).astype(np.float16)
    d32 = d.astype(np.float32)
    inv_d = np.divide(1.0, d32, out=np.zeros_like(d32), where=d32 != 0)
    sc = np.clip(np.round(step * inv_d), -128, 127).astype(np.int8)

    scale = (d32 * sc)[:, :, None]
    inv = np.divide(1.0, scale, out=np.zeros_like(scale), where=scale != 0)
    q = (np.clip(np.round(x * inv), -32, 31) + 32).astype(np.uint8)

    # (n, 2 halves, 4 runs, 32)
    qq = q.reshape(-1, 2, 4, 32)
    ql = np.empty((q.shape[0], 2, 64), dtype=np.uint8)
    ql[:, :, :32] = (qq[:, :, 0] & 0x0F) | ((qq[:, :, 2] & 0x0F) << 4)
    ql[:, :, 32:] = (qq[:, :, 1] & 0x0F) | ((qq[:, :, 3] & 0x0F) << 4)
    qh = ((qq[:, :, 0] >> 4) | ((qq[:, :, 1] >> 4) << 2)
          | ((qq[:, :, 2] >> 4) << 4) | ((qq[:, :, 3] >> 4) << 6))

    out = np.empty((q.shape[0], 210), dtype=np.uint8)
    out[:, 0:128] = ql.reshape(-1, 128)
    out[:, 128:192] = qh.reshape(-1, 64)
    out[:, 192:208] = sc.view(np.uint8)
    out[:, 208:210] = d.view(np.uint8)
    return out.tobytes()

"""
PCM helpers and the telephone codec.

Internal audio is PCM16 little-endian mono at 24 kHz. Telephone audio is
G.711 mu-law at 8 kHz. Conversions between the two domains live here:
mu-law encode/decode, 6:1 decimation for the outbound leg, and cubic-spline
upsampling plus smoothing and gain for caller audio heading to the bus.

The streaming helpers return ``(bytes, state)`` so consecutive frames can be
processed without clicks at frame boundaries.
"""

from __future__ import annotations

import numpy as np
from scipy.interpolate import CubicSpline

from .errors import TelephonyCodecFailure

SAMPLE_RATE = 24000
PHONE_SAMPLE_RATE = 8000
SAMPLE_WIDTH = 2

# Symmetric 3-tap low-pass applied after upsampling caller audio.
LOWPASS_KERNEL = (0.25, 0.5, 0.25)

_ULAW_BIAS = 33
_ULAW_MAX = 0x1FFF
_ULAW_CLIP = _ULAW_MAX - _ULAW_BIAS
_SPLINE_HISTORY = 3


def pcm_samples(pcm: bytes) -> np.ndarray:
    """View PCM16 bytes as int16 samples, ignoring a dangling odd byte."""
    usable = len(pcm) - len(pcm) % SAMPLE_WIDTH
    return np.frombuffer(pcm[:usable], dtype="<i2")


def _to_pcm(samples: np.ndarray) -> bytes:
    return np.clip(np.rint(samples), -32768, 32767).astype("<i2").tobytes()


def duration_ms(pcm: bytes, sample_rate: int = SAMPLE_RATE) -> float:
    """Play-out length of ``pcm``, from the sample count alone."""
    return (len(pcm) // SAMPLE_WIDTH) / sample_rate * 1000.0


def silence(ms: float, sample_rate: int = SAMPLE_RATE) -> bytes:
    return bytes(int(sample_rate * ms / 1000.0) * SAMPLE_WIDTH)


def rms(pcm: bytes) -> float:
    samples = pcm_samples(pcm)
    if samples.size == 0:
        return 0.0
    return float(np.sqrt(np.mean(samples.astype(np.float64) ** 2)))


# --- mu-law -----------------------------------------------------------------


def linear_to_ulaw(sample: int) -> int:
    """Encode one 16-bit linear sample as an 8-bit mu-law code."""
    sign = 0x80 if sample < 0 else 0
    magnitude = min(abs(sample) >> 2, _ULAW_CLIP) + _ULAW_BIAS
    exponent = max(magnitude.bit_length() - 6, 0)
    mantissa = (magnitude >> (exponent + 1)) & 0x0F
    return ~(sign | (exponent << 4) | mantissa) & 0xFF


def ulaw_to_linear(code: int) -> int:
    """Decode one 8-bit mu-law code to a 16-bit linear sample."""
    code = ~code & 0xFF
    sign = code & 0x80
    exponent = (code >> 4) & 0x07
    mantissa = code & 0x0F
    magnitude = ((((mantissa << 1) + _ULAW_BIAS) << exponent) - _ULAW_BIAS) << 2
    return -magnitude if sign else magnitude


_ENCODE_TABLE = np.array([linear_to_ulaw(s) for s in range(-32768, 32768)], dtype=np.uint8)
_DECODE_TABLE = np.array([ulaw_to_linear(c) for c in range(256)], dtype="<i2")

ULAW_SILENCE = linear_to_ulaw(0)


def pcm16_to_ulaw(pcm: bytes) -> bytes:
    if len(pcm) % SAMPLE_WIDTH:
        raise TelephonyCodecFailure(f"PCM16 frame has odd length {len(pcm)}")
    if not pcm:
        return b""
    index = pcm_samples(pcm).astype(np.int32) + 32768
    return _ENCODE_TABLE[index].tobytes()


def ulaw_to_pcm16(data: bytes) -> bytes:
    if not data:
        return b""
    codes = np.frombuffer(data, dtype=np.uint8)
    return _DECODE_TABLE[codes].tobytes()


# --- rate conversion ---------------------------------------------------------


def decimate(pcm: bytes, factor: int, phase: int = 0) -> tuple[bytes, int]:
    """Keep every ``factor``-th sample. Returns the phase for the next frame."""
    samples = pcm_samples(pcm)
    if factor <= 1:
        return samples.tobytes(), 0
    picked = samples[phase::factor]
    return picked.tobytes(), (phase - samples.size) % factor


def upsample_cubic(
    pcm: bytes,
    factor: int,
    state: tuple[float, ...] | None = None,
) -> tuple[bytes, tuple[float, ...] | None]:
    """Upsample by an integer factor with a natural cubic spline.

    ``state`` carries the last input samples of the previous frame so the
    spline spans the frame boundary. Each input sample yields ``factor``
    output samples ending exactly on it.
    """
    samples = pcm_samples(pcm).astype(np.float64)
    if samples.size == 0:
        return b"", state
    if factor <= 1:
        return _to_pcm(samples), state

    history = np.asarray(state if state else (samples[0],), dtype=np.float64)
    points = np.concatenate([history, samples])
    spline = CubicSpline(np.arange(points.size, dtype=np.float64), points, bc_type="natural")

    start = history.size - 1
    positions = start + np.arange(1, samples.size * factor + 1, dtype=np.float64) / factor
    new_state = tuple(float(v) for v in points[-_SPLINE_HISTORY:])
    return _to_pcm(spline(positions)), new_state


def smooth(pcm: bytes, kernel: tuple[float, ...] = LOWPASS_KERNEL) -> bytes:
    """Convolve with a small symmetric kernel, holding the edge samples."""
    samples = pcm_samples(pcm).astype(np.float64)
    if samples.size == 0:
        return b""
    pad = len(kernel) // 2
    padded = np.pad(samples, pad, mode="edge")
    return _to_pcm(np.convolve(padded, np.asarray(kernel), mode="valid"))


def apply_gain(pcm: bytes, gain: float) -> bytes:
    samples = pcm_samples(pcm).astype(np.float64)
    return _to_pcm(samples * gain)


def caller_to_show(
    pcm_8k: bytes,
    state: tuple[float, ...] | None = None,
    *,
    gain: float = 1.5,
) -> tuple[bytes, tuple[float, ...] | None]:
    """8 kHz caller PCM to 24 kHz bus audio: spline upsample, smooth, boost."""
    upsampled, state = upsample_cubic(pcm_8k, SAMPLE_RATE // PHONE_SAMPLE_RATE, state)
    return apply_gain(smooth(upsampled), gain), state


def show_to_caller(pcm_24k: bytes, phase: int = 0) -> tuple[bytes, int]:
    """24 kHz bus PCM to 8 kHz mu-law.

    Keeps every third sample (a 6-byte stride over PCM16) then encodes.
    """
    downsampled, phase = decimate(pcm_24k, SAMPLE_RATE // PHONE_SAMPLE_RATE, phase)
    return pcm16_to_ulaw(downsampled), phase

import struct

import numpy as np
import pytest

from radioshow.audio import (
    ULAW_SILENCE,
    caller_to_show,
    decimate,
    duration_ms,
    linear_to_ulaw,
    pcm16_to_ulaw,
    rms,
    show_to_caller,
    silence,
    smooth,
    ulaw_to_linear,
    ulaw_to_pcm16,
    upsample_cubic,
)
from radioshow.errors import TelephonyCodecFailure


def pcm(*samples: int) -> bytes:
    return struct.pack(f"<{len(samples)}h", *samples)


def test_silence_encodes_to_0xff():
    assert linear_to_ulaw(0) == 0xFF
    assert ULAW_SILENCE == 0xFF
    assert ulaw_to_linear(0xFF) == 0


@pytest.mark.parametrize("step", [1, 7, 113])
def test_ulaw_round_trip_stays_within_quantization_bound(step):
    for x in range(-32124, 32125, step):
        decoded = ulaw_to_linear(linear_to_ulaw(x))
        assert abs(decoded - x) <= abs(x) / 16 + 8, x


def test_ulaw_decode_is_monotonic():
    decoded = [ulaw_to_linear(linear_to_ulaw(x)) for x in range(-32768, 32768, 3)]
    assert all(a <= b for a, b in zip(decoded, decoded[1:]))


def test_loud_samples_clip_instead_of_wrapping():
    assert ulaw_to_linear(linear_to_ulaw(32767)) > 30000
    assert ulaw_to_linear(linear_to_ulaw(-32768)) < -30000


def test_vectorized_codec_matches_scalar():
    samples = [-32768, -1000, -1, 0, 1, 5, 1000, 32767]
    encoded = pcm16_to_ulaw(pcm(*samples))
    assert list(encoded) == [linear_to_ulaw(s) for s in samples]
    decoded = struct.unpack("<8h", ulaw_to_pcm16(encoded))
    assert list(decoded) == [ulaw_to_linear(c) for c in encoded]


def test_odd_length_pcm_is_a_codec_failure():
    with pytest.raises(TelephonyCodecFailure):
        pcm16_to_ulaw(b"\x00\x01\x02")


def test_duration_comes_from_sample_count():
    assert duration_ms(bytes(48000)) == pytest.approx(1000.0)
    assert duration_ms(bytes(320), 8000) == pytest.approx(20.0)
    assert len(silence(100)) == 4800


def test_rms():
    assert rms(b"") == 0.0
    assert rms(pcm(3, -3, 3, -3)) == pytest.approx(3.0)


def test_decimate_20ms_frame_to_phone_rate():
    frame = bytes(960)
    out, phase = decimate(frame, 3)
    assert len(out) == 320
    assert phase == 0


def test_decimate_carries_phase_across_frames():
    samples = list(range(10))
    first, phase = decimate(pcm(*samples[:4]), 3)
    second, _ = decimate(pcm(*samples[4:]), 3, phase)
    picked = struct.unpack(f"<{(len(first) + len(second)) // 2}h", first + second)
    assert list(picked) == [0, 3, 6, 9]


def test_show_to_caller_produces_one_byte_per_phone_sample():
    out, phase = show_to_caller(bytes(960))
    assert len(out) == 160
    assert set(out) == {ULAW_SILENCE}
    assert phase == 0


def test_upsample_triples_frame_length():
    out, state = upsample_cubic(bytes(320), 3)
    assert len(out) == 960
    assert state is not None and len(state) == 3


def test_upsample_ends_on_input_samples():
    frame = pcm(0, 300, -300, 900)
    out, _ = upsample_cubic(frame, 3, (0.0,))
    samples = np.frombuffer(out, dtype="<i2")
    assert list(samples[2::3]) == [0, 300, -300, 900]


def test_smooth_keeps_constant_signal():
    assert smooth(pcm(500, 500, 500, 500)) == pcm(500, 500, 500, 500)


def test_caller_to_show_boosts_and_upsamples():
    out, state = caller_to_show(pcm(*([1000] * 160)), None, gain=1.5)
    samples = np.frombuffer(out, dtype="<i2")
    assert samples.size == 480
    assert np.all(samples == 1500)
    # A second frame continues from the carried state.
    out2, _ = caller_to_show(pcm(*([1000] * 160)), state, gain=1.5)
    assert np.all(np.frombuffer(out2, dtype="<i2") == 1500)

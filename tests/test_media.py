from __future__ import annotations

import struct

import pytest

from universal_studio.core.media import (
    WAV_HEADER_SIZE,
    decode_pcm16,
    encode_wav,
    pcm16_to_wav,
)


def _header(wav: bytes) -> dict:
    (
        riff, riff_size, wave, fmt, fmt_size, fmt_tag, channels, sample_rate,
        byte_rate, block_align, bits, data_tag, data_size,
    ) = struct.unpack("<4sI4s4sIHHIIHH4sI", wav[:WAV_HEADER_SIZE])
    return {
        "riff": riff,
        "riff_size": riff_size,
        "wave": wave,
        "fmt": fmt,
        "fmt_size": fmt_size,
        "fmt_tag": fmt_tag,
        "channels": channels,
        "sample_rate": sample_rate,
        "byte_rate": byte_rate,
        "block_align": block_align,
        "bits": bits,
        "data_tag": data_tag,
        "data_size": data_size,
    }


def _samples(wav: bytes) -> tuple[int, ...]:
    body = wav[WAV_HEADER_SIZE:]
    return struct.unpack(f"<{len(body) // 2}h", body)


def test_silence_container_declares_data_length_and_sample_rate():
    length = 480
    wav = encode_wav([0.0] * length, 24000, 1)

    h = _header(wav)
    assert h["riff"] == b"RIFF" and h["wave"] == b"WAVE"
    assert h["fmt"] == b"fmt " and h["data_tag"] == b"data"
    assert h["fmt_size"] == 16
    assert h["fmt_tag"] == 1
    assert h["channels"] == 1
    assert h["sample_rate"] == 24000
    assert h["byte_rate"] == 48000
    assert h["block_align"] == 2
    assert h["bits"] == 16
    assert h["data_size"] == 2 * length
    assert h["riff_size"] == len(wav) - 8
    assert len(wav) == WAV_HEADER_SIZE + 2 * length
    assert set(_samples(wav)) == {0}


def test_full_scale_uses_asymmetric_scaling():
    wav = encode_wav([1.0, -1.0, 0.5, -0.5], 24000, 1)
    assert _samples(wav) == (32767, -32768, 16383, -16384)


def test_out_of_range_samples_saturate():
    over = encode_wav([1.7, -3.2, 100.0, -1.0000001], 24000, 1)
    exact = encode_wav([1.0, -1.0, 1.0, -1.0], 24000, 1)
    assert _samples(over) == _samples(exact)


def test_stereo_samples_are_interleaved():
    wav = encode_wav([[0.0, 1.0], [-1.0, 0.0]], 44100, 2)
    h = _header(wav)
    assert h["channels"] == 2
    assert h["block_align"] == 4
    assert h["byte_rate"] == 44100 * 4
    assert h["data_size"] == 8
    assert _samples(wav) == (0, -32768, 32767, 0)


def test_decode_pcm16_splits_channels_and_normalizes():
    raw = struct.pack("<4h", 0, -32768, 16384, 32767)
    assert decode_pcm16(raw) == [[0.0, -1.0, 0.5, 32767 / 32768]]

    left, right = decode_pcm16(raw, channels=2)
    assert left == [0.0, 0.5]
    assert right == [-1.0, 32767 / 32768]


def test_decode_ignores_trailing_odd_byte():
    raw = struct.pack("<2h", 100, -100) + b"\x01"
    assert len(decode_pcm16(raw)[0]) == 2


def test_pcm16_to_wav_wraps_decoded_samples():
    raw = struct.pack("<3h", 0, 1234, -1234)
    wav = pcm16_to_wav(raw, 24000)
    assert _header(wav)["data_size"] == len(raw)
    # Positive values scale by 32767/32768 on the way back, so 1234 truncates to 1233.
    assert _samples(wav) == (0, 1233, -1234)


def test_zero_channels_rejected():
    with pytest.raises(ValueError):
        encode_wav([], 24000, 0)
    with pytest.raises(ValueError):
        decode_pcm16(b"\x00\x00", channels=0)

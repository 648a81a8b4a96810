"""Media codec: raw PCM16 samples <-> playable WAV container.

Pure functions, no I/O. The TTS model returns headerless 16-bit little-endian
PCM; browsers and players need a RIFF/WAVE container around it.
"""

from __future__ import annotations

import struct
from collections.abc import Sequence

WAV_HEADER_SIZE = 44
BITS_PER_SAMPLE = 16
_FORMAT_PCM = 1


def decode_pcm16(data: bytes, channels: int = 1) -> list[list[float]]:
    """Split interleaved int16 LE bytes into per-channel float samples in [-1, 1)."""
    if channels <= 0:
        raise ValueError("channels must be positive")
    count = len(data) // 2
    values = struct.unpack(f"<{count}h", data[: count * 2])
    frames = count // channels
    return [
        [values[frame * channels + ch] / 32768.0 for frame in range(frames)]
        for ch in range(channels)
    ]


def _to_int16(sample: float) -> int:
    sample = max(-1.0, min(1.0, sample))
    # -1.0 maps to -32768 and +1.0 to 32767; int() truncates toward zero.
    return int(sample * 32768) if sample < 0 else int(sample * 32767)


def encode_wav(
    samples: Sequence[float] | Sequence[Sequence[float]],
    sample_rate: int,
    channels: int = 1,
) -> bytes:
    """Build a 16-bit PCM WAV file from float samples.

    Args:
        samples: A flat sequence for mono audio, or one sequence per channel.
        sample_rate: Frames per second written to the header.
        channels: Channel count written to the header.

    Returns:
        The complete container: 44-byte header followed by interleaved samples.
    """
    if channels <= 0:
        raise ValueError("channels must be positive")

    if samples and isinstance(samples[0], Sequence):
        per_channel = [list(ch) for ch in samples]
    else:
        per_channel = [list(samples)]
    if len(per_channel) != channels:
        raise ValueError(f"expected {channels} channel(s), got {len(per_channel)}")

    frames = min(len(ch) for ch in per_channel) if per_channel else 0
    block_align = channels * (BITS_PER_SAMPLE // 8)
    data_size = frames * block_align

    header = struct.pack(
        "<4sI4s4sIHHIIHH4sI",
        b"RIFF",
        WAV_HEADER_SIZE - 8 + data_size,
        b"WAVE",
        b"fmt ",
        16,
        _FORMAT_PCM,
        channels,
        sample_rate,
        sample_rate * block_align,
        block_align,
        BITS_PER_SAMPLE,
        b"data",
        data_size,
    )

    interleaved = [_to_int16(per_channel[ch][frame]) for frame in range(frames) for ch in range(channels)]
    return header + struct.pack(f"<{len(interleaved)}h", *interleaved)


def pcm16_to_wav(data: bytes, sample_rate: int, channels: int = 1) -> bytes:
    """Wrap raw int16 LE PCM bytes into a WAV container via the float path."""
    return encode_wav(decode_pcm16(data, channels), sample_rate, channels)

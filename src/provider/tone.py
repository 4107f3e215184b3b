"""Opus test tone generation for the mock audio provider."""

import logging
from typing import Final, cast

import av
import numpy as np
from numpy.typing import NDArray

logger = logging.getLogger(__name__)

SINE_FREQUENCY_HZ: Final[int] = 440  # A4 note
SAMPLE_RATE_HZ: Final[int] = 48000
FRAME_DURATION_MS: Final[int] = 20
SAMPLES_PER_FRAME: Final[int] = SAMPLE_RATE_HZ * FRAME_DURATION_MS // 1000
AMPLITUDE: Final[float] = 0.3


def sine_frame(
    frequency: int, start_sample: int, num_samples: int = SAMPLES_PER_FRAME
) -> NDArray[np.int16]:
    """Generate one phase-continuous block of int16 sine samples.

    Args:
        frequency: Tone frequency in Hz (must be below Nyquist)
        start_sample: Index of the first sample in the overall signal
        num_samples: Block length

    Raises:
        ValueError: If the frequency is not in (0, SAMPLE_RATE_HZ / 2]
    """
    if frequency <= 0 or frequency > SAMPLE_RATE_HZ / 2:
        raise ValueError(f"Frequency must be in (0, {SAMPLE_RATE_HZ // 2}], got {frequency}")

    t = np.arange(start_sample, start_sample + num_samples, dtype=np.float64)
    sine = AMPLITUDE * np.sin(2.0 * np.pi * frequency * t / SAMPLE_RATE_HZ)
    return (sine * 32767.0).astype(np.int16)


class OpusToneEncoder:
    """Encodes a continuous sine tone into 20ms mono Opus packets (libopus via PyAV)."""

    def __init__(self, frequency: int = SINE_FREQUENCY_HZ) -> None:
        self.frequency = frequency
        self._encoder = cast("av.AudioCodecContext", av.AudioCodecContext.create("libopus", "w"))
        self._encoder.sample_rate = SAMPLE_RATE_HZ
        self._encoder.layout = "mono"
        self._encoder.format = "s16"
        self._encoder.open()
        self._samples = 0

    def encode_next(self) -> list[bytes]:
        """Encode the next 20ms of tone.

        Returns:
            Zero or more Opus packets (the encoder may hold back the first frames)
        """
        samples = sine_frame(self.frequency, self._samples)
        frame = av.AudioFrame.from_ndarray(samples.reshape(1, -1), format="s16", layout="mono")
        frame.sample_rate = SAMPLE_RATE_HZ
        frame.pts = self._samples
        self._samples += SAMPLES_PER_FRAME
        return [bytes(packet) for packet in self._encoder.encode(frame)]

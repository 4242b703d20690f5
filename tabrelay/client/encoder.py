import time
from dataclasses import dataclass, field
from typing import Iterator

import numpy as np
import soundfile as sf


@dataclass
class EncodedChunk:
    sequence: int
    offset_ms: int
    duration_sec: float
    payload: bytes
    captured_at: float = field(default_factory=time.time)


class FileEncoder:
    """
    Stands in for the browser's MediaRecorder: slices an audio file into LINEAR16 chunks.

    Only the first channel of multi-channel files is kept.
    """

    encoding = "LINEAR16"

    def __init__(self, path: str, chunk_seconds: float = 0.5):
        if chunk_seconds <= 0:
            raise ValueError("chunk_seconds must be positive")
        data, sr = sf.read(path, dtype="int16")
        if data.ndim > 1:
            data = data[:, 0]  # use first channel if stereo
        self.samples: np.ndarray = np.ascontiguousarray(data)
        self.sample_rate: int = sr
        self.chunk_seconds = chunk_seconds

    @property
    def duration_sec(self) -> float:
        return len(self.samples) / self.sample_rate

    def chunks(self) -> Iterator[EncodedChunk]:
        samples_per_chunk = max(1, int(self.chunk_seconds * self.sample_rate))
        total_samples = len(self.samples)

        for seq, start in enumerate(range(0, total_samples, samples_per_chunk)):
            end = min(start + samples_per_chunk, total_samples)
            chunk = self.samples[start:end]
            yield EncodedChunk(
                sequence=seq,
                offset_ms=int(1000 * start / self.sample_rate),
                duration_sec=(end - start) / self.sample_rate,
                payload=chunk.astype("<i2").tobytes(),
            )

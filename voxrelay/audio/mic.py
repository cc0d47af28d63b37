# coding=utf-8
from __future__ import annotations

import contextlib
import logging
from typing import Any, Iterator, Optional

import numpy as np

from voxrelay.audio.pcm import SAMPLE_RATE
from voxrelay.errors import CaptureUnavailableError

logger = logging.getLogger(__name__)

_INSTALL_HINT = "sounddevice is not installed. Install with: python -m pip install 'voxrelay[mic]'"


def _import_sounddevice() -> Any:
    try:
        import sounddevice as sd
    except (ImportError, OSError) as e:
        raise CaptureUnavailableError(_INSTALL_HINT) from e
    return sd


class MicrophoneSource:
    """
    Live microphone source using the `sounddevice` package (PortAudio).
    Yields mono float32 chunks of ``chunk_samples`` samples.
    """

    def __init__(
        self,
        sample_rate: int = SAMPLE_RATE,
        chunk_samples: int = 1024,
        device: Optional[int] = None,
    ) -> None:
        if sample_rate <= 0:
            raise ValueError("sample_rate must be > 0")
        if chunk_samples <= 0:
            raise ValueError("chunk_samples must be > 0")
        self.sample_rate = int(sample_rate)
        self.chunk_samples = int(chunk_samples)
        self.device = device
        self.overflows = 0
        self._stopped = False

    @staticmethod
    def list_devices() -> str:
        return str(_import_sounddevice().query_devices())

    @contextlib.contextmanager
    def _open_stream(self):
        sd = _import_sounddevice()
        try:
            stream = sd.InputStream(
                samplerate=self.sample_rate,
                channels=1,
                dtype="float32",
                device=self.device,
                blocksize=0,
            )
        except Exception as e:
            raise CaptureUnavailableError(
                "Failed to open microphone stream. Try --list-devices and select a device id with --device."
            ) from e
        with stream:
            yield stream

    def stop(self) -> None:
        """Ends a running ``chunks()`` loop after its current read."""
        self._stopped = True

    def chunks(self) -> Iterator[np.ndarray]:
        with self._open_stream() as stream:
            logger.info("microphone capture started sample_rate=%d device=%s", self.sample_rate, self.device)
            while not self._stopped:
                data, overflowed = stream.read(self.chunk_samples)
                if overflowed:
                    # PortAudio dropped input; keep going
                    self.overflows += 1
                yield np.asarray(data, dtype=np.float32)[:, 0].copy()
        logger.info("microphone capture stopped overflows=%d", self.overflows)

"""
omnidiag/speech/adapter.py
--------------------------
The Speech Capture Adapter.
Wraps a continuous recognition engine and keeps the voice-note transcript:
finalized text accumulates, interim text is replaced as the engine refines it.

All listener callbacks are expected on the event loop thread; engines that
capture on their own threads hand events over with call_soon_threadsafe.
"""

import logging
from dataclasses import dataclass
from typing import Callable, List, Optional, Protocol

from omnidiag.core.errors import CapabilityUnavailable, RecognitionError

logger = logging.getLogger("omnidiag.speech.adapter")


@dataclass(frozen=True)
class TranscriptSegment:
    """Text for the segment currently being recognized, tagged final or interim."""
    text: str
    is_final: bool


class RecognitionListener(Protocol):
    def on_result(self, segment: TranscriptSegment) -> None:
        ...

    def on_error(self, reason: str) -> None:
        ...

    def on_end(self) -> None:
        """The engine's stream ended (silence timeout, device hiccup, ...)."""
        ...


class RecognitionEngine(Protocol):
    """
    A platform speech-to-text stream.
    start() may be called again after the stream ended.
    """
    def start(self, listener: RecognitionListener) -> None:
        ...

    def stop(self) -> None:
        ...


class SpeechCaptureAdapter:
    """
    Start/stop voice capture and expose the running transcript.
    Constructed with engine=None when the runtime has no recognition facility;
    recording is then reported as unavailable instead of failing later.
    """

    def __init__(
        self,
        engine: Optional[RecognitionEngine],
        on_transcript: Optional[Callable[[str], None]] = None,
        on_error: Optional[Callable[[RecognitionError], None]] = None,
    ):
        self.engine = engine
        self.on_transcript = on_transcript
        self.on_error_callback = on_error
        self._recording = False
        self._finalized: List[str] = []
        self._interim = ""
        self.last_error: Optional[RecognitionError] = None

    @property
    def available(self) -> bool:
        return self.engine is not None

    @property
    def is_recording(self) -> bool:
        return self._recording

    @property
    def final_transcript(self) -> str:
        return " ".join(self._finalized)

    @property
    def transcript(self) -> str:
        """Finalized text followed by the current interim text."""
        return " ".join(part for part in (self.final_transcript, self._interim) if part)

    def start(self) -> None:
        if self.engine is None:
            raise CapabilityUnavailable("Sorry, speech recognition is not supported on this runtime.")
        if self._recording:
            return
        self._finalized = []
        self._interim = ""
        self.last_error = None
        self._recording = True
        logger.info("Voice recording started.")
        try:
            self.engine.start(self)
        except Exception as e:
            self._recording = False
            raise RecognitionError(f"Could not start speech recognition: {e}") from e
        self._notify()

    def stop(self) -> str:
        """Stops recording; interim text is discarded, finalized text is kept."""
        was_recording = self._recording
        self._recording = False
        self._interim = ""
        if was_recording and self.engine is not None:
            self.engine.stop()
            logger.info("Voice recording stopped.")
        self._notify()
        return self.final_transcript

    def reset(self) -> None:
        """Drops the transcript; stops the engine first if it is running."""
        if self._recording:
            self.stop()
        self._finalized = []
        self._interim = ""
        self._notify()

    # --- RecognitionListener ---

    def on_result(self, segment: TranscriptSegment) -> None:
        if not self._recording:
            return
        text = segment.text.strip()
        if segment.is_final:
            if text:
                self._finalized.append(text)
            self._interim = ""
        else:
            self._interim = text
        self._notify()

    def on_error(self, reason: str) -> None:
        logger.error(f"Speech recognition error: {reason}")
        self._recording = False
        self._interim = ""
        if self.engine is not None:
            self.engine.stop()
        self.last_error = RecognitionError(f"Speech recognition error: {reason}")
        self._notify()
        if self.on_error_callback:
            self.on_error_callback(self.last_error)

    def on_end(self) -> None:
        # The interim text belonged to the stream that just ended.
        self._interim = ""
        if not self._recording:
            return
        logger.info("Recognition stream ended while recording; restarting.")
        try:
            self.engine.start(self)
        except Exception as e:
            self.on_error(f"Could not restart recognition: {e}")
            return
        self._notify()

    def _notify(self) -> None:
        if self.on_transcript:
            self.on_transcript(self.transcript)

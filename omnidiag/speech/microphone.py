"""
omnidiag/speech/microphone.py
-----------------------------
Microphone recognition engine.
Captures 16 kHz mono audio with sounddevice, cuts it into speech segments with
a light energy gate, and transcribes each segment with Gemini. While a segment
transcription streams, the growing text is reported as interim; the completed
text is reported as final.
"""

import asyncio
import base64
import io
import logging
import queue
import threading
import wave
from dataclasses import dataclass
from typing import AsyncIterator, Dict, List, Optional

import numpy as np
from langchain_core.messages import HumanMessage, SystemMessage
from langchain_google_vertexai import ChatVertexAI

from omnidiag.agents.diagnostician import content_to_text
from omnidiag.config import Settings, get_settings
from omnidiag.speech.adapter import RecognitionListener, TranscriptSegment
from omnidiag.utils.prompts import fetch_system_prompt

try:
    import sounddevice as sd
except (ImportError, OSError):
    # No PortAudio on this machine: recording is reported as unavailable.
    sd = None

logger = logging.getLogger("omnidiag.speech.microphone")

SAMPLE_RATE = 16000
FRAME_MS = 10
FRAME_SAMPLES = SAMPLE_RATE * FRAME_MS // 1000  # 160 samples @16 kHz


# --- Device helpers ---

def list_input_devices() -> List[Dict[str, object]]:
    if sd is None:
        return []
    devices: List[Dict[str, object]] = []
    for i, dev in enumerate(sd.query_devices()):
        if dev["max_input_channels"] > 0:
            devices.append({"index": i, "name": dev["name"], "channels": dev["max_input_channels"]})
    return devices


# --- Segmentation ---

@dataclass
class GateConfig:
    """Energy gate shaping (milliseconds / dBFS / seconds)."""
    calibration_ms: int = 1200
    floor_dbfs: float = -60.0
    offset_db: float = 12.0
    min_speech_ms: int = 400
    max_silence_ms: int = 300
    max_segment_seconds: float = 5.0
    pre_roll_ms: int = 220

    @classmethod
    def from_settings(cls, settings: Settings) -> "GateConfig":
        return cls(
            calibration_ms=settings.speech_energy_calibration_ms,
            floor_dbfs=settings.speech_energy_floor_dbfs,
            offset_db=settings.speech_energy_offset_db,
            min_speech_ms=settings.speech_min_speech_ms,
            max_silence_ms=settings.speech_max_silence_ms,
            max_segment_seconds=settings.speech_max_segment_seconds,
            pre_roll_ms=settings.speech_pre_roll_ms,
        )


class EnergyGate:
    """Chunks 10 ms PCM16 frames into speech segments by frame energy."""

    def __init__(self, cfg: GateConfig):
        self.cfg = cfg
        self._calibration_left = max(1, cfg.calibration_ms // FRAME_MS)
        self._calibration: List[float] = []
        self._noise_floor = cfg.floor_dbfs
        self._threshold = self._noise_floor + cfg.offset_db
        self._pre_roll_frames = max(1, cfg.pre_roll_ms // FRAME_MS)
        self._min_speech_frames = max(1, cfg.min_speech_ms // FRAME_MS)
        self._max_silence_frames = max(1, cfg.max_silence_ms // FRAME_MS)
        self._max_segment_frames = max(
            self._min_speech_frames + 1,
            int(cfg.max_segment_seconds * 1000 / FRAME_MS),
        )
        self._prebuffer: List[bytes] = []
        self._frames: List[bytes] = []
        self._speaking = False
        self._silence = 0
        self._voiced = 0

    @staticmethod
    def frame_dbfs(pcm16: bytes) -> float:
        samples = np.frombuffer(pcm16, dtype=np.int16).astype(np.float32)
        if samples.size == 0:
            return -120.0
        rms = np.sqrt(np.mean(np.square(samples))) + 1e-12
        db = 20.0 * np.log10(rms / 32768.0)
        if not np.isfinite(db):
            return -120.0
        return float(db)

    def _update_threshold(self) -> None:
        self._threshold = max(self.cfg.floor_dbfs, self._noise_floor + self.cfg.offset_db)

    def _remember(self, pcm16: bytes) -> None:
        self._prebuffer.append(pcm16)
        if len(self._prebuffer) > self._pre_roll_frames:
            self._prebuffer.pop(0)

    def _close_segment(self) -> Optional[bytes]:
        segment = None
        if self._voiced >= self._min_speech_frames:
            segment = b"".join(self._frames)
        self._frames = []
        self._speaking = False
        self._silence = 0
        self._voiced = 0
        return segment

    def add_frame(self, pcm16: bytes) -> List[bytes]:
        """Returns the segments completed by this frame (usually none)."""
        dbfs = self.frame_dbfs(pcm16)

        if self._calibration_left > 0:
            self._calibration.append(dbfs)
            self._calibration_left -= 1
            if self._calibration_left == 0:
                baseline = float(np.mean(self._calibration))
                if not np.isfinite(baseline):
                    baseline = self.cfg.floor_dbfs
                self._noise_floor = max(self.cfg.floor_dbfs, baseline)
                self._update_threshold()
            self._remember(pcm16)
            return []

        is_speech = dbfs >= self._threshold

        if not self._speaking:
            if is_speech:
                self._speaking = True
                self._silence = 0
                self._voiced = 1
                self._frames = self._prebuffer + [pcm16]
                self._prebuffer = []
            else:
                self._remember(pcm16)
                self._noise_floor = 0.95 * self._noise_floor + 0.05 * dbfs
                self._update_threshold()
            return []

        self._frames.append(pcm16)
        if is_speech:
            self._voiced += 1
            self._silence = 0
        else:
            self._silence += 1
        if self._silence >= self._max_silence_frames or len(self._frames) >= self._max_segment_frames:
            segment = self._close_segment()
            return [segment] if segment else []
        return []

    def flush(self) -> Optional[bytes]:
        return self._close_segment()


def pcm_to_wav(pcm16: bytes) -> bytes:
    buffer = io.BytesIO()
    with wave.open(buffer, "wb") as wf:
        wf.setnchannels(1)
        wf.setsampwidth(2)
        wf.setframerate(SAMPLE_RATE)
        wf.writeframes(pcm16)
    return buffer.getvalue()


# --- Transcription ---

class GeminiSegmentTranscriber:
    """Streams the transcript of one WAV segment from Gemini."""

    def __init__(self, settings: Optional[Settings] = None, llm=None):
        self.settings = settings or get_settings()
        if llm is None:
            llm = ChatVertexAI(
                model_name=self.settings.transcription_model,
                project=self.settings.require_project(),
                location=self.settings.google_cloud_location,
                temperature=0.0,
            )
        self.llm = llm
        self.instruction = fetch_system_prompt("transcriber", self.settings.prompts_path)

    async def stream(self, wav: bytes) -> AsyncIterator[str]:
        audio = base64.b64encode(wav).decode("ascii")
        messages = [
            SystemMessage(content=self.instruction),
            HumanMessage(content=[
                {"type": "media", "mime_type": "audio/wav", "data": audio},
                {"type": "text", "text": f"Language hint: {self.settings.speech_language}"},
            ]),
        ]
        async for chunk in self.llm.astream(messages):
            fragment = content_to_text(chunk.content)
            if fragment:
                yield fragment


# --- Engine ---

class MicrophoneEngine:
    """
    RecognitionEngine over the default (or given) input device.
    Audio runs on a capture thread; transcription runs on the event loop, one
    segment at a time so results arrive in speaking order.
    """

    def __init__(
        self,
        transcriber: GeminiSegmentTranscriber,
        gate_config: Optional[GateConfig] = None,
        device: Optional[int] = None,
    ):
        self.transcriber = transcriber
        self.gate_config = gate_config or GateConfig()
        self.device = device
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._listener: Optional[RecognitionListener] = None
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._lock: Optional[asyncio.Lock] = None
        self._pending: List = []

    def start(self, listener: RecognitionListener) -> None:
        if sd is None:
            raise RuntimeError("sounddevice is not available")
        self._loop = asyncio.get_running_loop()
        self._listener = listener
        self._lock = asyncio.Lock()
        self._stop_event = threading.Event()
        self._thread = threading.Thread(target=self._capture, args=(self._stop_event,), daemon=True)
        self._thread.start()

    def stop(self) -> None:
        """
        Signals the capture thread and returns at once; it is called on the event
        loop. The daemon thread closes its stream within one queue poll.
        """
        self._stop_event.set()
        for future in self._pending:
            future.cancel()
        self._pending = []
        self._thread = None

    def _capture(self, stop_event: threading.Event) -> None:
        frames: "queue.Queue[bytes]" = queue.Queue(maxsize=2048)
        gate = EnergyGate(self.gate_config)

        def callback(indata, _frames, _time_info, status):
            if status:
                logger.debug(f"input status: {status}")
            try:
                frames.put_nowait(indata.tobytes())
            except queue.Full:
                logger.warning("Dropped audio frame: queue full")

        try:
            with sd.InputStream(
                samplerate=SAMPLE_RATE,
                channels=1,
                dtype="int16",
                blocksize=FRAME_SAMPLES,
                device=self.device,
                callback=callback,
            ) as stream:
                while not stop_event.is_set():
                    if not stream.active:
                        break
                    try:
                        frame = frames.get(timeout=0.1)
                    except queue.Empty:
                        continue
                    for segment in gate.add_frame(frame):
                        self._submit(segment, stop_event)
        except Exception as e:
            if not stop_event.is_set():
                self._loop.call_soon_threadsafe(self._listener.on_error, str(e))
            return

        if not stop_event.is_set():
            trailing = gate.flush()
            if trailing:
                self._submit(trailing, stop_event)
            self._loop.call_soon_threadsafe(self._listener.on_end)

    def _submit(self, pcm16: bytes, stop_event: threading.Event) -> None:
        future = asyncio.run_coroutine_threadsafe(self._transcribe(pcm16, stop_event), self._loop)
        self._pending = [f for f in self._pending if not f.done()] + [future]

    async def _transcribe(self, pcm16: bytes, stop_event: threading.Event) -> None:
        async with self._lock:
            if stop_event.is_set():
                return
            text = ""
            try:
                async for fragment in self.transcriber.stream(pcm_to_wav(pcm16)):
                    if stop_event.is_set():
                        return
                    text += fragment
                    self._listener.on_result(TranscriptSegment(text=text, is_final=False))
            except Exception as e:
                if not stop_event.is_set():
                    self._listener.on_error(f"transcription failed: {e}")
                return
            if not stop_event.is_set():
                self._listener.on_result(TranscriptSegment(text=text, is_final=True))


def detect_engine(
    settings: Optional[Settings] = None,
    transcriber: Optional[GeminiSegmentTranscriber] = None,
) -> Optional[MicrophoneEngine]:
    """
    Feature detection at startup. Returns None when this runtime cannot record.
    """
    if sd is None:
        logger.warning("sounddevice/PortAudio not available; voice notes are disabled.")
        return None
    try:
        devices = list_input_devices()
    except Exception as e:
        logger.warning(f"Could not query audio devices: {e}")
        return None
    if not devices:
        logger.warning("No audio input device found; voice notes are disabled.")
        return None

    settings = settings or get_settings()
    transcriber = transcriber or GeminiSegmentTranscriber(settings)
    return MicrophoneEngine(transcriber, GateConfig.from_settings(settings))

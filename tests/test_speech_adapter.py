import pytest
from unittest.mock import MagicMock

from omnidiag.core.errors import CapabilityUnavailable, RecognitionError
from omnidiag.speech.adapter import SpeechCaptureAdapter, TranscriptSegment


def final(text):
    return TranscriptSegment(text=text, is_final=True)


def interim(text):
    return TranscriptSegment(text=text, is_final=False)


@pytest.fixture
def engine():
    return MagicMock()


@pytest.fixture
def updates():
    return []


@pytest.fixture
def adapter(engine, updates):
    return SpeechCaptureAdapter(engine, on_transcript=updates.append)


def test_unavailable_without_engine():
    adapter = SpeechCaptureAdapter(None)
    assert adapter.available is False
    with pytest.raises(CapabilityUnavailable):
        adapter.start()
    assert adapter.is_recording is False


def test_start_failure_is_recognition_error(engine):
    engine.start.side_effect = OSError("device busy")
    adapter = SpeechCaptureAdapter(engine)
    with pytest.raises(RecognitionError, match="device busy"):
        adapter.start()
    assert adapter.is_recording is False


def test_finals_accumulate_and_interim_is_replaced(adapter, updates):
    adapter.start()
    adapter.on_result(interim("the"))
    adapter.on_result(interim("the compressor"))
    assert adapter.transcript == "the compressor"

    adapter.on_result(final("the compressor clicks"))
    adapter.on_result(interim("then"))
    assert adapter.transcript == "the compressor clicks then"
    assert adapter.final_transcript == "the compressor clicks"
    assert updates[-1] == "the compressor clicks then"


def test_stop_keeps_only_final_text(adapter, engine):
    adapter.start()
    adapter.on_result(final("first part"))
    adapter.on_result(interim("unfinished"))

    assert adapter.stop() == "first part"
    assert adapter.transcript == "first part"
    assert adapter.is_recording is False
    engine.stop.assert_called_once()


def test_results_after_stop_are_ignored(adapter):
    adapter.start()
    adapter.stop()
    adapter.on_result(final("late"))
    assert adapter.transcript == ""


def test_start_begins_a_fresh_transcript(adapter):
    adapter.start()
    adapter.on_result(final("old note"))
    adapter.stop()
    adapter.start()
    assert adapter.transcript == ""


def test_restart_after_stream_end_preserves_finals(adapter, engine):
    adapter.start()
    adapter.on_result(final("water on the floor"))
    adapter.on_result(interim("near the"))

    adapter.on_end()

    assert engine.start.call_count == 2
    assert adapter.is_recording is True
    assert adapter.transcript == "water on the floor"

    adapter.on_result(interim("near"))
    assert adapter.transcript == "water on the floor near"
    adapter.on_result(interim("near the heater"))
    assert adapter.transcript == "water on the floor near the heater"

    adapter.on_result(final("near the heater"))
    assert adapter.transcript == "water on the floor near the heater"
    assert adapter.final_transcript == "water on the floor near the heater"


def test_stream_end_after_stop_does_not_restart(adapter, engine):
    adapter.start()
    adapter.stop()
    adapter.on_end()
    assert engine.start.call_count == 1


def test_engine_error_stops_and_keeps_finals(engine, updates):
    errors = []
    adapter = SpeechCaptureAdapter(engine, on_transcript=updates.append, on_error=errors.append)
    adapter.start()
    adapter.on_result(final("burning smell"))
    adapter.on_result(interim("from"))

    adapter.on_error("network")

    assert adapter.is_recording is False
    assert adapter.transcript == "burning smell"
    assert isinstance(adapter.last_error, RecognitionError)
    assert errors == [adapter.last_error]
    assert "network" in str(errors[0])


def test_failed_restart_is_reported_as_error(adapter, engine):
    adapter.start()
    adapter.on_result(final("kept"))
    engine.start.side_effect = RuntimeError("gone")

    adapter.on_end()

    assert adapter.is_recording is False
    assert adapter.transcript == "kept"
    assert "gone" in str(adapter.last_error)


def test_reset_clears_transcript(adapter, engine, updates):
    adapter.start()
    adapter.on_result(final("something"))
    adapter.reset()
    assert adapter.transcript == ""
    assert adapter.is_recording is False
    assert updates[-1] == ""

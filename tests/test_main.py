import argparse
import json

import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from conftest import load_report_data, make_report, streaming_llm

import main
from omnidiag.agents.follow_up import FollowUpClient
from omnidiag.config import Settings, reset_settings
from omnidiag.core.errors import MissingCredentialError
from omnidiag.core.schema import Severity
from omnidiag.core.session import DiagnosticSession
from omnidiag.speech.adapter import SpeechCaptureAdapter


def diagnose_args(**overrides):
    values = {"text": None, "image": None, "voice": False, "alert_threshold": None, "no_chat": True}
    values.update(overrides)
    return argparse.Namespace(**values)


@patch("omnidiag.agents.follow_up.ChatVertexAI")
@patch("omnidiag.agents.diagnostician.ChatVertexAI")
def test_build_session_prefers_cli_threshold(mock_diag, mock_chat, settings):
    settings.alert_threshold = "Low"
    assert main.build_session(settings).alert_threshold == Severity.LOW
    assert main.build_session(settings, "Critical").alert_threshold == Severity.CRITICAL
    assert main.build_session(settings, "None").alert_threshold is None


def test_build_session_without_project(tmp_path):
    settings = Settings(google_cloud_project=None, prompts_path=str(tmp_path / "p.json"), _env_file=None)
    with pytest.raises(MissingCredentialError):
        main.build_session(settings)


@pytest.mark.asyncio
async def test_diagnose_exits_nonzero_without_credentials(capsys):
    with patch("main.build_session", side_effect=MissingCredentialError("GOOGLE_CLOUD_PROJECT is not set.")):
        code = await main.run_diagnose(diagnose_args(text="hum"))
    assert code == 1
    assert "GOOGLE_CLOUD_PROJECT" in capsys.readouterr().err


@pytest.mark.asyncio
@patch("main.detect_engine", return_value=None)
@patch("omnidiag.agents.follow_up.ChatVertexAI")
@patch("omnidiag.agents.diagnostician.ChatVertexAI")
async def test_diagnose_prints_report(mock_diag, mock_chat, mock_detect, settings, capsys):
    mock_diag.return_value.ainvoke = AsyncMock(
        return_value=MagicMock(content=json.dumps(load_report_data()))
    )
    with patch("main.get_settings", return_value=settings):
        code = await main.run_diagnose(diagnose_args(text="Outdoor fan won't start", alert_threshold="High"))

    out = capsys.readouterr().out
    assert code == 0
    assert 'Proactive Alert: The detected risk level is "High"' in out
    assert "Condenser fan motor" in out
    assert "Simplified Explanation" in out


@pytest.mark.asyncio
@patch("main.detect_engine", return_value=None)
@patch("omnidiag.agents.follow_up.ChatVertexAI")
@patch("omnidiag.agents.diagnostician.ChatVertexAI")
async def test_diagnose_reports_failure(mock_diag, mock_chat, mock_detect, settings, capsys):
    mock_diag.return_value.ainvoke = AsyncMock(return_value=MagicMock(content="not json"))
    with patch("main.get_settings", return_value=settings):
        code = await main.run_diagnose(diagnose_args(text="Outdoor fan won't start"))

    assert code == 1
    assert "Error: Failed to parse diagnostic report" in capsys.readouterr().out


@pytest.mark.asyncio
async def test_diagnose_missing_image(settings, tmp_path, capsys):
    with patch("main.get_settings", return_value=settings), \
            patch("main.build_session", return_value=MagicMock()), \
            patch("main.detect_engine", return_value=None):
        code = await main.run_diagnose(diagnose_args(image=str(tmp_path / "missing.jpg")))
    assert code == 1
    assert "Image not found" in capsys.readouterr().err


@pytest.mark.asyncio
async def test_diagnose_image_path_is_directory(settings, tmp_path, capsys):
    with patch("main.get_settings", return_value=settings), \
            patch("main.build_session", return_value=MagicMock()), \
            patch("main.detect_engine", return_value=None):
        code = await main.run_diagnose(diagnose_args(image=str(tmp_path)))
    assert code == 1
    assert capsys.readouterr().err.strip() != ""


@pytest.mark.asyncio
async def test_diagnose_rejects_unknown_threshold_setting(monkeypatch, capsys):
    monkeypatch.setenv("ALERT_THRESHOLD", "Severe")
    reset_settings()
    try:
        with patch("main.build_session") as mock_build:
            code = await main.run_diagnose(diagnose_args(text="hum"))
    finally:
        reset_settings()

    assert code == 1
    assert "Configuration error" in capsys.readouterr().err
    mock_build.assert_not_called()


def test_devices_command(capsys):
    devices = [{"index": 2, "name": "USB Mic", "channels": 1}]
    with patch("main.list_input_devices", return_value=devices), \
            patch("sys.argv", ["main.py", "devices"]):
        main.main()
    assert "2: USB Mic (1 ch)" in capsys.readouterr().out


@pytest.mark.asyncio
async def test_repl_diagnoses_then_chats(settings, capsys):
    diagnostic = MagicMock()
    diagnostic.generate_report = AsyncMock(return_value=make_report())
    session = DiagnosticSession(diagnostic, FollowUpClient(settings, llm=streaming_llm("Check ", "the capacitor.")))
    adapter = SpeechCaptureAdapter(None)
    session.attach_speech(adapter)

    lines = ["Outdoor fan won't start", "What first?", ":history", ":voice", ":clear", "y", ":quit"]
    with patch("main.read_line", AsyncMock(side_effect=lines)):
        await main.run_repl(session, adapter)

    out = capsys.readouterr().out
    assert "Condenser fan motor" in out
    assert "OmniDiag: Check the capacitor." in out
    assert "* 1. [" in out
    assert "not supported" in out
    assert "History cleared." in out
    assert session.history == ()


@pytest.mark.asyncio
async def test_repl_survives_unreadable_image(tmp_path, capsys):
    session = MagicMock()
    session.chat = None
    adapter = SpeechCaptureAdapter(None)
    read = AsyncMock(side_effect=[f":image {tmp_path}", ":quit"])

    with patch("main.read_line", read):
        await main.run_repl(session, adapter)

    assert read.await_count == 2
    session.attach_image.assert_not_called()

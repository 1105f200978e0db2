import json
from pathlib import Path
from unittest.mock import MagicMock

import pytest
from langchain_core.messages import AIMessageChunk

from omnidiag.config import Settings
from omnidiag.core.schema import DiagnosticReport

FIXTURES = Path(__file__).parent / "fixtures"


def load_report_data(name: str = "report_ok.json") -> dict:
    with open(FIXTURES / name, "r", encoding="utf-8") as f:
        return json.load(f)


def make_report(severity: str = "High", fault_summary: str = None) -> DiagnosticReport:
    data = load_report_data()
    data["riskAssessment"]["severity"] = severity
    if fault_summary is not None:
        data["faultSummary"] = fault_summary
    return DiagnosticReport.model_validate(data)


@pytest.fixture
def report_data():
    return load_report_data()


@pytest.fixture
def report():
    return make_report()


@pytest.fixture
def settings(tmp_path):
    # prompts_path points at an empty temp dir so DEFAULT_PROMPTS are used.
    return Settings(
        google_cloud_project="test-project",
        prompts_path=str(tmp_path / "prompts.json"),
        _env_file=None,
    )


def streaming_llm(*fragments, error=None, gate=None):
    """
    LLM double whose astream yields the given fragments as chunks.
    With gate (an asyncio.Event), the stream pauses after the first fragment until it is set.
    """
    llm = MagicMock()

    async def astream(messages):
        for i, fragment in enumerate(fragments):
            if gate is not None and i == 1:
                await gate.wait()
            yield AIMessageChunk(content=fragment)
        if error is not None:
            raise error

    llm.astream = MagicMock(side_effect=astream)
    return llm

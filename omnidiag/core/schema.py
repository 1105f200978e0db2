"""
omnidiag/core/schema.py: Source of Truth for the report contract.
Includes the Pydantic models for the diagnostic report, the session history and
chat turns, plus the response schema sent to the model.
"""

import base64
import logging
import mimetypes
import uuid
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Literal, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

logger = logging.getLogger("omnidiag.core.schema")


class Severity(str, Enum):
    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"
    CRITICAL = "Critical"

    @property
    def rank(self) -> int:
        return SEVERITY_RANK[self]


SEVERITY_RANK = {
    Severity.LOW: 1,
    Severity.MEDIUM: 2,
    Severity.HIGH: 3,
    Severity.CRITICAL: 4,
}


class FixPriority(str, Enum):
    RECOMMENDED = "Recommended"
    OPTIONAL = "Optional"
    URGENT = "Urgent"


# --- Report Models (camelCase on the wire, immutable once decoded) ---

class ReportModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
        extra="forbid",
    )


class RiskAssessment(ReportModel):
    """Risk level of the fault with concrete consequences and mitigations."""
    severity: Severity = Field(..., description="The severity level of the risk.", examples=["High"])
    summary: str = Field(..., description="A brief summary of the overall risk.")
    potential_consequences: Tuple[str, ...] = Field(..., description="Specific negative consequences if the issue is not addressed.")
    mitigation_steps: Tuple[str, ...] = Field(..., description="Actionable steps to mitigate or prevent the identified risks.")


class TroubleshootingStep(ReportModel):
    """A single step of the further-diagnosis guide."""
    step: int = Field(..., ge=1, description="1-based position of the step", examples=[1, 2])
    action: str = Field(..., description="The action to perform for this step.")
    details: str = Field(..., description="Additional details or expected outcomes for the action.")


class RecommendedFix(ReportModel):
    fix: str = Field(..., description="The recommended fix.")
    priority: FixPriority = Field(..., description="The priority of this fix.", examples=["Urgent"])
    details: str = Field(..., description="More information about the implementation of the fix.")


class ToolsAndParts(ReportModel):
    tools: Tuple[str, ...] = Field(..., description="Tools that might be required.")
    parts: Tuple[str, ...] = Field(..., description="Potential parts that may need replacement.")


class DiagnosticReport(ReportModel):
    """The structured report produced for one submitted case."""
    fault_summary: str = Field(..., description="A concise summary of the primary fault or issue detected.")
    possible_causes: Tuple[str, ...] = Field(..., description="Likely root causes for the identified fault.")
    risk_assessment: RiskAssessment
    troubleshooting_steps: Tuple[TroubleshootingStep, ...]
    recommended_fixes: Tuple[RecommendedFix, ...]
    simplified_explanation: str = Field(..., description="A non-technical explanation suitable for a client or manager.")
    tools_and_parts: ToolsAndParts

    @field_validator("troubleshooting_steps")
    @classmethod
    def _check_step_numbers(cls, steps: Tuple[TroubleshootingStep, ...]) -> Tuple[TroubleshootingStep, ...]:
        numbers = [s.step for s in steps]
        if len(set(numbers)) != len(numbers):
            raise ValueError(f"Troubleshooting step numbers must be unique, got {numbers}")
        if sorted(numbers) != list(range(1, len(numbers) + 1)):
            logger.warning(f"Troubleshooting steps are not contiguous from 1: {numbers}")
        return steps

    @property
    def severity(self) -> Severity:
        return self.risk_assessment.severity


# --- Inputs ---

class ImageAttachment(BaseModel):
    """An inlined photo: media type plus base64 text of the bytes."""
    model_config = ConfigDict(frozen=True)

    media_type: str = Field(..., examples=["image/jpeg"])
    data: str = Field(..., description="Base64-encoded image bytes")

    @classmethod
    def from_path(cls, path: str) -> "ImageAttachment":
        file_path = Path(path)
        if not file_path.exists():
            raise FileNotFoundError(f"Image not found: {path}")
        media_type = mimetypes.guess_type(file_path.name)[0] or "image/png"
        data = base64.b64encode(file_path.read_bytes()).decode("ascii")
        return cls(media_type=media_type, data=data)

    @property
    def data_url(self) -> str:
        return f"data:{self.media_type};base64,{self.data}"


class InputSummary(BaseModel):
    """Redacted record of what a submission contained."""
    model_config = ConfigDict(frozen=True)

    has_text: bool
    has_image: bool
    transcript: str = ""


# --- Session Records ---

class HistoryEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    timestamp: datetime = Field(default_factory=datetime.now)
    report: DiagnosticReport
    user_input: InputSummary


class ChatTurn(BaseModel):
    """
    One message of the follow-up conversation.
    Assistant turns accept fragments while streaming and are frozen afterwards.
    """
    role: Literal["user", "assistant"]
    text: str = ""
    streaming: bool = False

    def append(self, fragment: str) -> None:
        if not self.streaming:
            raise ValueError("Cannot append to a finalized chat turn.")
        self.text += fragment

    def finalize(self, text: Optional[str] = None) -> None:
        if text is not None:
            self.text = text
        self.streaming = False


class ReportContext(BaseModel):
    """Fixed snapshot of a report that a follow-up chat is grounded in."""
    model_config = ConfigDict(frozen=True)

    fault_summary: str
    possible_causes: Tuple[str, ...]
    severity: Severity
    risk_summary: str
    submission: Optional[InputSummary] = None

    @classmethod
    def from_report(cls, report: DiagnosticReport, submission: Optional[InputSummary] = None) -> "ReportContext":
        return cls(
            fault_summary=report.fault_summary,
            possible_causes=report.possible_causes,
            severity=report.risk_assessment.severity,
            risk_summary=report.risk_assessment.summary,
            submission=submission,
        )


# --- Response Schema (OpenAPI subset accepted by Gemini) ---

def _string_list(description: str) -> dict:
    return {"type": "array", "description": description, "items": {"type": "string"}}


REPORT_RESPONSE_SCHEMA = {
    "type": "object",
    "properties": {
        "faultSummary": {
            "type": "string",
            "description": "A concise summary of the primary fault or issue detected.",
        },
        "possibleCauses": _string_list("A list of likely root causes for the identified fault."),
        "riskAssessment": {
            "type": "object",
            "description": "An assessment of the risks associated with the fault, including specific consequences and mitigation strategies.",
            "properties": {
                "severity": {
                    "type": "string",
                    "enum": [s.value for s in Severity],
                    "description": "The severity level of the risk.",
                },
                "summary": {"type": "string", "description": "A brief summary of the overall risk."},
                "potentialConsequences": _string_list(
                    "A list of specific, potential negative consequences if the issue is not addressed."
                ),
                "mitigationSteps": _string_list(
                    "A list of actionable steps to mitigate or prevent the identified risks."
                ),
            },
            "required": ["severity", "summary", "potentialConsequences", "mitigationSteps"],
        },
        "troubleshootingSteps": {
            "type": "array",
            "description": "A step-by-step guide to further diagnose the problem.",
            "items": {
                "type": "object",
                "properties": {
                    "step": {"type": "integer"},
                    "action": {"type": "string", "description": "The action to perform for this step."},
                    "details": {"type": "string", "description": "Additional details or expected outcomes for the action."},
                },
                "required": ["step", "action", "details"],
            },
        },
        "recommendedFixes": {
            "type": "array",
            "description": "A list of recommended actions to fix the issue.",
            "items": {
                "type": "object",
                "properties": {
                    "fix": {"type": "string", "description": "The recommended fix."},
                    "priority": {
                        "type": "string",
                        "enum": [p.value for p in FixPriority],
                        "description": "The priority of this fix.",
                    },
                    "details": {"type": "string", "description": "More information about the implementation of the fix."},
                },
                "required": ["fix", "priority", "details"],
            },
        },
        "simplifiedExplanation": {
            "type": "string",
            "description": "A simple, non-technical explanation of the problem and solution, suitable for a client or manager.",
        },
        "toolsAndParts": {
            "type": "object",
            "description": "A list of tools and potential parts needed for diagnosis or repair.",
            "properties": {
                "tools": _string_list("A list of tools that might be required."),
                "parts": _string_list("A list of potential parts that may need replacement."),
            },
            "required": ["tools", "parts"],
        },
    },
    "required": [
        "faultSummary",
        "possibleCauses",
        "riskAssessment",
        "troubleshootingSteps",
        "recommendedFixes",
        "simplifiedExplanation",
        "toolsAndParts",
    ],
}

import json
import logging
import os
from typing import Optional

from omnidiag.core.schema import ReportContext

logger = logging.getLogger("omnidiag.utils.prompts")

NO_DESCRIPTION = "No written description provided."
NO_VOICE_NOTE = "No voice note provided."

DEFAULT_PROMPTS = {
    "diagnostician": """You are OmniDiag, an expert AI diagnostic assistant. Analyze the user's input (text, images, audio transcript) to identify faults in any system (e.g., HVAC, electrical, mechanical, automotive, plumbing).
Your response MUST be a valid JSON object that adheres to the provided schema. Do not include any markdown formatting like ```json.
Provide a structured, actionable diagnostic report. Be thorough, clear, and professional.
For the 'riskAssessment', you must provide a detailed breakdown. Go beyond a simple description. Explicitly list at least 2-3 specific 'potentialConsequences' of ignoring the fault, and provide a corresponding list of actionable 'mitigationSteps' to prevent those consequences.
Number the 'troubleshootingSteps' from 1 without gaps.
Include a list of necessary tools and potential replacement parts.
""",
    "follow_up": """You are OmniDiag, an expert AI diagnostic assistant. You've provided the user with a diagnostic report. Now, you must answer their follow-up questions. Maintain the persona of a helpful, expert assistant.
""",
    "transcriber": """Transcribe the spoken audio verbatim. Return only the transcript text, without commentary.
If the audio contains no speech, return an empty response.
""",
}

PROMPTS_JSON = "prompts.json"


def fetch_system_prompt(role: str, path: Optional[str] = None) -> str:
    """
    Fetches the system prompt for a given role.
    Override file (prompts.json) > Default (DEFAULT_PROMPTS).
    """
    path = path or PROMPTS_JSON
    prompts = {}
    if os.path.exists(path):
        try:
            with open(path, "r", encoding="utf-8") as f:
                prompts = json.load(f)
        except (json.JSONDecodeError, IOError) as e:
            logger.error(f"Failed to load prompts from {path}: {e}. Falling back to defaults.")
            prompts = {}

    return prompts.get(role, DEFAULT_PROMPTS.get(role, "You are a helpful AI assistant."))


def build_case_prompt(description: Optional[str], transcript: Optional[str]) -> str:
    """The user-facing half of the diagnosis request."""
    return f"""
Please perform a diagnostic analysis based on the following information.

**User's Written Description:**
{(description or "").strip() or NO_DESCRIPTION}

**Transcript from User's Voice Note:**
{(transcript or "").strip() or NO_VOICE_NOTE}

Analyze the provided information and generate a complete diagnostic report.
"""


def build_follow_up_instruction(context: ReportContext, persona: str) -> str:
    """Hidden instruction that grounds a chat session in one report."""
    submission_line = ""
    if context.submission is not None:
        kinds = []
        if context.submission.has_text:
            kinds.append("A text description.")
        if context.submission.has_image:
            kinds.append("An image.")
        if context.submission.transcript:
            kinds.append("A voice note.")
        if kinds:
            submission_line = f"The user's original submission included: {' '.join(kinds)}\n"

    return f"""{persona.strip()}

HERE IS THE CONTEXT of the report you generated:
---
Fault Summary: {context.fault_summary}
Possible Causes: {', '.join(context.possible_causes)}
Risk: {context.severity.value} - {context.risk_summary}
---
{submission_line}Base all your answers on this context and the user's follow-up questions."""

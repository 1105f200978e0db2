"""
omnidiag/agents/diagnostician.py
--------------------------------
The Diagnostic Client. Sends one case (description, photo, voice transcript) to
Gemini with a strict response schema and decodes the answer into a
DiagnosticReport. Anything that does not decode into a complete report is a
DiagnosticError; the client never fills in missing fields.
"""

import json
import logging
from typing import Any, List, Optional

from langchain_core.messages import HumanMessage, SystemMessage
from langchain_google_vertexai import ChatVertexAI
from pydantic import ValidationError

from omnidiag.config import Settings, get_settings
from omnidiag.core.errors import DiagnosticError
from omnidiag.core.schema import REPORT_RESPONSE_SCHEMA, DiagnosticReport, ImageAttachment
from omnidiag.utils.prompts import build_case_prompt, fetch_system_prompt

logger = logging.getLogger("omnidiag.agents.diagnostician")


def content_to_text(content: Any) -> str:
    """Flattens a LangChain message content (str or list of parts) into text."""
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    parts = []
    for part in content:
        if isinstance(part, str):
            parts.append(part)
        elif isinstance(part, dict) and part.get("type", "text") == "text":
            parts.append(str(part.get("text", "")))
    return "".join(parts)


class DiagnosticClient:
    """
    Builds the diagnosis request and validates the structured answer.
    """
    def __init__(self, settings: Optional[Settings] = None, llm=None):
        self.settings = settings or get_settings()
        if llm is None:
            project = self.settings.require_project()
            llm = ChatVertexAI(
                model_name=self.settings.diagnostic_model,
                project=project,
                location=self.settings.google_cloud_location,
                temperature=self.settings.diagnostic_temperature,
                response_mime_type="application/json",
                response_schema=REPORT_RESPONSE_SCHEMA,
            )
        self.llm = llm
        self.system_instruction = fetch_system_prompt("diagnostician", self.settings.prompts_path)

    def build_messages(
        self,
        description: Optional[str],
        image: Optional[ImageAttachment] = None,
        transcript: Optional[str] = None,
    ) -> List:
        """System instruction plus one user message; the photo goes ahead of the text."""
        content: List[dict] = []
        if image is not None:
            content.append({"type": "image_url", "image_url": {"url": image.data_url}})
        content.append({"type": "text", "text": build_case_prompt(description, transcript)})
        return [SystemMessage(content=self.system_instruction), HumanMessage(content=content)]

    async def generate_report(
        self,
        description: Optional[str],
        image: Optional[ImageAttachment] = None,
        transcript: Optional[str] = None,
    ) -> DiagnosticReport:
        messages = self.build_messages(description, image, transcript)
        logger.info(
            f"Requesting diagnosis (text={bool(description)}, image={image is not None}, voice={bool(transcript)})"
        )
        try:
            response = await self.llm.ainvoke(messages)
        except Exception as e:
            logger.error(f"Error calling Gemini API: {e}")
            raise DiagnosticError(f"Failed to get diagnostic report from AI: {e}") from e

        return self.parse_report(content_to_text(getattr(response, "content", None)))

    @staticmethod
    def parse_report(raw_text: Optional[str]) -> DiagnosticReport:
        """
        Decodes the model output. The trimmed text must be a single JSON object
        matching the report schema.
        """
        text = (raw_text or "").strip()
        if not text:
            raise DiagnosticError("Failed to get diagnostic report from AI: empty response.")

        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            logger.error(f"Model returned non-JSON output: {text[:200]}")
            raise DiagnosticError(f"Failed to parse diagnostic report: {e}") from e

        if not isinstance(data, dict):
            raise DiagnosticError(
                f"Failed to parse diagnostic report: expected a JSON object, got {type(data).__name__}."
            )

        try:
            return DiagnosticReport.model_validate(data)
        except ValidationError as e:
            logger.error(f"Model output does not match the report schema: {e.error_count()} error(s)")
            raise DiagnosticError(f"Diagnostic report failed validation: {e}") from e

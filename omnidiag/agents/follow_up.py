"""
omnidiag/agents/follow_up.py
----------------------------
The Conversational Follow-up Client.
A chat session is seeded once with a hidden instruction that restates the
report it belongs to; replies are streamed back fragment by fragment.
"""

import logging
import uuid
from typing import AsyncIterator, List, Optional

from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage
from langchain_google_vertexai import ChatVertexAI

from omnidiag.agents.diagnostician import content_to_text
from omnidiag.config import Settings, get_settings
from omnidiag.core.errors import ChatError
from omnidiag.core.schema import ReportContext
from omnidiag.utils.prompts import build_follow_up_instruction, fetch_system_prompt

logger = logging.getLogger("omnidiag.agents.follow_up")


class ChatSessionHandle:
    """
    A conversation bound to one report context.
    The transcript only grows when a reply stream completes.
    """
    def __init__(self, context: ReportContext, system_instruction: str):
        self.id = uuid.uuid4().hex
        self.context = context
        self.system_instruction = system_instruction
        self.messages: List[BaseMessage] = [SystemMessage(content=system_instruction)]
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        """Marks the session as superseded; pending streams stop yielding."""
        self._closed = True


class FollowUpClient:
    def __init__(self, settings: Optional[Settings] = None, llm=None):
        self.settings = settings or get_settings()
        if llm is None:
            project = self.settings.require_project()
            llm = ChatVertexAI(
                model_name=self.settings.chat_model,
                project=project,
                location=self.settings.google_cloud_location,
            )
        self.llm = llm
        self.persona = fetch_system_prompt("follow_up", self.settings.prompts_path)

    def open_session(self, context: ReportContext) -> ChatSessionHandle:
        instruction = build_follow_up_instruction(context, self.persona)
        handle = ChatSessionHandle(context, instruction)
        logger.info(f"Opened chat session {handle.id} for '{context.fault_summary[:60]}'")
        return handle

    async def send_message(self, handle: ChatSessionHandle, text: str) -> AsyncIterator[str]:
        """
        Streams the reply to one question as text fragments, in arrival order.
        The iterator is single-use; ask again with a new call on the same handle.
        """
        if handle.closed:
            raise ChatError(f"Chat session {handle.id} is closed.")

        question = HumanMessage(content=text)
        request = handle.messages + [question]
        reply: List[str] = []

        try:
            async for chunk in self.llm.astream(request):
                if handle.closed:
                    logger.info(f"Chat session {handle.id} superseded; dropping the rest of the reply.")
                    return
                fragment = content_to_text(chunk.content)
                if not fragment:
                    continue
                reply.append(fragment)
                yield fragment
        except ChatError:
            raise
        except Exception as e:
            logger.error(f"Chat streaming failed in session {handle.id}: {e}")
            raise ChatError(f"Follow-up reply failed: {e}") from e

        handle.messages.extend([question, AIMessage(content="".join(reply))])

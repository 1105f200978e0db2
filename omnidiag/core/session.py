"""
omnidiag/core/session.py
------------------------
The Session State Machine.
Single owner of everything the front end shows: the case draft, the request
status, the active report, the alert, the session history and the follow-up
chat. Every transition is a method; front ends only read attributes and call
methods, so the machine can be tested without any rendering surface.

Report phase:  IDLE -> SUBMITTING -> REPORT_READY | ERROR
Chat phase:    NO_CHAT -> CHAT_OPEN <-> AWAITING_REPLY

All mutation happens on the event loop; an await is the only point where
another transition can interleave.
"""

import logging
from contextlib import aclosing
from enum import Enum
from typing import Callable, List, Optional, Tuple, Union

from pydantic import BaseModel

from omnidiag.agents.diagnostician import DiagnosticClient
from omnidiag.agents.follow_up import ChatSessionHandle, FollowUpClient
from omnidiag.core.alerts import evaluate_alert, parse_threshold
from omnidiag.core.errors import ChatError, DiagnosticError, EmptySubmissionError, HistoryEntryNotFound
from omnidiag.core.schema import (
    ChatTurn,
    DiagnosticReport,
    HistoryEntry,
    ImageAttachment,
    InputSummary,
    ReportContext,
    Severity,
)
from omnidiag.speech.adapter import SpeechCaptureAdapter

logger = logging.getLogger("omnidiag.core.session")

CHAT_APOLOGY = "Sorry, I encountered an error. Please try again."
EMPTY_SUBMISSION_MESSAGE = "Please provide a description, image, or voice note to start the diagnosis."


class SessionPhase(str, Enum):
    IDLE = "IDLE"
    SUBMITTING = "SUBMITTING"
    REPORT_READY = "REPORT_READY"
    ERROR = "ERROR"


class ChatPhase(str, Enum):
    NO_CHAT = "NO_CHAT"
    CHAT_OPEN = "CHAT_OPEN"
    AWAITING_REPLY = "AWAITING_REPLY"


class CaseDraft(BaseModel):
    """Input buffers for the case being composed."""
    text: str = ""
    image: Optional[ImageAttachment] = None
    transcript: str = ""

    @property
    def is_empty(self) -> bool:
        return not self.text and self.image is None and not self.transcript

    def summary(self) -> InputSummary:
        return InputSummary(has_text=bool(self.text), has_image=self.image is not None, transcript=self.transcript)


class DiagnosticSession:
    def __init__(
        self,
        diagnostic_client: DiagnosticClient,
        follow_up_client: FollowUpClient,
        alert_threshold: Union[str, Severity, None] = None,
    ):
        self.diagnostic_client = diagnostic_client
        self.follow_up_client = follow_up_client
        self.speech: Optional[SpeechCaptureAdapter] = None

        self.draft = CaseDraft()
        self.phase = SessionPhase.IDLE
        self.error: Optional[str] = None
        self.report: Optional[DiagnosticReport] = None
        self.active_index: Optional[int] = None
        self._history: List[HistoryEntry] = []

        self.chat: Optional[ChatSessionHandle] = None
        self.chat_turns: List[ChatTurn] = []
        self.chat_phase = ChatPhase.NO_CHAT

        self.alert_threshold: Optional[Severity] = parse_threshold(alert_threshold)
        self.alert: Optional[str] = None

        # Bumped by every submission; a result is committed only if its token is still current.
        self._submission = 0

    # --- Read-only views ---

    @property
    def history(self) -> Tuple[HistoryEntry, ...]:
        """Newest first."""
        return tuple(self._history)

    @property
    def is_loading(self) -> bool:
        return self.phase == SessionPhase.SUBMITTING

    @property
    def is_chat_loading(self) -> bool:
        return self.chat_phase == ChatPhase.AWAITING_REPLY

    @property
    def active_entry(self) -> Optional[HistoryEntry]:
        if self.active_index is None:
            return None
        return self._history[self.active_index]

    # --- Input buffers ---

    def attach_speech(self, adapter: SpeechCaptureAdapter) -> None:
        """Routes the adapter's running transcript into the draft."""
        self.speech = adapter
        adapter.on_transcript = self.set_transcript

    def set_text(self, text: str) -> None:
        self.draft.text = text

    def attach_image(self, image: Optional[ImageAttachment]) -> None:
        self.draft.image = image

    def clear_image(self) -> None:
        self.draft.image = None

    def set_transcript(self, transcript: str) -> None:
        self.draft.transcript = transcript

    def clear_inputs(self) -> None:
        self.draft = CaseDraft()
        if self.speech is not None:
            self.speech.reset()

    # --- Report lifecycle ---

    async def submit_case(
        self,
        text: Optional[str] = None,
        image: Optional[ImageAttachment] = None,
        transcript: Optional[str] = None,
    ) -> Optional[DiagnosticReport]:
        """
        Runs a diagnosis for the given inputs (or the current draft where an
        argument is omitted). Returns the report, or None when the call failed
        or was superseded by a newer submission.
        """
        draft = CaseDraft(
            text=self.draft.text if text is None else text,
            image=self.draft.image if image is None else image,
            transcript=self.draft.transcript if transcript is None else transcript,
        )
        if draft.is_empty:
            raise EmptySubmissionError(EMPTY_SUBMISSION_MESSAGE)
        self.draft = draft

        self._submission += 1
        token = self._submission
        self.phase = SessionPhase.SUBMITTING
        self.error = None
        self.report = None
        self.active_index = None
        self.alert = None
        self._close_chat()

        try:
            report = await self.diagnostic_client.generate_report(draft.text, draft.image, draft.transcript)
        except DiagnosticError as e:
            if token != self._submission:
                logger.info(f"Ignoring failure of superseded submission #{token}: {e}")
                return None
            logger.error(f"Diagnosis failed: {e}")
            self.phase = SessionPhase.ERROR
            self.error = str(e) or "An unexpected error occurred."
            return None

        if token != self._submission:
            logger.info(f"Discarding report of superseded submission #{token}")
            return None

        self.report = report
        self.phase = SessionPhase.REPORT_READY
        self.alert = evaluate_alert(report.severity, self.alert_threshold)
        self._history.insert(0, HistoryEntry(report=report, user_input=draft.summary()))
        self.active_index = 0
        self._open_chat(ReportContext.from_report(report))
        self.clear_inputs()
        logger.info(f"Report ready: {report.severity.value} - {report.fault_summary[:60]}")
        return report

    def select_history(self, entry_id: str) -> DiagnosticReport:
        for index, entry in enumerate(self._history):
            if entry.id == entry_id:
                break
        else:
            raise HistoryEntryNotFound(f"No history entry with id '{entry_id}'.")

        if self.phase == SessionPhase.SUBMITTING:
            logger.info(f"History selection supersedes pending submission #{self._submission}")
        self._submission += 1
        self.report = entry.report
        self.active_index = index
        self.alert = None
        self.error = None
        self.phase = SessionPhase.REPORT_READY
        self._open_chat(ReportContext.from_report(entry.report, entry.user_input))
        return entry.report

    def clear_history(self, confirm: bool = False) -> bool:
        """Empties the history. Irreversible, so it only acts when confirm is True."""
        if not confirm:
            return False
        self._history = []
        self.report = None
        self.active_index = None
        self.alert = None
        self._close_chat()
        if self.phase == SessionPhase.REPORT_READY:
            self.phase = SessionPhase.IDLE
        logger.info("Diagnostic history cleared.")
        return True

    def dismiss_alert(self) -> None:
        self.alert = None

    def dismiss_error(self) -> None:
        self.error = None
        if self.phase == SessionPhase.ERROR:
            self.phase = SessionPhase.IDLE

    def set_alert_threshold(self, threshold: Union[str, Severity, None]) -> None:
        self.alert_threshold = parse_threshold(threshold)

    # --- Follow-up chat ---

    def _open_chat(self, context: ReportContext) -> None:
        self._close_chat()
        self.chat = self.follow_up_client.open_session(context)
        self.chat_phase = ChatPhase.CHAT_OPEN

    def _close_chat(self) -> None:
        if self.chat is not None:
            self.chat.close()
        self.chat = None
        self.chat_turns = []
        self.chat_phase = ChatPhase.NO_CHAT

    async def send_chat_message(
        self,
        text: str,
        on_fragment: Optional[Callable[[str], None]] = None,
    ) -> Optional[ChatTurn]:
        """
        Asks a follow-up question and streams the answer into one assistant turn.
        on_fragment sees each fragment as it is applied to the turn.
        Returns that turn, or None when the message was not sent.
        """
        if not text or not text.strip() or self.chat is None or self.chat_phase == ChatPhase.AWAITING_REPLY:
            return None

        handle = self.chat
        self.chat_turns.append(ChatTurn(role="user", text=text))
        self.chat_phase = ChatPhase.AWAITING_REPLY
        reply = ChatTurn(role="assistant", streaming=True)
        self.chat_turns.append(reply)

        try:
            async with aclosing(self.follow_up_client.send_message(handle, text)) as stream:
                async for fragment in stream:
                    if self.chat is not handle:
                        logger.info("Chat superseded while streaming; dropping late fragments.")
                        break
                    reply.append(fragment)
                    if on_fragment:
                        on_fragment(fragment)
        except ChatError as e:
            logger.error(f"Chat error: {e}")
            reply.finalize(CHAT_APOLOGY)
        finally:
            if reply.streaming:
                reply.finalize()
            if self.chat is handle:
                self.chat_phase = ChatPhase.CHAT_OPEN

        return reply

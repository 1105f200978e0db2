import argparse
import asyncio
import logging
import sys
from typing import Optional

from dotenv import load_dotenv
from pydantic import ValidationError

from omnidiag.agents.diagnostician import DiagnosticClient
from omnidiag.agents.follow_up import FollowUpClient
from omnidiag.config import Settings, get_settings
from omnidiag.core.errors import (
    CapabilityUnavailable,
    EmptySubmissionError,
    HistoryEntryNotFound,
    MissingCredentialError,
    RecognitionError,
)
from omnidiag.core.schema import ImageAttachment
from omnidiag.core.session import DiagnosticSession, SessionPhase
from omnidiag.renderer import render_chat_turn, render_history, render_report
from omnidiag.speech.adapter import SpeechCaptureAdapter
from omnidiag.speech.microphone import detect_engine, list_input_devices

logger = logging.getLogger("omnidiag.main")

PROMPT = "omnidiag> "
THRESHOLD_CHOICES = ["None", "Low", "Medium", "High", "Critical"]
HELP_TEXT = """Commands:
  <text>          Describe a fault (no report yet) or ask a follow-up question
  :image PATH     Attach a photo to the next case (no PATH removes it)
  :voice          Record a voice note for the next case (Enter stops)
  :submit         Submit the current case draft
  :new TEXT       Submit a new case described by TEXT
  :history        List diagnoses from this session
  :select N       Reopen diagnosis N from the history
  :clear          Clear the history (asks for confirmation)
  :quit           Exit"""


def build_session(settings: Settings, alert_threshold: Optional[str] = None) -> DiagnosticSession:
    """Wires the clients into a session. Raises MissingCredentialError without a project."""
    threshold = alert_threshold if alert_threshold is not None else settings.alert_threshold
    return DiagnosticSession(
        diagnostic_client=DiagnosticClient(settings),
        follow_up_client=FollowUpClient(settings),
        alert_threshold=threshold,
    )


async def read_line(prompt: str = "") -> str:
    return await asyncio.to_thread(input, prompt)


async def record_voice_note(adapter: SpeechCaptureAdapter) -> str:
    adapter.start()
    print("Recording... press Enter to stop.")
    await read_line()
    transcript = adapter.stop()
    if adapter.last_error:
        print(str(adapter.last_error))
    return transcript


def show_outcome(session: DiagnosticSession) -> None:
    if session.phase == SessionPhase.ERROR:
        print(f"Error: {session.error}")
        session.dismiss_error()
        return
    if session.report is None:
        return
    if session.alert:
        print(f"\n!! {session.alert}\n")
    print(render_report(session.report))
    if session.chat is not None:
        print("\nAsk a follow-up question, or type :help.")


async def submit(session: DiagnosticSession, text: Optional[str] = None) -> None:
    print("Analyzing...")
    try:
        await session.submit_case(text=text)
    except EmptySubmissionError as e:
        print(str(e))
        return
    show_outcome(session)


async def ask(session: DiagnosticSession, text: str) -> None:
    streamed = []

    def echo(fragment: str) -> None:
        if not streamed:
            print("OmniDiag: ", end="", flush=True)
        streamed.append(fragment)
        print(fragment, end="", flush=True)

    turn = await session.send_chat_message(text, on_fragment=echo)
    if streamed:
        print()
    if turn is not None and "".join(streamed) != turn.text:
        # Replaced by the apology after a failed stream.
        print(render_chat_turn(turn))


async def run_repl(session: DiagnosticSession, adapter: SpeechCaptureAdapter) -> None:
    print(HELP_TEXT)
    while True:
        try:
            line = (await read_line(PROMPT)).strip()
        except EOFError:
            break
        if not line:
            continue

        command, _, argument = line.partition(" ")
        argument = argument.strip()

        if command in (":quit", ":exit"):
            break
        elif command == ":help":
            print(HELP_TEXT)
        elif command == ":image" and not argument:
            session.clear_image()
            print("Image removed.")
        elif command == ":image":
            try:
                session.attach_image(ImageAttachment.from_path(argument))
                print(f"Attached {argument}.")
            except OSError as e:
                print(str(e))
        elif command == ":voice":
            try:
                transcript = await record_voice_note(adapter)
            except (CapabilityUnavailable, RecognitionError) as e:
                print(str(e))
                continue
            print(f"Voice note: {transcript or '(nothing recognized)'}")
        elif command == ":submit":
            await submit(session)
        elif command == ":new":
            await submit(session, argument or None)
        elif command == ":history":
            print(render_history(session.history, session.active_index))
        elif command == ":select":
            try:
                entry = session.history[int(argument) - 1]
                session.select_history(entry.id)
            except (ValueError, IndexError, HistoryEntryNotFound):
                print(f"No history entry '{argument}'.")
                continue
            show_outcome(session)
        elif command == ":clear":
            answer = (await read_line("Clear all history? [y/N] ")).strip().lower()
            if session.clear_history(confirm=answer in ("y", "yes")):
                print("History cleared.")
        elif command.startswith(":"):
            print(f"Unknown command {command}. Type :help.")
        elif session.chat is not None:
            await ask(session, line)
        else:
            await submit(session, line)

    adapter.reset()


async def run_diagnose(args: argparse.Namespace) -> int:
    try:
        settings = get_settings()
        session = build_session(settings, args.alert_threshold)
    except (MissingCredentialError, ValidationError) as e:
        logger.critical(str(e))
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1

    adapter = SpeechCaptureAdapter(detect_engine(settings))
    session.attach_speech(adapter)

    if args.image:
        try:
            session.attach_image(ImageAttachment.from_path(args.image))
        except OSError as e:
            print(str(e), file=sys.stderr)
            return 1
    if args.voice:
        try:
            await record_voice_note(adapter)
        except (CapabilityUnavailable, RecognitionError) as e:
            print(str(e))
    if args.text or args.image or session.draft.transcript:
        await submit(session, args.text)

    if args.no_chat:
        return 0 if session.report is not None else 1

    await run_repl(session, adapter)
    return 0


def main():
    load_dotenv()

    parser = argparse.ArgumentParser(description="OmniDiag - AI diagnostic assistant")
    subparsers = parser.add_subparsers(dest="command")

    diagnose = subparsers.add_parser("diagnose", help="Diagnose a fault and ask follow-up questions")
    diagnose.add_argument("--text", help="Written description of the fault")
    diagnose.add_argument("--image", help="Path to a photo of the fault")
    diagnose.add_argument("--voice", action="store_true", help="Record a voice note before submitting")
    diagnose.add_argument("--alert-threshold", choices=THRESHOLD_CHOICES, default=None,
                          help="Raise an alert when severity meets or exceeds this level")
    diagnose.add_argument("--no-chat", action="store_true", help="Print the report and exit")

    subparsers.add_parser("devices", help="List audio input devices")

    args = parser.parse_args()

    # Setup logging
    logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')

    if args.command == "diagnose":
        sys.exit(asyncio.run(run_diagnose(args)))
    elif args.command == "devices":
        devices = list_input_devices()
        if not devices:
            print("No audio input devices found.")
        for dev in devices:
            print(f"{dev['index']}: {dev['name']} ({dev['channels']} ch)")
    else:
        parser.print_help()


if __name__ == "__main__":
    main()

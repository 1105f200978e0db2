"""
omnidiag/renderer.py
--------------------
The Report Renderer.
Pure functions from reports, history and chat turns to terminal text. Nothing
here mutates state; the front end decides what to print and when.
"""

from typing import Iterable, List, Optional, Sequence

from omnidiag.core.schema import ChatTurn, DiagnosticReport, HistoryEntry, Severity

NONE_SPECIFIED = "None specified."
METER_WIDTH = 4

SECTION_TITLES = (
    "Fault Summary",
    "Risk Assessment",
    "Possible Causes",
    "Troubleshooting Steps",
    "Recommended Fixes",
    "Tools & Parts",
    "Simplified Explanation",
)


def severity_meter(severity: Severity) -> str:
    """e.g. [###-] High"""
    filled = severity.rank
    return f"[{'#' * filled}{'-' * (METER_WIDTH - filled)}] {severity.value}"


def _heading(title: str) -> List[str]:
    return [title, "-" * len(title)]


def _bullets(items: Iterable[str]) -> List[str]:
    lines = [f"  - {item}" for item in items]
    return lines or [f"  {NONE_SPECIFIED}"]


def render_report(report: DiagnosticReport) -> str:
    lines: List[str] = []

    lines += _heading("Fault Summary")
    lines += [report.fault_summary, ""]

    risk = report.risk_assessment
    lines += _heading("Risk Assessment")
    lines += [f"Severity: {severity_meter(risk.severity)}", risk.summary, ""]
    lines += ["Potential Consequences:"] + _bullets(risk.potential_consequences)
    lines += ["Mitigation Steps:"] + _bullets(risk.mitigation_steps) + [""]

    lines += _heading("Possible Causes")
    lines += _bullets(report.possible_causes) + [""]

    lines += _heading("Troubleshooting Steps")
    if report.troubleshooting_steps:
        for step in sorted(report.troubleshooting_steps, key=lambda s: s.step):
            lines.append(f"  {step.step}. {step.action}")
            if step.details:
                lines.append(f"     {step.details}")
    else:
        lines.append(f"  {NONE_SPECIFIED}")
    lines.append("")

    lines += _heading("Recommended Fixes")
    if report.recommended_fixes:
        for fix in report.recommended_fixes:
            lines.append(f"  [{fix.priority.value}] {fix.fix}")
            if fix.details:
                lines.append(f"     {fix.details}")
    else:
        lines.append(f"  {NONE_SPECIFIED}")
    lines.append("")

    lines += _heading("Tools & Parts")
    lines += ["Tools:"] + _bullets(report.tools_and_parts.tools)
    lines += ["Parts:"] + _bullets(report.tools_and_parts.parts) + [""]

    lines += _heading("Simplified Explanation")
    lines.append(report.simplified_explanation)

    return "\n".join(lines)


def render_history(entries: Sequence[HistoryEntry], active_index: Optional[int] = None) -> str:
    """Numbered list, newest first; the active entry is marked with '*'."""
    if not entries:
        return "No diagnostic history yet."
    lines = []
    for index, entry in enumerate(entries):
        marker = "*" if index == active_index else " "
        stamp = entry.timestamp.strftime("%Y-%m-%d %H:%M")
        lines.append(
            f"{marker} {index + 1}. [{stamp}] {entry.report.severity.value:<8} {entry.report.fault_summary}"
        )
    return "\n".join(lines)


def render_chat_turn(turn: ChatTurn) -> str:
    speaker = "You" if turn.role == "user" else "OmniDiag"
    suffix = " ..." if turn.streaming else ""
    return f"{speaker}: {turn.text}{suffix}"


def render_chat(turns: Sequence[ChatTurn]) -> str:
    return "\n".join(render_chat_turn(turn) for turn in turns)

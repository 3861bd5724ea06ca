"""Prompt construction for the implementation agent.

Each attempt after the first carries the failures of the previous attempt,
parsed into short issue lines where the verifier output has a known format.
"""

from __future__ import annotations

import re

from ralph.core.models import AttemptEvidence, VerifierOutcome, WorkItem


class PromptBuilder:
    """Build the agent prompt from the item intent and prior evidence."""

    MAX_ISSUES = 20
    MAX_OUTPUT_CHARS = 4000

    _PYTEST_SUMMARY_RE = re.compile(r"^FAILED\s+(?P<test>\S+)\s*-?\s*(?P<msg>.*)$")
    _PYTEST_SECTION_RE = re.compile(r"^_{3,}\s*(?P<test>.+?)\s*_{3,}$")
    _LINT_RE = re.compile(
        r"^(?P<file>[^:\n]+):(?P<line>\d+):(?:(?P<col>\d+):)?\s*(?P<msg>.+)$", re.M
    )

    def build(self, item: WorkItem) -> str:
        header = f"Task {item.id}: {item.title}" if item.title else f"Task {item.id}"
        parts = [header, ""]
        parts.append(item.intent.strip())

        if item.dod.verifiers:
            parts.append("")
            parts.append("Definition of Done (all must pass):")
            for verifier in item.dod.verifiers:
                parts.append(f"- {verifier.name}: `{verifier.command}`")

        previous = item.evidence[-1] if item.evidence else None
        if previous is not None and not previous.passed:
            parts.append("")
            parts.append(self.failure_context(previous))

        return "\n".join(parts).strip() + "\n"

    def failure_context(self, evidence: AttemptEvidence) -> str:
        """Describe what failed on a previous attempt."""
        parts = [f"Attempt {evidence.attempt} failed."]
        if evidence.agent is not None and not evidence.agent.success and evidence.agent.error:
            parts.append(f"Agent error: {evidence.agent.error}")
        for outcome in evidence.outcomes:
            if outcome.passed:
                continue
            parts.append("")
            parts.append(self._describe_outcome(outcome))
        return "\n".join(parts)

    def _describe_outcome(self, outcome: VerifierOutcome) -> str:
        header = f"Verifier '{outcome.name}' failed"
        if outcome.timed_out:
            header += " (timed out)"
        if outcome.reason:
            header += f": {outcome.reason}"
        lines = [header]

        output = "\n".join(s for s in (outcome.stdout.strip(), outcome.stderr.strip()) if s)
        issues = self.parse_issues(output)
        if issues:
            lines.append("Issues:")
            lines.extend(f"- {issue}" for issue in issues)
        if output:
            lines.append("Output (truncated):")
            lines.append(_tail(output, self.MAX_OUTPUT_CHARS))
        return "\n".join(lines)

    def parse_issues(self, output: str) -> list[str]:
        """Pull one-line issues out of pytest or file:line:col style output."""
        if not output:
            return []

        lines = output.splitlines()
        detailed: list[str] = []
        current_test: str | None = None
        for line in lines:
            section = self._PYTEST_SECTION_RE.match(line.strip())
            if section:
                current_test = section.group("test").strip()
                continue
            if current_test and line.startswith("E   "):
                detailed.append(f"{current_test}: {line[4:].strip() or '(error)'}")
        if detailed:
            return detailed[: self.MAX_ISSUES]

        summary = []
        for line in lines:
            m = self._PYTEST_SUMMARY_RE.match(line.strip())
            if m:
                summary.append(f"{m.group('test')}: {m.group('msg').strip() or '(no message)'}")
        if summary:
            return summary[: self.MAX_ISSUES]

        located = []
        for m in self._LINT_RE.finditer(output):
            loc = f"{m.group('file')}:{m.group('line')}"
            if m.group("col"):
                loc += f":{m.group('col')}"
            located.append(f"{loc} {m.group('msg').strip()}")
        return located[: self.MAX_ISSUES]


def _tail(text: str, max_chars: int) -> str:
    """Keep the end of the output, where failures are usually reported."""
    if len(text) <= max_chars:
        return text
    return "...[truncated]\n" + text[-max_chars:]

"""Failure feedback threaded from one repair attempt into the next."""

from __future__ import annotations

import enum
from dataclasses import dataclass, replace
from typing import Optional, Tuple


class FailureKind(str, enum.Enum):
    """Why an attempt did not produce an acceptable fix."""

    AGENT_FAILED = "agent-failed"
    NO_CHANGES = "no-changes"
    PATCH_REJECTED = "patch-rejected"
    TESTS_FAILED = "tests-failed"


_GUIDANCE = {
    FailureKind.AGENT_FAILED: (
        "The agent exited with an error before producing a usable change. "
        "Reconsider the approach entirely instead of repeating it."
    ),
    FailureKind.NO_CHANGES: (
        "The previous attempt finished without changing any file. "
        "A fix must edit the source code; do not stop after analysing the problem."
    ),
    FailureKind.PATCH_REJECTED: (
        "The patch from the previous attempt was rejected before it was applied. "
        "Produce a smaller, valid unified diff that only touches the files needed for the fix."
    ),
    FailureKind.TESTS_FAILED: (
        "The previous fix was applied but the tests still fail. "
        "Work out why that fix was wrong from the output below before changing code again."
    ),
}

_OUTPUT_HEADINGS = {
    FailureKind.AGENT_FAILED: "Agent output",
    FailureKind.NO_CHANGES: "Agent output",
    FailureKind.PATCH_REJECTED: "Rejection reason",
    FailureKind.TESTS_FAILED: "Test output",
}


@dataclass(slots=True, frozen=True)
class RepairFeedback:
    """What the next attempt knows about the attempts before it.

    ``attempt_index`` is the 0-based index of the attempt about to run;
    ``kind`` and ``output`` describe the failure of the attempt just before it.
    Values are never mutated; :meth:`advance` returns the successor.
    """

    pre_fix_output: Optional[str] = None
    attempt_index: int = 0
    kind: Optional[FailureKind] = None
    output: str = ""
    history: Tuple[FailureKind, ...] = ()

    @property
    def is_retry(self) -> bool:
        return self.kind is not None

    def advance(self, kind: FailureKind, output: str) -> "RepairFeedback":
        """Record the failure of the current attempt and move to the next one."""
        return replace(
            self,
            attempt_index=self.attempt_index + 1,
            kind=kind,
            output=output,
            history=self.history + (kind,),
        )

    def render(self) -> str:
        """Feedback section for the next prompt; empty on the first attempt."""
        if self.kind is None:
            return ""
        lines = [
            f"PREVIOUS ATTEMPT FAILED ({self.kind.value}). This is retry attempt #{self.attempt_index + 1}.",
            _GUIDANCE[self.kind],
        ]
        if self.output.strip():
            lines.extend(["", f"{_OUTPUT_HEADINGS[self.kind]}:", "```", self.output.strip(), "```"])
        return "\n".join(lines)


__all__ = ["FailureKind", "RepairFeedback"]

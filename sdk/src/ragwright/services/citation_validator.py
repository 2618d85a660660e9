from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Final, Literal

from ragwright.schemas.rag_chat import Reference

CITATION_MARKER_RE: Final[re.Pattern[str]] = re.compile(r"\[(\d+)\]")

NO_EVIDENCE_ANSWER: Final[str] = "I do not know. (No grounded evidence retrieved)"
NO_CITATIONS_ANSWER: Final[str] = "I do not know. (No grounded citations available)"
CITATION_FAILED_ANSWER: Final[str] = "I do not know. (Citation validation failed)"

CitationFailure = Literal["missing_citations", "invalid_citations"]


@dataclass(frozen=True)
class CitationValidationResult:
    ok: bool
    issues: list[str]
    failure: CitationFailure | None = None
    cited: tuple[int, ...] = ()

    @property
    def replacement_answer(self) -> str | None:
        if self.failure == "missing_citations":
            return NO_CITATIONS_ANSWER
        if self.failure == "invalid_citations":
            return CITATION_FAILED_ANSWER
        return None


def extract_citation_markers(answer: str) -> list[int]:
    return [int(match) for match in CITATION_MARKER_RE.findall(answer)]


class CitationValidator:
    """Checks that an answer's inline ``[n]`` markers point at supplied references.

    Grounding is enforced rather than reported: callers replace a failing
    answer with the matching "I do not know" sentence.
    """

    def validate_answer(self, answer: str, references: list[Reference]) -> CitationValidationResult:
        if not references:
            return CitationValidationResult(ok=True, issues=[])

        markers = extract_citation_markers(answer)
        if not markers:
            return CitationValidationResult(
                ok=False,
                issues=["answer contains no [n] citation markers"],
                failure="missing_citations",
            )

        issues: list[str] = []
        for marker in sorted(set(markers)):
            if marker < 1 or marker > len(references):
                issues.append(
                    f"citation [{marker}] does not match any of {len(references)} reference(s)"
                )

        return CitationValidationResult(
            ok=not issues,
            issues=issues,
            failure="invalid_citations" if issues else None,
            cited=tuple(sorted(set(markers))),
        )

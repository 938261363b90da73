"""
Citation Extraction from Model Answers

Finds the numbered citations a model used in a free-form answer:

    ... as held in [1] CIT vs. Lovely Exports (P) Ltd [2008] 216 CTR 195 (SC) ...

    Sources:
    [1] CIT vs. Lovely Exports (P) Ltd [2008] 216 CTR 195 (SC)
    [2] DCIT vs. Rohini Builders (ITAT)

This is syntactic extraction only. Ids are whatever the model wrote and
need not match a retrieved source; citations the model knows from
elsewhere are kept.
"""

import re
import logging
from typing import Optional
from dataclasses import dataclass

logger = logging.getLogger(__name__)

# [n] followed by a capital-led run, optionally a [YYYY] year and a (Court),
# ending at the next bracket
INLINE_CITATION_PATTERN = re.compile(
    r"\[(\d+)\]\s*([A-Z][^\[\]]+(?:\[\d{4}\][^\[\]]+)?(?:\([^)]+\))?)"
)

# Trailing list, up to the next blank line or end of text
SOURCES_SECTION_PATTERN = re.compile(
    r"(?:Sources|Citations|References):\s*([\s\S]*?)(?:\n\n|\Z)",
    re.IGNORECASE,
)

SOURCES_LINE_PATTERN = re.compile(r"^\s*(?:[-*•]\s*)?\[(\d+)\]\s*(.+)")

PARAGRAPH_PATTERN = re.compile(
    r"(?:¶+\s*|\bparas?\.?\s*|\bparagraph\s+)(\d+)",
    re.IGNORECASE,
)

YEAR_PATTERN = re.compile(r"\[(\d{4})\]")


@dataclass
class Citation:
    """A numbered citation found in an answer."""
    id: int
    citation: str
    paragraph: Optional[int] = None

    @property
    def court(self) -> str:
        """Court inferred from the reporter suffix."""
        if "(SC)" in self.citation:
            return "Supreme Court"
        if "(HC)" in self.citation:
            return "High Court"
        return "ITAT"

    @property
    def year(self) -> Optional[int]:
        match = YEAR_PATTERN.search(self.citation)
        return int(match.group(1)) if match else None

    def to_dict(self) -> dict:
        result = {"id": self.id, "citation": self.citation}
        if self.paragraph is not None:
            result["paragraph"] = self.paragraph
        return result


def _paragraph_of(text: str) -> Optional[int]:
    match = PARAGRAPH_PATTERN.search(text)
    return int(match.group(1)) if match else None


class CitationExtractor:
    """
    Two-pass extractor.

    Pass 1 scans the whole text for inline ``[n] Citation`` runs. Pass 2
    reads a trailing "Sources:" / "Citations:" / "References:" section and
    only adds ids pass 1 did not find. The first text seen for an id wins.
    Never raises; text without citations gives an empty list.
    """

    def extract(self, text: str) -> list[Citation]:
        if not text:
            return []

        found: dict[int, Citation] = {}

        for match in INLINE_CITATION_PATTERN.finditer(text):
            cid = int(match.group(1))
            if cid in found:
                continue
            citation = match.group(2).strip()
            found[cid] = Citation(id=cid, citation=citation, paragraph=_paragraph_of(citation))

        # Prose such as "Sources: the record shows" may precede the list
        sections = list(SOURCES_SECTION_PATTERN.finditer(text))
        if sections:
            for line in sections[-1].group(1).split("\n"):
                line_match = SOURCES_LINE_PATTERN.match(line)
                if not line_match:
                    continue
                cid = int(line_match.group(1))
                if cid in found:
                    continue
                citation = line_match.group(2).strip()
                found[cid] = Citation(id=cid, citation=citation, paragraph=_paragraph_of(citation))

        return sorted(found.values(), key=lambda c: c.id)


def extract_citations(text: str) -> list[Citation]:
    """Extract numbered citations from an answer, ascending by id."""
    return CitationExtractor().extract(text)

"""
Prompt templates and grounding prompt assembly.

The system message is rebuilt for every request from:
base instructions + mode suffix + numbered retrieved sources (if any)
+ the closing "Sources:" requirement. It is never stored in history.
"""

import logging
from typing import Optional, Sequence
from dataclasses import dataclass

from .api_models import ConversationMessage
from .fragment_store import RankedFragment
from .retriever import similarity_percent, truncate_content

logger = logging.getLogger(__name__)


LEGAL_CONTEXT = """You are a legal research assistant specialized in Indian tax law and litigation. You help legal professionals research case law, analyze judgments, and prepare litigation documents.

KEY PRINCIPLES:
1. Always cite specific judgments with proper citations
2. Use formal legal language appropriate for tribunal/court submissions
3. Distinguish between binding precedents (SC) and persuasive authorities (HC/ITAT)
4. Highlight the ratio decidendi of each cited case
5. Note any conflicting precedents and how to distinguish them

COMMON SECTIONS AND THEIR CONTEXT:
- Section 68: Cash Credits - Addition for unexplained credits
- Section 69: Unexplained investments
- Section 69A: Unexplained money
- Section 69C: Unexplained expenditure
- Section 40A(3): Cash payments exceeding prescribed limit
- Section 148/148A: Reassessment proceedings
- Section 263: Revision by CIT
- Section 154: Rectification of mistakes
- Section 271(1)(c)/270A: Penalty for concealment/misreporting

CITATION FORMAT:
Use proper Indian legal citation format: Party Name [Year] Volume Reporter Page (Court)
Example: CIT vs. Lovely Exports (P) Ltd [2008] 216 CTR 195 (SC)
Cite judgments inline with numbered markers like [1], [2]."""

MODE_INSTRUCTIONS = {
    "sources-only": "MODE: Sources Only - Focus exclusively on citing relevant judgments with minimal analysis. List cases with their ratios.",
    "balanced": "MODE: Balanced - Provide thorough analysis with citations. Explain legal principles and their application.",
    "creative": "MODE: Creative - Suggest novel legal arguments and analogies. Consider different interpretive approaches.",
    "tribunal": "MODE: Tribunal Ready - Format response as if for tribunal submissions. Use formal language, numbered paragraphs, and precise legal terminology.",
}

GROUNDING_HEADER = "RETRIEVED SOURCES (paragraphs from the indexed judgment library, most relevant first):"

GROUNDING_INSTRUCTION = (
    "When you rely on a retrieved source, cite it as [n] using exactly the numbering above. "
    "You may supplement these with other authorities you know; number those after the retrieved sources."
)

SOURCES_SECTION_INSTRUCTION = (
    "IMPORTANT: When citing cases, use numbered references like [1], [2], etc. "
    "End your response with a section headed \"Sources:\" that lists every citation you used, "
    "one per line, each line starting with its bracketed number, for example:\n"
    "Sources:\n"
    "[1] CIT vs. Lovely Exports (P) Ltd [2008] 216 CTR 195 (SC)"
)


@dataclass
class PromptConfig:
    """Configuration for prompt assembly."""
    # Characters of each fragment included in the grounding block
    context_chars: int = 800


class PromptAssembler:
    """Builds the message list sent to the completion model."""

    def __init__(self, config: Optional[PromptConfig] = None):
        self.config = config or PromptConfig()

    def format_grounding(self, fragments: Sequence[RankedFragment]) -> str:
        """Numbered source block; ``[n]`` follows the order of ``fragments``."""
        entries = []
        for n, fragment in enumerate(fragments, start=1):
            header = (
                f"[{n}] {fragment.citation} ({fragment.court}) - "
                f"similarity {similarity_percent(fragment.similarity)}%"
            )
            body = truncate_content(fragment.content, self.config.context_chars, mark_at_budget=False)
            entries.append(f"{header}\n{body}")
        return "\n\n".join([GROUNDING_HEADER, *entries, GROUNDING_INSTRUCTION])

    def system_prompt(self, fragments: Sequence[RankedFragment], mode: str) -> str:
        """
        Build the synthesized system message.

        Raises:
            ValueError: if ``mode`` is not a known response mode
        """
        if mode not in MODE_INSTRUCTIONS:
            raise ValueError(f"Unknown response mode: {mode!r}")

        parts = [LEGAL_CONTEXT, MODE_INSTRUCTIONS[mode]]
        if fragments:
            parts.append(self.format_grounding(fragments))
        parts.append(SOURCES_SECTION_INSTRUCTION)
        return "\n\n".join(parts)

    def assemble(
        self,
        history: Sequence[ConversationMessage],
        fragments: Sequence[RankedFragment],
        mode: str = "balanced",
    ) -> list[ConversationMessage]:
        """
        Prepend the system message to the caller's history.

        History is passed through unmodified and in order; the caller has
        already appended the new user turn.
        """
        system = ConversationMessage(role="system", content=self.system_prompt(fragments, mode))
        logger.debug(f"Assembled prompt: mode={mode}, sources={len(fragments)}, turns={len(history)}")
        return [system, *history]


def assemble_prompt(
    history: Sequence[ConversationMessage],
    fragments: Sequence[RankedFragment],
    mode: str = "balanced",
) -> list[ConversationMessage]:
    """Assemble with default configuration."""
    return PromptAssembler().assemble(history, fragments, mode)

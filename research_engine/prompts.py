"""
Default prompt for set decomposition research.

The engine only needs the agent to end with a JSON object, optionally fenced
as ```json; callers with their own schema pass a different builder to
`create_app`.
"""

from __future__ import annotations

import json
from typing import Any, Callable, Sequence

PromptBuilder = Callable[[str, Sequence[Any], Sequence[Any]], str]


OUTPUT_FORMAT_INSTRUCTIONS: str = (
    "When you are done, reply with a single ```json fenced block and nothing after it. "
    "The object must have the keys `source`, `components`, `procedure_cost`, `validation`, "
    "`reasoning` and `confidence` (one of \"high\", \"medium\", \"low\"). Each component needs "
    "`component_type`, `emdn_code`, `description`, `estimated_price_eur`, `price_range`, "
    "`fraction_of_set`, `confidence`, `evidence_type`, `evidence_source` and `reasoning`. "
    "Fractions must sum to 1 and no single component may exceed 50% of the set price."
)


def build_research_prompt(
    subject_key: str,
    input_entries: Sequence[Any],
    matched_context: Sequence[Any] = (),
) -> str:
    """Return the research prompt for one product group."""

    entries_json = json.dumps(list(input_entries), indent=2, ensure_ascii=False, default=str)
    sections = [
        f"You are a medical device pricing analyst. Decompose the priced sets in group {subject_key} "
        "into their individual components and estimate a EUR price for each component.",
        f"Set entries for {subject_key}:\n{entries_json}",
    ]
    if matched_context:
        context_json = json.dumps(list(matched_context), indent=2, ensure_ascii=False, default=str)
        sections.append(
            "Catalog products already matched to this group (use them as price evidence):\n"
            f"{context_json}"
        )
    sections.append(
        "Use web search for published reimbursement catalogs where catalog evidence is missing, "
        "and cite every source you rely on."
    )
    sections.append(OUTPUT_FORMAT_INSTRUCTIONS)
    return "\n\n".join(sections)

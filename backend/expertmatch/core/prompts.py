# backend/expertmatch/core/prompts.py
"""
Prompt templates used by the pipeline.
- Keys: shortlist_rationale
- These are LangChain-friendly templates (use with ChatPromptTemplate.from_template)
"""

from __future__ import annotations

from typing import Dict, List

def _escape_braces_keep_vars(template: str, keep_vars: List[str]) -> str:
    esc = template.replace("{", "{{").replace("}", "}}")
    for v in keep_vars:
        esc = esc.replace("{{" + v + "}}", "{" + v + "}")
    return esc

PROMPTS: Dict[str, str] = {}

# Shortlist rationale for the admin reviewing matches
PROMPTS["shortlist_rationale"] = _escape_braces_keep_vars(r"""
You are an expert freelancer matching analyst. A client submitted a project brief and the matching
algorithm produced the shortlist below. Write:

1. One paragraph explaining why this shortlist fits the brief.
2. For each candidate, 1-3 concrete strengths and 1-3 risks/gaps.

Rules:
- Only use facts present in the brief and the candidate lines; do not invent experience.
- Refer to candidates by their candidate_id exactly as given.
- Keep it professional and actionable for an admin reviewing the matches.

Return STRICT JSON only:
{
  "overall_rationale": "<one paragraph>",
  "candidate_analysis": [
    {"candidate_id": "", "strengths": [""], "risks": [""]}
  ]
}

BRIEF:
Goal: {goal}
Context: {context}
Budget: {budget}
Timeline: {timeline}
Urgency: {urgency}

SHORTLIST:
{candidates}
""", ["goal", "context", "budget", "timeline", "urgency", "candidates"])

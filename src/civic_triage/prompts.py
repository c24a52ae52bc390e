from __future__ import annotations

SYSTEM_PROMPT = (
    "You are a triage assistant for a city's civic issue reporting service. "
    "Citizens report problems such as potholes, overflowing garbage, water leaks and broken streetlights. "
    "Answer with a single JSON object and nothing else."
)

CLASSIFICATION_PROMPT_TEMPLATE = (
    "Analyze the following civic issue and provide:\n"
    "1. Severity level (low/medium/high)\n"
    "2. Most appropriate department\n"
    "3. Priority score (0-100)\n"
    "4. Brief solution suggestions\n"
    "\n"
    "Title: {title}\n"
    "Description: {description}\n"
    "Reported Category: {category}\n"
    "\n"
    "Respond in JSON format with keys: severity, department, priorityScore, suggestions"
)


def build_classification_prompt(title: str, description: str, category: str) -> str:
    return CLASSIFICATION_PROMPT_TEMPLATE.format(
        title=(title or "").strip()[:500],
        description=(description or "").strip()[:4000],
        category=(category or "").strip(),
    )

"""
Text formatting utilities for diagnosis prompts.

Turn clarifying answers, search results and prior image analysis into
plain text blocks for the AI providers.
"""


def format_answers(answers: list) -> str:
    """Format clarifying Q&A pairs into readable text."""
    lines = []
    for i, qa in enumerate(answers, 1):
        if isinstance(qa, dict):
            question = qa.get('question', '')
            answer = qa.get('answer', '')
        else:
            question = getattr(qa, 'question', '')
            answer = getattr(qa, 'answer', '')
        if answer:
            lines.append(f"{i}. Q: {question}\n   A: {answer}")
    return "\n".join(lines) if lines else "None"


def format_search_results(results: list) -> str:
    """Format search hits into a numbered list."""
    lines = []
    for i, r in enumerate(results, 1):
        title = r.get('title', 'Untitled')
        snippet = r.get('snippet', '').replace("\n", " ").strip()
        link = r.get('link', '')
        lines.append(f"{i}. {title}\n   {snippet}\n   Source: {link}")
    return "\n\n".join(lines) if lines else "No search results"


def problem_labels(analysis: dict | None) -> list[str]:
    """Problem names from an analysis payload.

    Accepts plain `possibleProblems` strings and the guided-flow shape where
    `problems` / `refinedProblems` hold {label, reasoning, confidence} entries.
    """
    if not analysis:
        return []
    labels = []
    for key in ('possibleProblems', 'problems', 'refinedProblems'):
        value = analysis.get(key) or []
        if isinstance(value, (str, dict)):
            value = [value]
        for item in value:
            label = item.get('label') if isinstance(item, dict) else item
            if label is not None and str(label).strip():
                labels.append(str(label).strip())
    return labels


def format_image_analysis(analysis: dict | None) -> str:
    """Format a prior image-analysis payload."""
    if not analysis:
        return "Not available"
    lines = []
    for key in ('visualObservations', 'deviceType', 'visibleDamage', 'condition'):
        value = analysis.get(key)
        if value:
            lines.append(f"- {key}: {value}")
    labels = problem_labels(analysis)
    if labels:
        lines.append("- possibleProblems: " + ", ".join(labels))
    return "\n".join(lines) if lines else "Not available"


def format_description_analysis(analysis: dict | None) -> str:
    """Format refined problems, key symptoms and notes from a description analysis."""
    if not analysis:
        return "Not available"
    lines = []
    labels = problem_labels({'refinedProblems': analysis.get('refinedProblems')})
    if labels:
        lines.append("- refinedProblems: " + ", ".join(labels))
    symptoms = [str(s).strip() for s in analysis.get('keySymptoms') or [] if str(s).strip()]
    if symptoms:
        lines.append("- keySymptoms: " + ", ".join(symptoms))
    if analysis.get('analysisNotes'):
        lines.append(f"- notes: {analysis['analysisNotes']}")
    return "\n".join(lines) if lines else "Not available"


def analysis_terms(*analyses: dict | None) -> list[str]:
    """Lowercased problem phrases from prior analyses, for keyword matching."""
    return [label.lower() for analysis in analyses for label in problem_labels(analysis)]

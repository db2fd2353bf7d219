"""Final markdown report assembly."""
from __future__ import annotations

from deep_research.models.research import Source
from deep_research.tools.web_utils import clean_url

HIGH_CONFIDENCE = 0.85
MODERATE_CONFIDENCE = 0.65

KNOWLEDGE_ONLY_NOTE = (
    "> **Note:** This report was generated without real-time web search due to technical "
    "limitations. The information provided is based on the AI's knowledge.\n\n"
)


def confidence_score(web_search_succeeded: bool) -> float:
    return HIGH_CONFIDENCE if web_search_succeeded else MODERATE_CONFIDENCE


def confidence_label(web_search_succeeded: bool) -> str:
    if web_search_succeeded:
        return "High (Based on real-time web data)"
    return "Moderate (Based on AI knowledge)"


def _has_heading(content: str) -> bool:
    return "# " in content


def _has_sources_section(content: str) -> bool:
    lowered = content.lower()
    return "# sources" in lowered


def sources_section(urls: list[str]) -> str:
    unique = sorted({clean_url(url) for url in urls if url})
    lines = [f"{index}. [{url}]({url})" for index, url in enumerate(unique, 1)]
    return "## Sources\n\n" + "\n".join(lines) + "\n"


def format_report(content: str, sources: list[str], web_search_succeeded: bool) -> str:
    """Normalise synthesised text into the final report.

    Adds a knowledge-only note, a top heading, a sources list and a
    confidence line, each only when the content does not already carry one.
    """
    content = content or ""
    formatted = ""
    if not web_search_succeeded and "web search is currently unavailable" not in content:
        formatted = KNOWLEDGE_ONLY_NOTE

    if _has_heading(content):
        formatted += content
    else:
        formatted += "# Research Findings\n\n" + content

    if sources and not _has_sources_section(content):
        formatted += "\n\n" + sources_section(sources)

    if "Confidence level" not in formatted:
        formatted += f"\n\n> **Confidence level:** {confidence_label(web_search_succeeded)}\n"
    return formatted


def _bullets(items: list[str]) -> str:
    return "\n".join(f"- {item}" for item in items)


def partial_report(query: str, learnings: list[str], urls: list[str]) -> str:
    return (
        f"# Partial Research Report: {query}\n\n"
        "## Note\n\n"
        "An error occurred during the research process, but here are the insights "
        "we gathered before the error:\n\n"
        f"{_bullets(learnings)}\n\n"
        "## Sources\n\n"
        f"{_bullets(sorted(urls))}"
    )


def fallback_report(query: str, learnings: list[str], sources: list[Source]) -> str:
    """Report used when the final model call fails but findings exist."""
    source_lines = "\n".join(f"- [{s.title}]({s.url})" for s in sources)
    return (
        f"# Research Report: {query}\n\n"
        "## Summary\n\n"
        "There was an error generating the complete research report.\n\n"
        "## Raw Findings\n\n"
        f"{_bullets(learnings)}\n\n"
        "## Sources\n\n"
        f"{source_lines}"
    )


def no_findings_report(query: str) -> str:
    return (
        f"# Research Report: {query}\n\n"
        "## No Findings\n\n"
        "The research process completed, but no findings were gathered: the web searches "
        "returned no usable results for this topic or any of its follow-up questions.\n\n"
        "Try rephrasing the query, broadening its scope, or checking that the search "
        "service is configured correctly."
    )


def synthesis_fallback_report(query: str, search_block: str) -> str:
    """Regular-mode report when synthesis fails: the raw search block, lightly framed."""
    return (
        f"# Research Findings: {query}\n\n"
        "The report could not be synthesised, so the raw search findings are shown below.\n\n"
        f"{search_block}"
    )

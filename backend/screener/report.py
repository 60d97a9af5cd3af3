"""Free report composition from whatever artifacts a session has."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from html import escape
from typing import Optional

from .store import ANALYSIS, DETAILED, ORIGIN, VALUE


@dataclass
class Report:
    placeholder: bool
    sections: dict = field(default_factory=dict)
    html: str = ""

    def to_artifact(self, timestamp: int) -> dict:
        return {
            "timestamp": timestamp,
            "placeholder": self.placeholder,
            "sections": self.sections,
            "html": self.html,
        }


_PLACEHOLDER_HTML = (
    '<div style="color: #1f2937;">'
    '<h2 style="font-size: 20px;">Basic Report</h2>'
    '<div style="background: #f8fafc; padding: 16px; border-radius: 8px;">'
    "<p>Your image has been received and is pending analysis. For a complete analysis "
    "including artwork authenticity, origin determination, and professional "
    "recommendations, please visit our website.</p>"
    "</div></div>"
)


def _summary_section(analysis: Optional[dict]) -> Optional[dict]:
    if not analysis:
        return None
    openai_part = analysis.get("openai") or {}
    description = (analysis.get("vision") or {}).get("description") or {}
    return {
        "category": openai_part.get("category") or "Not specified",
        "description": openai_part.get("description") or "Not available",
        "labels": list(description.get("labels") or []),
    }


def _expert_section(origin: Optional[dict]) -> Optional[dict]:
    if not origin:
        return None
    oa = origin.get("originAnalysis") or {}
    keys = ("originality", "confidence", "style_analysis", "estimated_era", "estimated_origin",
            "material_or_medium", "comparison_notes", "recommendation")
    section = {k: oa.get(k) for k in keys if oa.get(k) not in (None, "")}
    section["unique_characteristics"] = list(oa.get("unique_characteristics") or [])
    return section


def _details_section(detailed: Optional[dict]) -> Optional[dict]:
    if not detailed:
        return None
    return {
        "concise_description": detailed.get("concise_description", ""),
        "maker": (detailed.get("maker_analysis") or {}).get("creator_name"),
        "age": (detailed.get("age_analysis") or {}).get("estimated_date_range"),
        "origin": (detailed.get("origin_analysis") or {}).get("likely_origin"),
    }


def _value_section(value: Optional[dict]) -> Optional[dict]:
    if not value:
        return None
    return {k: value[k] for k in ("minValue", "maxValue", "mostLikelyValue", "explanation") if k in value}


# ---------------------------------------------------------------------------
# HTML
# ---------------------------------------------------------------------------
def _h2(title: str) -> str:
    return f'<h2 style="color: #1f2937; font-size: 20px; margin-bottom: 16px;">{escape(title)}</h2>'


def _row(label: str, value) -> str:
    return f'<p style="margin: 0 0 8px;"><strong>{escape(label)}:</strong> {escape(str(value))}</p>'


def _render(sections: dict, generated_at: datetime) -> str:
    parts = ['<div style="color: #1f2937;">']

    summary = sections.get("summary")
    if summary:
        parts.append(_h2("Visual Analysis Summary"))
        parts.append(_row("Category", summary["category"]))
        parts.append(_row("Description", summary["description"]))
        if summary["labels"]:
            chips = "".join(
                f'<span style="background: #e5e7eb; padding: 4px 12px; border-radius: 16px;">{escape(l)}</span>'
                for l in summary["labels"]
            )
            parts.append(f'<div style="display: flex; flex-wrap: wrap; gap: 8px;">{chips}</div>')

    expert = sections.get("expert")
    if expert:
        parts.append(_h2("Expert Analysis"))
        originality = expert.get("originality")
        if originality:
            verdict = "Original Work" if originality == "original" else "Reproduction"
            confidence = expert.get("confidence")
            if isinstance(confidence, (int, float)):
                verdict += f" ({round(confidence * 100)}% confidence)"
            parts.append(_row("Assessment", verdict))
        for key, label in (("style_analysis", "Style Analysis"), ("estimated_era", "Estimated Era"),
                           ("estimated_origin", "Estimated Origin"), ("material_or_medium", "Material/Medium"),
                           ("comparison_notes", "Comparative Analysis"),
                           ("recommendation", "Professional Recommendation")):
            if expert.get(key):
                parts.append(_row(label, expert[key]))
        if expert["unique_characteristics"]:
            items = "".join(f"<li>{escape(str(c))}</li>" for c in expert["unique_characteristics"])
            parts.append(f"<h3>Unique Characteristics</h3><ul>{items}</ul>")

    details = sections.get("details")
    if details and details.get("concise_description"):
        parts.append(_h2("Detailed Description"))
        parts.append(_row("Summary", details["concise_description"]))

    value = sections.get("value")
    if value and all(isinstance(value.get(k), (int, float)) for k in ("minValue", "maxValue")):
        parts.append(_h2("Market Value"))
        parts.append(_row("Estimated Range", f"${value['minValue']:,} - ${value['maxValue']:,}"))

    parts.append(
        f'<p style="margin-top: 24px; font-size: 14px; color: #6b7280;">'
        f'Analysis Date: {generated_at.strftime("%B %d, %Y")}</p></div>'
    )
    return "".join(parts)


def compose_report(artifacts: dict[str, dict], generated_at: Optional[datetime] = None) -> Report:
    """Build the report from the artifacts that exist. With none, a placeholder."""
    sections = {
        "summary": _summary_section(artifacts.get(ANALYSIS)),
        "expert": _expert_section(artifacts.get(ORIGIN)),
        "details": _details_section(artifacts.get(DETAILED)),
        "value": _value_section(artifacts.get(VALUE)),
    }
    sections = {k: v for k, v in sections.items() if v}
    if not sections:
        return Report(placeholder=True, html=_PLACEHOLDER_HTML)
    return Report(placeholder=False, sections=sections,
                  html=_render(sections, generated_at or datetime.now(timezone.utc)))

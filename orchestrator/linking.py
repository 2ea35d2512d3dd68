from __future__ import annotations

import re
from typing import List, Optional

from orchestrator.models import ArtifactReference

TBD = "TBD"

RELATED_WORK_LABEL = "**Related Work:**"
QA_PLAN_LABEL = "**QA Test Plan:**"
SOURCE_LABEL = "**Source:**"
RELATED_RESOURCES_HEADING = "h2. Related Resources"
_IMPL_BULLET = "* Implementation Plan: "
_QA_BULLET = "* QA Test Plan: "
_OWN_RELATED_RESOURCES = re.compile(
    rf"^{re.escape(RELATED_RESOURCES_HEADING)}\n{re.escape(_IMPL_BULLET)}.*\n{re.escape(_QA_BULLET)}.*$",
    re.MULTILINE,
)

DEFAULT_QA_CHECKLIST: List[str] = [
    "Renders correctly at desktop, tablet and mobile breakpoints",
    "Keyboard navigation reaches every interactive element in order",
    "Visible focus state on every interactive element",
    "Screen reader announces names, roles and states",
    "Colour contrast meets WCAG AA",
    "Hover, active and disabled states match the design",
    "Empty, loading and error states are handled",
    "Long text and localisation do not break the layout",
]


def default_ticket_title(component_name: str) -> str:
    return f"Implement {component_name}"


def default_impl_plan_title(component_name: str) -> str:
    return f"Implementation Plan: {component_name}"


def default_qa_plan_title(component_name: str) -> str:
    return f"QA Test Plan: {component_name}"


def md_link(ref: Optional[ArtifactReference], label: Optional[str] = None) -> str:
    """Markdown link to an artifact, or the literal TBD when it was not created."""
    if ref is None or not ref.url:
        return TBD
    return f"[{label or ref.title or ref.key}]({ref.url})"


def jira_link(ref: Optional[ArtifactReference], label: Optional[str] = None) -> str:
    if ref is None or not ref.url:
        return TBD
    return f"[{label or ref.title or ref.key}|{ref.url}]"


# ---------------- implementation plan (B) ----------------


def render_impl_plan(body: str, ticket: Optional[ArtifactReference], design_url: Optional[str] = None) -> str:
    lines = [f"{RELATED_WORK_LABEL} {md_link(ticket, ticket.key if ticket else None)}"]
    if design_url and design_url not in body:
        lines.append(f"**Design:** [Design file]({design_url})")
    block = "\n".join(lines) + "\n"

    body = body or "No content generated"
    source_line = _find_line(body, SOURCE_LABEL)
    if source_line is not None:
        return _insert_after_line(body, source_line, block)
    return block + "\n" + body


def backpatch_qa_link(impl_body: str, qa_plan: ArtifactReference) -> str:
    """
    Put the QA page's real link into the implementation plan body.
    Replaces an existing QA line, otherwise goes right under the Related Work line.
    """
    if not qa_plan.url:
        raise ValueError("QA plan reference has no URL; refusing to back-patch a placeholder")

    line = f"{QA_PLAN_LABEL} {md_link(qa_plan)}"
    existing = _find_line(impl_body, QA_PLAN_LABEL)
    if existing is not None:
        return impl_body.replace(existing, line, 1)

    related = _find_line(impl_body, RELATED_WORK_LABEL)
    if related is not None:
        return _insert_after_line(impl_body, related, line + "\n")
    return line + "\n\n" + impl_body


# ---------------- QA plan (E) ----------------


def default_qa_checklist(component_name: str) -> str:
    items = "\n".join(f"- [ ] {item}" for item in DEFAULT_QA_CHECKLIST)
    return f"## Manual test checklist: {component_name}\n\n{items}\n"


def render_qa_plan(
    component_name: str,
    body: Optional[str],
    ticket: Optional[ArtifactReference],
    impl_plan: Optional[ArtifactReference],
) -> str:
    header = (
        f"**Ticket:** {md_link(ticket, ticket.key if ticket else None)}\n"
        f"**Implementation Plan:** {md_link(impl_plan)}\n"
        "\n---\n\n"
    )
    return header + (body if body else default_qa_checklist(component_name))


# ---------------- ticket cross-links (C) ----------------


def render_related_resources(
    impl_plan: Optional[ArtifactReference],
    qa_plan: Optional[ArtifactReference],
) -> str:
    return "\n".join(
        [
            RELATED_RESOURCES_HEADING,
            f"{_IMPL_BULLET}{jira_link(impl_plan)}",
            f"{_QA_BULLET}{jira_link(qa_plan)}",
        ]
    )


def with_related_resources(description: str, section: str) -> str:
    """
    Put `section` into a ticket description. Only a section this module rendered
    (heading plus the two link bullets) is replaced; any other text is kept.
    """
    description = description or ""
    m = _OWN_RELATED_RESOURCES.search(description)
    if m:
        return description[:m.start()] + section + description[m.end():]
    if not description:
        return section + "\n"
    return description.rstrip() + "\n\n" + section + "\n"


# ---------------- image embeds ----------------


def ticket_image_markup(filename: str) -> str:
    return f"!{filename}|thumbnail!"


def embed_ticket_image(description: str, filename: str) -> str:
    return (description or "") + "\n\n" + ticket_image_markup(filename)


def embed_page_image(body: str, filename: str) -> str:
    image = f"![Design Preview]({filename})"
    if "---\n\n" in body:
        return body.replace("---\n\n", f"---\n\n{image}\n\n", 1)
    return f"{image}\n\n{body}"


# ---------------- helpers ----------------


def _find_line(text: str, label: str) -> Optional[str]:
    m = re.search(rf"^.*{re.escape(label)}.*$", text, flags=re.MULTILINE)
    return m.group(0) if m else None


def _insert_after_line(text: str, line: str, block: str) -> str:
    idx = text.index(line) + len(line)
    if text[idx:idx + 1] == "\n":
        idx += 1
        return text[:idx] + block + text[idx:]
    return text[:idx] + "\n" + block + text[idx:]

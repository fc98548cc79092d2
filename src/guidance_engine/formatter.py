"""
Execution Result Formatter.

Renders an execution context for consumers that inject it into an agent's
prompt (hook output) or show it to a person (markdown report). Both renderers
accept the ExecutionContext itself or its to_dict() form, so results that
went through JSON can be formatted the same way.

The stop decision always comes first: a consumer that truncates the output
must still see it.
"""

import html
from typing import Any

from guidance_engine.catalog import InstructionCatalog
from guidance_engine.models import ExecutionContext


def _as_dict(result: ExecutionContext | dict[str, Any]) -> dict[str, Any]:
    if isinstance(result, ExecutionContext):
        return result.to_dict()
    return result


def _escape(value: Any) -> str:
    return html.escape(str(value), quote=True)


def format_hook_context(
    result: ExecutionContext | dict[str, Any],
    catalog: InstructionCatalog | None = None,
) -> str:
    """
    Format an execution result as XML-tagged context for hook injection.

    Args:
        result: ExecutionContext or its dictionary form
        catalog: Catalog used to resolve instruction paths (optional)

    Returns:
        XML-structured string
    """
    data = _as_dict(result)
    context = data.get("context", {})
    state = data.get("state", "proceed")

    output_parts = []
    output_parts.append(
        f'<guidance state="{_escape(state)}" fallback="{str(data.get("fallback", False)).lower()}">\n'
    )

    # Decision first so truncated output still carries it
    output_parts.append(f'<decision proceed="{str(data.get("proceed", True)).lower()}">\n')
    output_parts.append(f"<reason>{_escape(data.get('reason', ''))}</reason>\n")
    if not data.get("proceed", True):
        output_parts.append(
            "<directive>Do not continue with this request. Surface the reason "
            "to the user and wait for a human decision.</directive>\n"
        )
    output_parts.append("</decision>\n\n")

    output_parts.append(
        f'<context domain="{_escape(context.get("primary_domain", ""))}" '
        f'persona="{_escape(context.get("persona", ""))}" '
        f'complexity="{_escape(context.get("complexity", ""))}" '
        f'confidence="{context.get("confidence", 0)}">\n'
    )
    output_parts.append(
        f'<risk level="{_escape(data.get("risk_level", ""))}" '
        f'score="{data.get("risk_score", 0)}">\n'
    )
    for factor in data.get("risk_factors") or []:
        output_parts.append(f"<factor>{_escape(factor)}</factor>\n")
    output_parts.append("</risk>\n")
    suggested = context.get("suggested_persona")
    if suggested:
        output_parts.append(
            f'<suggested_persona confidence="{context.get("persona_confidence")}">'
            f"{_escape(suggested)}</suggested_persona>\n"
        )
    output_parts.append("</context>\n\n")

    mitigation = data.get("mitigation")
    if mitigation:
        output_parts.append("<mitigation>\n")
        for step in mitigation:
            output_parts.append(f"- {_escape(step)}\n")
        output_parts.append("</mitigation>\n\n")

    instructions = data.get("instructions", [])
    output_parts.append(
        f'<instructions count="{len(instructions)}" '
        f'truncated="{str(data.get("truncated", False)).lower()}" '
        f'degraded="{str(data.get("degraded", False)).lower()}">\n'
    )
    for instruction_id in instructions:
        entry = catalog.get(instruction_id) if catalog is not None else None
        if entry is not None and entry.path:
            output_parts.append(
                f'<instruction id="{_escape(instruction_id)}" type="{entry.type.value}">'
                f"{_escape(entry.path)}</instruction>\n"
            )
        else:
            output_parts.append(f'<instruction id="{_escape(instruction_id)}"/>\n')
    output_parts.append("</instructions>\n")

    output_parts.append("</guidance>")
    return "".join(output_parts)


def format_markdown(result: ExecutionContext | dict[str, Any]) -> str:
    """Format an execution result as a markdown report."""
    data = _as_dict(result)
    context = data.get("context", {})

    verdict = "PROCEED" if data.get("proceed", True) else "STOP"
    if data.get("state") == "proceed_with_mitigation":
        verdict = "PROCEED WITH MITIGATION"

    lines = [
        f"## Guidance: {verdict}",
        "",
        f"**Reason:** {data.get('reason', '')}",
        "",
        "| Field | Value |",
        "|---|---|",
        f"| Domain | {context.get('primary_domain', '')} |",
        f"| Persona | {context.get('persona', '')} |",
        f"| Complexity | {context.get('complexity', '')} |",
        f"| Risk | {data.get('risk_level', '')} ({data.get('risk_score', 0)}) |",
        f"| Confidence | {context.get('confidence', 0)} |",
    ]
    if context.get("suggested_persona"):
        lines.append(
            f"| Suggested persona | {context['suggested_persona']} "
            f"({context.get('persona_confidence')}) |"
        )
    if data.get("fallback"):
        lines.append("| Fallback | yes |")

    risk_factors = data.get("risk_factors") or []
    if risk_factors:
        lines += ["", "### Risk factors", ""]
        lines += [f"- {factor}" for factor in risk_factors]

    mitigation = data.get("mitigation") or []
    if mitigation:
        lines += ["", "### Mitigation", ""]
        lines += [f"- [ ] {step}" for step in mitigation]

    instructions = data.get("instructions", [])
    lines += ["", f"### Instructions ({len(instructions)})", ""]
    lines += [f"- `{instruction_id}`" for instruction_id in instructions]
    if data.get("truncated"):
        lines.append("")
        lines.append("_Some relevant instructions did not fit the size budget._")
    if data.get("degraded"):
        lines.append("")
        lines.append("_Core instructions alone exceed the size budget._")

    recommendations = context.get("pattern_recommendations") or []
    if recommendations:
        lines += ["", "### Recommendations", ""]
        lines += [f"- **{r['pattern']}**: {r['description']}" for r in recommendations]

    return "\n".join(lines) + "\n"

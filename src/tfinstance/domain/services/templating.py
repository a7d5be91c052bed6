"""Rendering of the ``self-*`` instance variables into spec properties and init.

Specs reference the values known only at provision time with
``{{ var('self-instance-id') }}``. Only variable expressions are enabled:
block and comment delimiters are moved out of the way so shell scripts such
as ``${#array[@]}`` pass through untouched.
"""

from __future__ import annotations

import json
from typing import Any

from jinja2 import Environment, StrictUndefined, TemplateError

from tfinstance.domain.models.resource import ResourceDocument


VAR_INSTANCE_ID = "self-instance-id"
VAR_LOGICAL_ID = "self-logical-id"
VAR_DEDICATED_ATTACH_ID = "self-dedicated-attach-id"


def instance_variables(
    instance_id: str, logical_id: str | None = None
) -> dict[str, str]:
    """Return the variables available to a spec being provisioned."""
    variables = {
        VAR_INSTANCE_ID: instance_id,
        VAR_DEDICATED_ATTACH_ID: f"{instance_id}-dedicated",
    }
    if logical_id is not None:
        variables[VAR_LOGICAL_ID] = logical_id
    return variables


def _environment() -> Environment:
    return Environment(
        undefined=StrictUndefined,
        autoescape=False,
        keep_trailing_newline=True,
        block_start_string="<%tf",
        block_end_string="%>",
        comment_start_string="<#tf",
        comment_end_string="#>",
    )


def render_text(text: str, variables: dict[str, str], json_escape: bool = False) -> str:
    """Render ``var(name)`` references in a string."""
    if "{{" not in text:
        return text

    def var(name: str) -> str:
        if name not in variables:
            raise TemplateRenderError(f"Unknown template variable: {name}")
        value = variables[name]
        if json_escape:
            # Strip the quotes; the value lands inside an existing JSON string
            return json.dumps(value)[1:-1]
        return value

    try:
        template = _environment().from_string(text)
        return template.render(var=var)
    except TemplateError as e:
        raise TemplateRenderError(f"Failed to render template: {e}") from e


def render_document(document: ResourceDocument, variables: dict[str, str]) -> ResourceDocument:
    """Render variables into every property of a resource document."""
    rendered = render_text(json.dumps(document), variables, json_escape=True)
    try:
        result: Any = json.loads(rendered)
    except json.JSONDecodeError as e:
        raise TemplateRenderError(f"Rendered properties are not valid JSON: {e}") from e
    return result


class TemplateRenderError(Exception):
    """Raised when spec templates cannot be rendered."""

"""
Template Resolution for node configurations.

Placeholders use the `{{.path}}` syntax, where path is a dotted walk
into the scope (e.g. `{{.user_id}}` or `{{.fetch_user.body.email}}`).
The scope is the workflow variables and execution input merged with the
outputs of the node's upstream dependencies.
"""

from typing import Any, Dict, Mapping, Optional
import json
import re

from dagflow.errors import TemplateResolutionError


# {{.path}}, {{ .path }} and {{path}} are all accepted
PLACEHOLDER = re.compile(r"\{\{\s*\.?([A-Za-z0-9_\-]+(?:\.[A-Za-z0-9_\-]+)*)\s*\}\}")

# Any {{...}} span, well-formed or not
BRACES = re.compile(r"\{\{(.*?)\}\}")

_MISSING = object()


def lookup(scope: Mapping[str, Any], path: str) -> Any:
    """
    Walk a dotted path into the scope.

    Mapping segments are looked up by key, list segments by integer index.

    Args:
        scope: Variable namespace
        path: Dotted path such as "fetch_user.body.items.0.id"

    Returns:
        The addressed value

    Raises:
        TemplateResolutionError: If any segment does not resolve
    """
    current: Any = scope
    for segment in path.split("."):
        value = _MISSING
        if isinstance(current, Mapping):
            value = current.get(segment, _MISSING)
        elif isinstance(current, (list, tuple)) and segment.lstrip("-").isdigit():
            index = int(segment)
            if -len(current) <= index < len(current):
                value = current[index]
        if value is _MISSING:
            raise TemplateResolutionError(path)
        current = value
    return current


def _render(value: Any) -> str:
    """Render a value for interpolation into a larger string."""
    if isinstance(value, str):
        return value
    if isinstance(value, (dict, list, bool)) or value is None:
        return json.dumps(value)
    return str(value)


def resolve(template: Any, scope: Mapping[str, Any]) -> Any:
    """
    Resolve placeholders in a single value.

    A string consisting of exactly one placeholder resolves to the raw
    value, so `{{.items}}` keeps its list type. Placeholders embedded in
    longer strings are interpolated as text. Non-string values are
    returned unchanged.

    Args:
        template: Value that may contain placeholders
        scope: Variable namespace

    Returns:
        The resolved value

    Raises:
        TemplateResolutionError: If a placeholder path is unknown or malformed
    """
    if not isinstance(template, str) or "{{" not in template:
        return template

    for span in BRACES.finditer(template):
        if not PLACEHOLDER.fullmatch(span.group(0)):
            raise TemplateResolutionError(span.group(1).strip(), template, reason="is malformed")

    whole = PLACEHOLDER.fullmatch(template.strip())
    if whole:
        try:
            return lookup(scope, whole.group(1))
        except TemplateResolutionError as e:
            raise TemplateResolutionError(e.path, template) from None

    def substitute(match: "re.Match[str]") -> str:
        try:
            return _render(lookup(scope, match.group(1)))
        except TemplateResolutionError as e:
            raise TemplateResolutionError(e.path, template) from None

    return PLACEHOLDER.sub(substitute, template)


def resolve_config(config: Any, scope: Mapping[str, Any]) -> Any:
    """
    Resolve every string value in a (nested) configuration payload.

    Dict keys are left untouched; dicts and lists are rebuilt so the
    node definition itself is never mutated.
    """
    if isinstance(config, dict):
        return {key: resolve_config(value, scope) for key, value in config.items()}
    if isinstance(config, list):
        return [resolve_config(item, scope) for item in config]
    return resolve(config, scope)


def build_scope(
    input_variables: Optional[Mapping[str, Any]],
    upstream_outputs: Optional[Mapping[str, Any]] = None,
    workflow_variables: Optional[Mapping[str, Any]] = None,
) -> Dict[str, Any]:
    """
    Merge workflow variables, the execution input and upstream node outputs.

    Later layers win: input keys override workflow variables, and outputs
    (keyed by node id) override both.
    """
    scope: Dict[str, Any] = dict(workflow_variables or {})
    scope.update(input_variables or {})
    scope.update(upstream_outputs or {})
    return scope

"""Prompt templates.

Two tokens are understood:

- ``{{name}}`` is replaced with the value of ``name``.
- ``{{#if name}}...{{/if}}`` keeps its body only when ``name`` is set to a
  non-empty value other than ``"false"``. Blocks may nest.

Anything else between double braces is left untouched. ``$name`` references
are not expanded here; they only appear in a step's ``input`` field.
"""

import re
from dataclasses import dataclass, field
from typing import Collection, List, Mapping, Optional, Set, Union

from silo.errors import TemplateSyntaxError, UndefinedVariableError

TOKEN_RE = re.compile(r"\{\{\s*(?:(#if)\s+\$?(\w+)|(/if)|\$?(\w+))\s*\}\}")

FALSY = {"", "false"}


@dataclass
class _Block:
    name: Optional[str] = None
    parts: List[Union[str, "_Var", "_Block"]] = field(default_factory=list)


@dataclass
class _Var:
    name: str


def _parse(template: str) -> _Block:
    root = _Block()
    stack = [root]
    position = 0

    for match in TOKEN_RE.finditer(template):
        if match.start() > position:
            stack[-1].parts.append(template[position:match.start()])
        position = match.end()

        if match.group(1):
            block = _Block(name=match.group(2))
            stack[-1].parts.append(block)
            stack.append(block)
        elif match.group(3):
            if len(stack) == 1:
                raise TemplateSyntaxError("{{/if}} without a matching {{#if}}")
            stack.pop()
        else:
            stack[-1].parts.append(_Var(match.group(4)))

    if len(stack) > 1:
        raise TemplateSyntaxError(f"Unclosed {{{{#if {stack[-1].name}}}}} block")

    if position < len(template):
        root.parts.append(template[position:])
    return root


def is_truthy(value: Optional[str]) -> bool:
    return value is not None and value not in FALSY


def interpolate(
    template: str,
    context: Mapping[str, str],
    optional: Collection[str] = (),
    step: Optional[str] = None,
) -> str:
    """
    Render a prompt template against the execution context.

    Args:
        template: Prompt text
        context: Variable name -> current string value
        optional: Names that render as "" when absent instead of failing
        step: Step name, used in error messages

    Returns:
        Rendered text

    Raises:
        UndefinedVariableError: A required placeholder has no value
        TemplateSyntaxError: Unbalanced {{#if}} / {{/if}}
    """
    if "{{" not in template:
        return template

    try:
        tree = _parse(template)
    except TemplateSyntaxError as e:
        if step:
            raise TemplateSyntaxError(f"Step '{step}': {e}") from e
        raise

    return _render(tree, context, optional, step)


def _render(block: _Block, context: Mapping[str, str], optional: Collection[str], step: Optional[str]) -> str:
    out = []
    for part in block.parts:
        if isinstance(part, str):
            out.append(part)
        elif isinstance(part, _Var):
            if part.name in context:
                out.append(context[part.name])
            elif part.name not in optional:
                raise UndefinedVariableError(part.name, step)
        elif is_truthy(context.get(part.name)):
            out.append(_render(part, context, optional, step))
    return "".join(out)


def placeholders(template: str) -> Set[str]:
    """Names referenced by ``{{name}}`` or ``{{#if name}}`` tokens."""
    names = set()
    for match in TOKEN_RE.finditer(template):
        name = match.group(2) or match.group(4)
        if name:
            names.add(name)
    return names

# src/helloagain/codec/prompts.py
"""Jinja2-based per-row prompt rendering.

Only short identity fields reach the template: name, company and position,
each truncated to a fixed length. Free-text columns never do, which keeps
every request in the batch small and bounded.
"""

from __future__ import annotations

from typing import Any

from jinja2 import StrictUndefined, TemplateSyntaxError, UndefinedError
from jinja2.exceptions import SecurityError
from jinja2.sandbox import SandboxedEnvironment

from helloagain.contracts.errors import HelloAgainError
from helloagain.contracts.records import RowRecord

DEFAULT_SYSTEM_PROMPT = "Return location and stats in JSON. Infer if needed."

DEFAULT_PROMPT_TEMPLATE = (
    "{{ row.first_name }} {{ row.last_name }} at {{ row.company }} ({{ row.position }}). "
    "Infer: location (city, country, lat/lng), LinkedIn stats (connections/followers). "
    "Use null if unknown."
)

DEFAULT_MAX_FIELD_LENGTH = 80

UNKNOWN_PLACEHOLDER = "Unknown"


class TemplateError(HelloAgainError):
    """Error in template rendering (including sandbox violations)."""


def _truncate(value: str, limit: int) -> str:
    return value if len(value) <= limit else value[:limit]


def prompt_fields(row: RowRecord, *, max_field_length: int = DEFAULT_MAX_FIELD_LENGTH) -> dict[str, str]:
    """The bounded field set a template may reference as ``row.*``."""
    return {
        "first_name": _truncate(row.first_name, max_field_length),
        "last_name": _truncate(row.last_name, max_field_length),
        "company": _truncate(row.company or UNKNOWN_PLACEHOLDER, max_field_length),
        "position": _truncate(row.position or UNKNOWN_PLACEHOLDER, max_field_length),
    }


class PromptTemplate:
    """Sandboxed Jinja2 template rendered once per row.

    Templates access row data via the ``row`` namespace:
        {{ row.first_name }} {{ row.last_name }} at {{ row.company }}

    Only the fields from :func:`prompt_fields` exist in that namespace;
    referencing anything else (``row.email_address``) is an undefined
    variable and fails the render.
    """

    def __init__(self, template_string: str = DEFAULT_PROMPT_TEMPLATE, *, max_field_length: int = DEFAULT_MAX_FIELD_LENGTH) -> None:
        """Initialize template.

        Raises:
            TemplateError: If template syntax is invalid
        """
        self._template_string = template_string
        self._max_field_length = max_field_length

        self._env = SandboxedEnvironment(
            undefined=StrictUndefined,  # Raise on undefined variables
            autoescape=False,  # No HTML escaping for prompts
        )

        try:
            self._template = self._env.from_string(template_string)
        except TemplateSyntaxError as e:
            raise TemplateError(f"Invalid template syntax: {e}") from e

    @property
    def template_string(self) -> str:
        return self._template_string

    @property
    def max_field_length(self) -> int:
        return self._max_field_length

    def render(self, row: RowRecord) -> str:
        """Render the prompt for one row.

        Raises:
            TemplateError: If rendering fails (undefined variable, sandbox violation, etc.)
        """
        context: dict[str, Any] = {"row": prompt_fields(row, max_field_length=self._max_field_length)}

        try:
            return self._template.render(**context)
        except UndefinedError as e:
            raise TemplateError(f"Undefined variable: {e}") from e
        except SecurityError as e:
            raise TemplateError(f"Sandbox violation: {e}") from e
        except Exception as e:
            raise TemplateError(f"Template rendering failed: {e}") from e


_DEFAULT_TEMPLATE: PromptTemplate | None = None


def serialize_for_inference(row: RowRecord, template: PromptTemplate | None = None) -> str:
    """Compact prompt string for one row.

    Args:
        row: Row to describe
        template: Template to render with; the built-in prompt if None
    """
    global _DEFAULT_TEMPLATE
    if template is None:
        if _DEFAULT_TEMPLATE is None:
            _DEFAULT_TEMPLATE = PromptTemplate()
        template = _DEFAULT_TEMPLATE
    return template.render(row)

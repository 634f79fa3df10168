# src/helloagain/batch/compiler.py
"""Compile parsed rows into batch inference requests."""

from __future__ import annotations

import copy
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from helloagain.batch.schema import PROFILE_SCHEMA, ensure_strict_schema
from helloagain.codec.prompts import DEFAULT_SYSTEM_PROMPT, PromptTemplate
from helloagain.contracts.records import InferenceRequest, RowRecord, correlation_id_for

if TYPE_CHECKING:
    from helloagain.core.config import HelloAgainSettings


@dataclass(frozen=True)
class RequestCompiler:
    """Builds one request per row, all sharing model, instruction and schema.

    The remote has no batch-level schema registration, so the schema is
    embedded in every request body. Compilation is deterministic: the same
    rows and schema always give the same requests, so a failed submit can
    be recompiled and retried freely.
    """

    model: str = "gpt-4o-mini"
    route: str = "/v1/chat/completions"
    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    schema_name: str = "profile"
    template: PromptTemplate = field(default_factory=PromptTemplate)
    temperature: float | None = None
    max_tokens: int | None = None

    @classmethod
    def from_settings(cls, settings: HelloAgainSettings) -> RequestCompiler:
        return cls(
            model=settings.openai.model,
            route=settings.openai.route,
            system_prompt=settings.prompt.system_prompt,
            schema_name=settings.prompt.schema_name,
            template=PromptTemplate(settings.prompt.template, max_field_length=settings.prompt.max_field_length),
            temperature=settings.prompt.temperature,
            max_tokens=settings.prompt.max_tokens,
        )

    def compile(self, rows: Sequence[RowRecord], schema: dict[str, Any] | None = None) -> list[InferenceRequest]:
        """One InferenceRequest per row, ids ``req-1`` .. ``req-N``.

        Each body holds its own copy of the schema (PROFILE_SCHEMA if None),
        so editing one request never leaks into another or into the caller's
        schema.

        Raises:
            SchemaInvalid: If schema is not strict-mode compliant. Raised
                before any request is built.
            TemplateError: If the prompt template fails for a row
        """
        schema = PROFILE_SCHEMA if schema is None else schema
        ensure_strict_schema(schema)

        response_format = {
            "type": "json_schema",
            "json_schema": {"name": self.schema_name, "strict": True, "schema": schema},
        }

        return [
            InferenceRequest(
                correlation_id=correlation_id_for(index),
                method="POST",
                url=self.route,
                body=self._build_body(row, response_format),
            )
            for index, row in enumerate(rows)
        ]

    def _build_body(self, row: RowRecord, response_format: dict[str, Any]) -> dict[str, Any]:
        body: dict[str, Any] = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": self.system_prompt},
                {"role": "user", "content": self.template.render(row)},
            ],
            "response_format": copy.deepcopy(response_format),
        }
        if self.temperature is not None:
            body["temperature"] = self.temperature
        if self.max_tokens is not None:
            body["max_tokens"] = self.max_tokens
        return body

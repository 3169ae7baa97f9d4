"""
Jinja2 template rendering for Herald channel payloads.

Templates are looked up as ``"{channel}/{template_id}"`` first, then as
the bare ``template_id``, so a channel-specific variant overrides the
shared one.  Rendering runs in a sandboxed environment with strict
undefined handling: a variable missing from the context is a render
error, never an empty string.
"""

from __future__ import annotations

import json
from typing import Any, Protocol

import structlog
from jinja2 import StrictUndefined, TemplateError
from jinja2.sandbox import SandboxedEnvironment

from .errors import TemplateNotFound, TemplateRenderError

logger = structlog.get_logger()

DEFAULT_TEMPLATES: dict[str, str] = {
    "default": "[{{ request.severity | upper }}] {{ message | default(request.id) }}",
    "slack/default": (
        "*{{ request.severity | upper }}* {{ message | default(request.id) }}\n"
        "{% if request.tags %}tags: {{ request.tags | join(', ') }}{% endif %}"
    ),
}


class TemplateRenderer(Protocol):
    """What the notification service needs from a renderer."""

    def render(self, template_id: str, context: dict[str, Any]) -> str: ...


class JinjaTemplateRenderer:
    """Sandboxed Jinja2 renderer over an in-memory template registry.

    Args:
        templates: Initial ``template_id -> source`` mapping.  Defaults to
                   :data:`DEFAULT_TEMPLATES`.
    """

    def __init__(self, templates: dict[str, str] | None = None) -> None:
        self._env = SandboxedEnvironment(
            autoescape=False,
            undefined=StrictUndefined,
            trim_blocks=True,
            lstrip_blocks=True,
        )
        self._env.filters["json"] = json.dumps
        self._sources: dict[str, str] = {}
        for template_id, source in (DEFAULT_TEMPLATES if templates is None else templates).items():
            self.register(template_id, source)

    def register(self, template_id: str, source: str) -> None:
        """Add or replace a template.

        Raises:
            TemplateRenderError: If *source* does not compile.
        """
        try:
            self._env.from_string(source)
        except TemplateError as exc:
            raise TemplateRenderError(f"invalid template {template_id!r}: {exc}", template_id) from exc
        self._sources[template_id] = source

    def resolve(self, template_id: str) -> str:
        """Return the registered id used for *template_id*.

        Raises:
            TemplateNotFound: If neither the id nor its family exists.
        """
        if template_id in self._sources:
            return template_id
        _, _, family = template_id.partition("/")
        if family and family in self._sources:
            return family
        raise TemplateNotFound(template_id)

    def render(self, template_id: str, context: dict[str, Any]) -> str:
        """Render *template_id* with *context*.

        Raises:
            TemplateNotFound: If the template is not registered.
            TemplateRenderError: If rendering fails (e.g. missing variable).
        """
        resolved = self.resolve(template_id)
        try:
            return self._env.from_string(self._sources[resolved]).render(**context)
        except TemplateError as exc:
            logger.warning("template_render_failed", template_id=resolved, error=str(exc))
            raise TemplateRenderError(f"failed to render {resolved!r}: {exc}", resolved) from exc

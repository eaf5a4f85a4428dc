"""Jinja2 rendering for the startup script and systemd unit."""
from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

from jinja2 import (
    ChoiceLoader,
    Environment,
    FileSystemLoader,
    PackageLoader,
    StrictUndefined,
    TemplateError,
)

from .errors import PhoenixError


class TemplateRenderError(PhoenixError):
    """Raised when a template cannot be rendered."""


@dataclass(slots=True)
class TemplateEngine:
    """Render built-in templates, letting an override directory shadow them."""

    environment: Environment

    @classmethod
    def with_overrides(cls, override_dir: Path | None) -> TemplateEngine:
        """Return an engine searching *override_dir* before the packaged templates."""
        loaders: list[FileSystemLoader | PackageLoader] = []
        if override_dir is not None and Path(override_dir).is_dir():
            loaders.append(FileSystemLoader(str(override_dir)))
        loaders.append(PackageLoader("phoenixctl", "templates"))
        environment = Environment(
            loader=ChoiceLoader(loaders),
            undefined=StrictUndefined,
            keep_trailing_newline=True,
            autoescape=False,  # noqa: S701 - renders shell and ini files, not HTML
        )
        return cls(environment=environment)

    def render_to_string(self, template_name: str, context: Mapping[str, object]) -> str:
        """Render *template_name* with *context*."""
        try:
            template = self.environment.get_template(template_name)
            return template.render(**context)
        except TemplateError as exc:
            raise TemplateRenderError(f"Failed to render {template_name}: {exc}") from exc

    def render_to_path(
        self,
        template_name: str,
        destination: Path,
        context: Mapping[str, object],
        *,
        mode: int = 0o644,
    ) -> bool:
        """Render into *destination*; return False when the content is unchanged."""
        rendered = self.render_to_string(template_name, context)
        if destination.exists() and destination.read_text(encoding="utf-8") == rendered:
            return False
        destination.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = destination.with_name(f".{destination.name}.tmp")
        tmp_path.write_text(rendered, encoding="utf-8")
        os.chmod(tmp_path, mode)
        os.replace(tmp_path, destination)
        return True


__all__ = ["TemplateEngine", "TemplateRenderError"]

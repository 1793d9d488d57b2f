"""Jinja2 template rendering for generated configuration files."""
from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

from jinja2 import ChoiceLoader, Environment, FileSystemLoader, PackageLoader, StrictUndefined
from jinja2 import TemplateError as JinjaTemplateError

from .errors import FilesystemError


class TemplateError(FilesystemError):
    """Raised when a template cannot be rendered or written."""


@dataclass(slots=True)
class TemplateEngine:
    """Render built-in templates, optionally shadowed by an override directory."""

    environment: Environment

    @classmethod
    def with_overrides(cls, override_dir: Path | None) -> TemplateEngine:
        """Return an engine whose lookups prefer templates from *override_dir*."""
        loaders = []
        if override_dir is not None and override_dir.is_dir():
            loaders.append(FileSystemLoader(str(override_dir)))
        loaders.append(PackageLoader("winprov", "templates"))
        environment = Environment(
            loader=ChoiceLoader(loaders),
            undefined=StrictUndefined,
            keep_trailing_newline=True,
            trim_blocks=True,
            lstrip_blocks=True,
            autoescape=False,
        )
        return cls(environment=environment)

    def render_to_string(self, template_name: str, context: Mapping[str, object]) -> str:
        """Render *template_name* with *context*."""
        try:
            template = self.environment.get_template(template_name)
            return template.render(**context)
        except JinjaTemplateError as exc:
            raise TemplateError(f"Failed to render template {template_name}: {exc}") from exc

    def render_to_path(
        self,
        template_name: str,
        destination: Path,
        context: Mapping[str, object],
        *,
        mode: int | None = None,
    ) -> bool:
        """Render into *destination*, replacing it atomically.

        The file is rewritten on every call. The return value reports whether
        the content differs from what was on disk before.
        """
        payload = self.render_to_string(template_name, context).encode("utf-8")
        try:
            previous = destination.read_bytes() if destination.exists() else None
        except OSError as exc:
            raise TemplateError(f"Failed to read {destination}: {exc}") from exc
        temp = destination.with_name(f"{destination.name}.tmp")
        try:
            temp.write_bytes(payload)
            if mode is not None:
                temp.chmod(mode)
            os.replace(temp, destination)
        except OSError as exc:
            temp.unlink(missing_ok=True)
            raise TemplateError(f"Failed to write {destination}: {exc}") from exc
        return previous != payload


__all__ = ["TemplateEngine", "TemplateError"]

"""Jinja2 rendering for the configuration artifacts vhostctl pushes to nodes.

Built-in templates ship inside the package under ``vhostctl/templates``. An
operator may shadow any of them by placing a file with the same relative name
in the configured ``templates_dir``.
"""
from __future__ import annotations

import os
import tempfile
from collections.abc import Mapping
from pathlib import Path

from jinja2 import (
    ChoiceLoader,
    Environment,
    FileSystemLoader,
    PackageLoader,
    StrictUndefined,
    TemplateError,
)

POOL_TEMPLATE = "fpm/pool.conf.j2"
SITE_TEMPLATE = "nginx/site.conf.j2"
INDEX_TEMPLATE = "web/index.html.j2"


class TemplateRenderError(RuntimeError):
    """Raised when a template is missing or fails to render."""


class TemplateEngine:
    """Render templates with strict variables."""

    def __init__(self, environment: Environment) -> None:
        """Wrap a configured Jinja2 environment."""
        self._environment = environment

    @classmethod
    def with_overrides(cls, override_dir: Path | None) -> TemplateEngine:
        """Build an engine whose *override_dir* shadows the built-in templates."""
        loaders: list[FileSystemLoader | PackageLoader] = []
        if override_dir is not None and Path(override_dir).is_dir():
            loaders.append(FileSystemLoader(str(override_dir)))
        loaders.append(PackageLoader("vhostctl", "templates"))
        environment = Environment(
            loader=ChoiceLoader(loaders),
            undefined=StrictUndefined,
            keep_trailing_newline=True,
            autoescape=False,
        )
        return cls(environment)

    def render_to_string(self, template_name: str, context: Mapping[str, object]) -> str:
        """Render *template_name* with *context*."""
        try:
            template = self._environment.get_template(template_name)
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
        """Render to *destination* atomically; return ``False`` when content is unchanged."""
        content = self.render_to_string(template_name, context)
        if destination.exists() and destination.read_text(encoding="utf-8") == content:
            os.chmod(destination, mode)
            return False

        destination.parent.mkdir(parents=True, exist_ok=True)
        tmp_fd, tmp_name = tempfile.mkstemp(
            dir=str(destination.parent),
            prefix=f".{destination.name}.",
        )
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                handle.write(content)
            os.chmod(tmp_path, mode)
            os.replace(tmp_path, destination)
        finally:
            tmp_path.unlink(missing_ok=True)
        return True


def pool_context(vconf: Mapping[str, str]) -> dict[str, object]:
    """Return the template context for the application-runtime pool file."""
    return {
        "vhost": vconf["VHOST"],
        "user": vconf["U_UID"],
        "group": vconf["U_GID"],
        "fpm_dir": vconf["C_FPM"],
    }


def site_context(vconf: Mapping[str, str]) -> dict[str, object]:
    """Return the template context for the web-server site file."""
    return {"vhost": vconf["VHOST"], "web_dir": vconf["C_WEB"]}


def index_context(vconf: Mapping[str, str]) -> dict[str, object]:
    """Return the template context for the placeholder index page."""
    return {"vhost": vconf["VHOST"]}


__all__ = [
    "INDEX_TEMPLATE",
    "POOL_TEMPLATE",
    "SITE_TEMPLATE",
    "TemplateEngine",
    "TemplateRenderError",
    "index_context",
    "pool_context",
    "site_context",
]

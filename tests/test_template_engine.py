"""Tests for the template rendering engine."""
from __future__ import annotations

from pathlib import Path

import pytest

from vhostctl.templates import (
    INDEX_TEMPLATE,
    POOL_TEMPLATE,
    SITE_TEMPLATE,
    TemplateEngine,
    TemplateRenderError,
    index_context,
    pool_context,
    site_context,
)

VCONF = {
    "VHOST": "example.com",
    "U_UID": "1001",
    "U_GID": "1001",
    "C_FPM": "/etc/php/8.2/fpm",
    "C_WEB": "/etc/nginx",
}


def test_render_pool_uses_numeric_identity() -> None:
    """The pool file names the tenant's uid and gid."""
    engine = TemplateEngine.with_overrides(None)

    output = engine.render_to_string(POOL_TEMPLATE, pool_context(VCONF))

    assert output.startswith("[example.com]\n")
    assert "user = 1001" in output
    assert "group = 1001" in output
    assert "include = /etc/php/8.2/fpm/common.conf" in output


def test_render_site_redirects_www() -> None:
    """The site file redirects www. to the bare domain and includes common settings."""
    engine = TemplateEngine.with_overrides(None)

    output = engine.render_to_string(SITE_TEMPLATE, site_context(VCONF))

    assert "www.example.com;" in output
    assert "http://example.com$request_uri;" in output
    assert "/etc/nginx/common.conf;" in output


def test_render_to_path_writes_with_mode(tmp_path: Path) -> None:
    """Rendering to a file writes content and respects the requested mode."""
    engine = TemplateEngine.with_overrides(None)
    destination = tmp_path / "web" / "index.html"

    changed = engine.render_to_path(INDEX_TEMPLATE, destination, index_context(VCONF), mode=0o600)

    assert changed is True
    assert "<title>example.com</title>" in destination.read_text(encoding="utf-8")
    assert oct(destination.stat().st_mode & 0o777) == "0o600"

    # Second render with same content should be a no-op.
    changed_again = engine.render_to_path(
        INDEX_TEMPLATE, destination, index_context(VCONF), mode=0o600
    )
    assert changed_again is False


def test_override_path_takes_precedence(tmp_path: Path) -> None:
    """Override templates shadow the built-in ones."""
    override_dir = tmp_path / "templates"
    override_template = override_dir / "nginx" / "site.conf.j2"
    override_template.parent.mkdir(parents=True, exist_ok=True)
    override_template.write_text("override {{ vhost }}", encoding="utf-8")

    engine = TemplateEngine.with_overrides(override_dir)

    assert engine.render_to_string(SITE_TEMPLATE, site_context(VCONF)) == "override example.com"
    # Templates without an override still come from the package.
    assert "user = 1001" in engine.render_to_string(POOL_TEMPLATE, pool_context(VCONF))


def test_missing_variable_raises_render_error() -> None:
    """Strict undefined variables surface as TemplateRenderError."""
    engine = TemplateEngine.with_overrides(None)

    with pytest.raises(TemplateRenderError, match="fpm/pool.conf.j2"):
        engine.render_to_string(POOL_TEMPLATE, {"vhost": "example.com"})

"""Tests for the template rendering engine."""
from __future__ import annotations

from pathlib import Path

import pytest

from winprov.errors import FilesystemError
from winprov.templates import TemplateEngine, TemplateError

WORKER_CONTEXT = {
    "bind": "0.0.0.0:5000",
    "workers": 4,
    "worker_class": "sync",
    "threads": 2,
    "timeout": 600,
    "graceful_timeout": 30,
    "keepalive": 5,
    "accesslog": r"C:\webapp\logs\access.log",
    "errorlog": r"C:\webapp\logs\error.log",
    "loglevel": "info",
}


def test_render_env_file_lines() -> None:
    """The env template writes one KEY=VALUE line per setting in order."""
    engine = TemplateEngine.with_overrides(None)

    output = engine.render_to_string(
        "env/app.env.j2",
        {"settings": [("HOST", "0.0.0.0"), ("PORT", "5000")]},
    )

    assert output.splitlines()[1:] == ["HOST=0.0.0.0", "PORT=5000"]
    assert output.endswith("PORT=5000\n")


def test_render_worker_config_is_valid_python() -> None:
    """Worker settings are emitted as Python assignments with quoted strings."""
    engine = TemplateEngine.with_overrides(None)

    output = engine.render_to_string("workers/gunicorn.conf.py.j2", WORKER_CONTEXT)

    assert 'bind = "0.0.0.0:5000"' in output
    assert "workers = 4" in output
    assert "timeout = 600" in output
    assert 'accesslog = "C:\\\\webapp\\\\logs\\\\access.log"' in output
    namespace: dict[str, object] = {}
    exec(compile(output, "gunicorn.conf.py", "exec"), namespace)  # noqa: S102
    assert namespace["accesslog"] == r"C:\webapp\logs\access.log"
    assert namespace["keepalive"] == 5


def test_render_web_config_escapes_attributes() -> None:
    """Values placed in XML attributes are escaped."""
    engine = TemplateEngine.with_overrides(None)

    output = engine.render_to_string(
        "iis/web.config.j2",
        {
            "rule_name": "Proxy <main>",
            "match_url": "(.*)",
            "target_url": "http://localhost:5000/{R:1}",
            "remove_handlers": ["WebDAV"],
            "remove_modules": [],
        },
    )

    assert 'name="Proxy &lt;main&gt;"' in output
    assert 'url="http://localhost:5000/{R:1}"' in output
    assert '<remove name="WebDAV" />' in output


def test_render_to_path_reports_changes(tmp_path: Path) -> None:
    """The file is rewritten each time; only differing content counts as a change."""
    engine = TemplateEngine.with_overrides(None)
    destination = tmp_path / "gunicorn.conf.py"

    assert engine.render_to_path("workers/gunicorn.conf.py.j2", destination, WORKER_CONTEXT)
    assert not engine.render_to_path("workers/gunicorn.conf.py.j2", destination, WORKER_CONTEXT)

    updated = dict(WORKER_CONTEXT, workers=8)
    assert engine.render_to_path("workers/gunicorn.conf.py.j2", destination, updated)
    assert "workers = 8" in destination.read_text(encoding="utf-8")
    assert not (tmp_path / "gunicorn.conf.py.tmp").exists()


def test_render_to_path_replaces_undecodable_file(tmp_path: Path) -> None:
    """Existing content is compared as bytes, so any encoding is replaced."""
    engine = TemplateEngine.with_overrides(None)
    destination = tmp_path / "gunicorn.conf.py"
    destination.write_bytes("workers = 1\r\n".encode("utf-16"))

    assert engine.render_to_path("workers/gunicorn.conf.py.j2", destination, WORKER_CONTEXT)
    assert "workers = 4" in destination.read_bytes().decode("utf-8")


def test_render_to_path_unreadable_destination(tmp_path: Path) -> None:
    """A destination that cannot be read is reported as a template error."""
    engine = TemplateEngine.with_overrides(None)
    destination = tmp_path / "gunicorn.conf.py"
    destination.mkdir()

    with pytest.raises(TemplateError, match="Failed to read"):
        engine.render_to_path("workers/gunicorn.conf.py.j2", destination, WORKER_CONTEXT)


def test_override_directory_takes_precedence(tmp_path: Path) -> None:
    """Templates in the override directory shadow the built-in ones."""
    override_dir = tmp_path / "templates"
    (override_dir / "env").mkdir(parents=True)
    (override_dir / "env" / "app.env.j2").write_text(
        "{% for key, value in settings %}export {{ key }}={{ value }}\n{% endfor %}",
        encoding="utf-8",
    )
    engine = TemplateEngine.with_overrides(override_dir)

    output = engine.render_to_string("env/app.env.j2", {"settings": [("PORT", "5000")]})

    assert output == "export PORT=5000\n"


def test_missing_variable_raises_template_error() -> None:
    """Strict undefined variables surface as filesystem-kind errors."""
    engine = TemplateEngine.with_overrides(None)

    with pytest.raises(TemplateError) as excinfo:
        engine.render_to_string("env/app.env.j2", {})

    assert isinstance(excinfo.value, FilesystemError)
    assert "env/app.env.j2" in str(excinfo.value)

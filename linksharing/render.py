from __future__ import annotations

from pathlib import Path
from typing import Any

from jinja2 import Environment, FileSystemLoader, StrictUndefined, TemplateError, select_autoescape

from linksharing.errors import ConfigError, RenderError

DEFAULT_TEMPLATES = Path(__file__).parent / "templates"


class Templates:
    def __init__(self, directory: str | Path | None = None) -> None:
        directory = Path(directory) if directory else DEFAULT_TEMPLATES
        self.env = Environment(
            loader=FileSystemLoader(directory),
            autoescape=select_autoescape(["html"]),
            undefined=StrictUndefined,
        )
        if not self.env.list_templates(extensions=["html"]):
            raise ConfigError(f"no html templates found in {directory}")

    def render(self, name: str, **context: Any) -> bytes:
        try:
            return self.env.get_template(name).render(**context).encode()
        except TemplateError as e:
            raise RenderError(f"{name}: {e}") from e

from __future__ import annotations

import json
from typing import Any, Dict, Optional

from jinja2 import Environment, PackageLoader, TemplateNotFound, select_autoescape

# Templates ship inside the package under airender/templates
_env = Environment(
    loader=PackageLoader("airender", "templates"),
    autoescape=select_autoescape(["html", "xml"]),
    enable_async=False,
)
_env.filters["pretty_json"] = lambda value: json.dumps(value, indent=2, ensure_ascii=False, default=str)


def has_partial(name: str) -> bool:
    try:
        _env.get_template(f"partials/{name}.html")
    except TemplateNotFound:
        return False
    return True


def render_partial(name: str, payload: Dict[str, Any]) -> str:
    """
    Render partials/<name>.html with the result payload as its context.
    Structured fields are available at top level, plus data/content/seed.
    """
    tpl = _env.get_template(f"partials/{name}.html")
    return tpl.render({**payload, "payload": payload})


def render_page_html(
    value: Any,
    *,
    record: Optional[Dict[str, Any]] = None,
    structured: bool = False,
    html: bool = False,
    title: str = "AI",
) -> str:
    base = _env.get_template("page.html")
    return base.render(
        title=title,
        value=value,
        structured=structured,
        html=html,
        record=record or {},
    )


def render_error_html(status_code: int, kind: str, message: str) -> str:
    return _env.get_template("error.html").render(status_code=status_code, kind=kind, message=message)

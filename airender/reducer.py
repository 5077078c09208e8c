from __future__ import annotations

import logging
from typing import Any, Dict, Optional, Protocol, runtime_checkable

import yaml

from airender import render
from airender.engine import Outcome

log = logging.getLogger(__name__)


@runtime_checkable
class RenderTarget(Protocol):
    """Anything that turns a result payload into output."""

    def render(self, payload: Dict[str, Any]) -> Any:
        ...


class TemplateTarget:
    """Render target backed by a packaged jinja2 partial (partials/<name>.html)."""

    def __init__(self, name: str) -> None:
        self.name = name

    def render(self, payload: Dict[str, Any]) -> str:
        return render.render_partial(self.name, payload)

    def __repr__(self) -> str:
        return f"TemplateTarget({self.name!r})"


def resolved_data(outcome: Outcome) -> Any:
    return outcome.data if outcome.data is not None else outcome.record.data


def resolved_content(outcome: Outcome) -> Optional[str]:
    return outcome.content if outcome.content is not None else outcome.record.content


def component_payload(outcome: Outcome) -> Dict[str, Any]:
    data = resolved_data(outcome)
    payload: Dict[str, Any] = dict(data) if isinstance(data, dict) else {}
    payload.update({"data": data, "content": resolved_content(outcome), "seed": outcome.seed})
    return payload


def is_structured(outcome: Outcome) -> bool:
    return isinstance(resolved_data(outcome), (dict, list))


def reduce_result(outcome: Outcome, target: Optional[RenderTarget] = None) -> Any:
    """Value handed back to the caller. Never raises; None at worst."""
    try:
        if target is not None:
            return target.render(component_payload(outcome))
        data = resolved_data(outcome)
        if isinstance(data, (dict, list)):
            return yaml.safe_dump(data, sort_keys=False, allow_unicode=True, width=float("inf"))
        text = resolved_content(outcome)
        if text is None and data is not None:
            return str(data)
        return text
    except Exception:
        log.exception("reduce: failed to present result hash=%s target=%r", outcome.record.hash[:12], target)
        return None

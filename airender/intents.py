from __future__ import annotations

import os
from typing import Any, Dict, List, Literal, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from airender.errors import InvalidIntent

DEFAULT_MODEL = os.getenv("DEFAULT_MODEL", "gpt-4-turbo-preview").strip() or "gpt-4-turbo-preview"

KeyCase = Literal["camelCase", "snake_case", "kebab-case", "PascalCase", "Title Case", "Sentence case"]


class AIProps(BaseModel):
    """Caller-facing options for one AI-rendered block.

    Exactly one intent is expected (prompt, user, json, markdown, list or
    function + schema + args). Several may be present for compatibility with
    older callers; ``intent_kind`` decides which one wins.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    model: Optional[str] = Field(default=None, description="Chat model override")
    expert: Optional[str] = Field(default=None, description="Persona label for the system message")
    system: Optional[str] = Field(default=None, description="Explicit system message")
    prompt: Optional[str] = None
    user: Optional[str] = None
    markdown: Optional[str] = None
    list_directive: Optional[str] = Field(default=None, alias="list")
    json_directive: Optional[str] = Field(default=None, alias="json")
    keys: KeyCase = "Title Case"
    function: Optional[str] = None
    description: Optional[str] = None
    schema_: Optional[Dict[str, Any]] = Field(default=None, alias="schema")
    args: Optional[Any] = None
    seed: Optional[int] = None
    variations: Optional[int] = Field(default=None, ge=0)
    component: Optional[str] = Field(default=None, description="Template that receives the result")

    @field_validator("schema_", mode="before")
    @classmethod
    def _schema_from_model(cls, value: Any) -> Any:
        # Pydantic models stand in for a hand-written JSON schema
        if isinstance(value, type) and issubclass(value, BaseModel):
            return value.model_json_schema()
        return value

    def dump(self) -> Dict[str, Any]:
        """Props as stored on the completion record (caller's field names)."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class ChatMessage(BaseModel):
    role: Literal["system", "user", "assistant"]
    content: str


class GenerationRequest(BaseModel):
    """Canonical chat-completion request. Field order is the wire order."""

    model: str
    messages: List[ChatMessage]
    response_format: Dict[str, str]
    tools: Optional[List[Dict[str, Any]]] = None
    tool_choice: Optional[Dict[str, Any]] = None
    seed: Optional[int] = None

    def payload(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


def coerce_props(props: Union[AIProps, Dict[str, Any]]) -> AIProps:
    if isinstance(props, AIProps):
        return props
    try:
        return AIProps.model_validate(props)
    except ValidationError as exc:
        raise InvalidIntent(f"invalid props: {exc.errors()}") from exc


def intent_kind(props: AIProps) -> Optional[str]:
    """Name of the intent that drives normalization, in precedence order."""
    if props.json_directive:
        return "json"
    if props.markdown:
        return "markdown"
    if props.list_directive:
        return "list"
    if props.function and props.schema_ is not None and props.args is not None:
        return "function"
    if props.user:
        return "user"
    if props.prompt:
        return "prompt"
    return None


def _append(system: Optional[str], directive: str) -> str:
    if not system:
        return directive
    return f"{system} {directive}"


def _dump_args(args: Any) -> str:
    return yaml.safe_dump(args, sort_keys=False, allow_unicode=True, default_flow_style=False)


def normalize(props: Union[AIProps, Dict[str, Any]]) -> GenerationRequest:
    props = coerce_props(props)
    kind = intent_kind(props)
    if kind is None:
        raise InvalidIntent("one of prompt, user, json, markdown, list or function+schema+args is required")

    system = props.system
    if not system and props.expert:
        system = f"You are an expert {props.expert}."

    user = props.user
    response_format = "text"
    tools: Optional[List[Dict[str, Any]]] = None
    tool_choice: Optional[Dict[str, Any]] = None

    if kind == "json":
        system = _append(system, f"Respond in JSON format with {props.keys} keys.")
        user = props.json_directive
        response_format = "json_object"
    elif kind == "markdown":
        system = _append(system, "Respond in Markdown format.")
        user = props.markdown
    elif kind == "list":
        system = _append(system, "Respond with a numbered list.")
        user = "List " + props.list_directive
    elif kind == "function":
        context = user or props.prompt
        if not context:
            raise InvalidIntent(f"function {props.function!r} needs prompt or user text to call it with")
        user = f"{context}\n\nCall {props.function} given the context:\n{_dump_args(props.args)}"
        declaration: Dict[str, Any] = {"name": props.function}
        if props.description:
            declaration["description"] = props.description
        declaration["parameters"] = props.schema_
        tools = [{"type": "function", "function": declaration}]
        tool_choice = {"type": "function", "function": {"name": props.function}}
    elif props.prompt and not user:
        user = props.prompt

    messages = [ChatMessage(role="assistant", content=user)]
    if system:
        messages.insert(0, ChatMessage(role="system", content=system))

    return GenerationRequest(
        model=props.model or DEFAULT_MODEL,
        messages=messages,
        response_format={"type": response_format},
        tools=tools,
        tool_choice=tool_choice,
    )

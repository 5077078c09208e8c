import asyncio
import json
from typing import Any, Dict, List, Optional

import pytest

from airender.llm_client import ChatBackend
from airender.store import MemoryMemoStore


class FakeBackend(ChatBackend):
    """Canned chat-completion backend that records every payload it gets."""

    def __init__(
        self,
        content: Optional[str] = "Paris is sunny.",
        tool_arguments: Optional[str] = None,
        usage: Optional[Dict[str, int]] = None,
        delay: float = 0.0,
        error: Optional[Exception] = None,
    ) -> None:
        self.content = content
        self.tool_arguments = tool_arguments
        self.usage = usage if usage is not None else {"prompt_tokens": 10, "completion_tokens": 5}
        self.delay = delay
        self.error = error
        self.calls: List[Dict[str, Any]] = []

    async def complete(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        self.calls.append(json.loads(json.dumps(payload)))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        message: Dict[str, Any] = {"role": "assistant", "content": self.content}
        if self.tool_arguments is not None:
            message["content"] = None
            message["tool_calls"] = [
                {
                    "id": "call_1",
                    "type": "function",
                    "function": {"name": "fn", "arguments": self.tool_arguments},
                }
            ]
        return {"choices": [{"index": 0, "message": message}], "usage": self.usage}


class SlowReserveStore(MemoryMemoStore):
    """Memory store with an artificial delay before each reservation."""

    def __init__(self, delays: List[float]) -> None:
        super().__init__()
        self.delays = list(delays)
        self.reserve_calls = 0

    async def reserve(self, request_hash, fields, on_insert=None):
        delay = self.delays[self.reserve_calls] if self.reserve_calls < len(self.delays) else 0.0
        self.reserve_calls += 1
        await asyncio.sleep(delay)
        return await super().reserve(request_hash, fields, on_insert)


@pytest.fixture()
def memory_store():
    return MemoryMemoStore()


@pytest.fixture()
def backend():
    return FakeBackend()

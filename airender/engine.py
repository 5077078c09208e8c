"""
Memoized completion flow.

normalize -> fingerprint -> reserve -> (stored record | invoke -> finalize)

Concurrency notes:
- The store upsert is atomic per request hash, so only one caller creates the
  reservation. Two callers can still both see "no prior record" and both call
  the backend; duplicates are reduced, not eliminated.
- A caller that finds a peer's pending reservation polls for it for up to
  PENDING_WAIT_SECS (measured from reservedAt, which only the caller that
  created the record writes) before generating itself.
- If a caller goes away mid-request the reservation stays pending in the
  store and the backend call is not cancelled.
"""

from __future__ import annotations

import asyncio
import logging
import os
import random
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from airender.fingerprint import Fingerprint, describe, fingerprint
from airender.intents import AIProps, coerce_props, normalize
from airender.llm_client import ChatBackend, get_backend, invoke
from airender.store import MemoStore, get_store

log = logging.getLogger(__name__)

STATUS_PENDING = "pending"
STATUS_COMPLETE = "complete"

try:
    PENDING_WAIT_SECS = float(os.getenv("PENDING_WAIT_SECS", "30"))
except ValueError:
    PENDING_WAIT_SECS = 30.0
try:
    PENDING_POLL_SECS = float(os.getenv("PENDING_POLL_SECS", "0.25"))
except ValueError:
    PENDING_POLL_SECS = 0.25


class CompletionRecord(BaseModel):
    """A stored unit of work, keyed by ``hash`` (the request hash)."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    hash: str
    prompt_hash: Optional[str] = None
    seed: Optional[int] = None
    is_random_seed: Optional[bool] = None
    props: Dict[str, Any] = Field(default_factory=dict)
    input: Dict[str, Any] = Field(default_factory=dict)
    headers: Dict[str, Any] = Field(default_factory=dict)
    status: str = STATUS_PENDING
    data: Any = None
    content: Optional[str] = None
    parse_error: Optional[str] = None
    cost: Optional[float] = None
    completion: Optional[Dict[str, Any]] = None
    reserved_at: Optional[datetime] = None
    requested_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    read_completed_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    read_latency: Optional[int] = None
    completion_latency: Optional[int] = None
    total_latency: Optional[int] = None

    @property
    def is_complete(self) -> bool:
        return self.status == STATUS_COMPLETE

    def public(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


@dataclass
class Outcome:
    """Result of one memoized completion.

    ``data``/``content`` are what this call generated; both are None on a
    cache hit, where the stored ``record`` carries the result instead.
    """

    record: CompletionRecord
    data: Any
    content: Optional[str]
    seed: int
    cache_hit: bool
    fingerprint: Fingerprint


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _ms(start: datetime, end: datetime) -> int:
    return int((end - start).total_seconds() * 1000)


def _parse_ts(value: Any) -> Optional[datetime]:
    if not isinstance(value, str):
        return None
    try:
        ts = datetime.fromisoformat(value)
    except ValueError:
        return None
    return ts if ts.tzinfo else ts.replace(tzinfo=timezone.utc)


def _is_complete(doc: Optional[Mapping[str, Any]]) -> bool:
    return bool(doc) and doc.get("status") == STATUS_COMPLETE


async def _await_peer(store: MemoStore, request_hash: str, prior: Mapping[str, Any]) -> Optional[Dict[str, Any]]:
    """Wait for another caller's pending reservation; None if it never completes."""
    started = _parse_ts(prior.get("reservedAt")) or _parse_ts(prior.get("requestedAt")) or _now()
    remaining = PENDING_WAIT_SECS - (_now() - started).total_seconds()
    if remaining <= 0:
        log.warning("memo.pending: stale reservation hash=%s; generating", request_hash[:12])
        return None
    log.info("memo.pending: waiting up to %.2fs for peer hash=%s", remaining, request_hash[:12])
    loop = asyncio.get_running_loop()
    deadline = loop.time() + remaining
    while loop.time() < deadline:
        await asyncio.sleep(PENDING_POLL_SECS)
        current = await store.get(request_hash)
        if _is_complete(current):
            return current
    log.warning("memo.pending: peer did not finish hash=%s; generating", request_hash[:12])
    return None


async def complete(
    props: Union[AIProps, Dict[str, Any]],
    *,
    store: Optional[MemoStore] = None,
    backend: Optional[ChatBackend] = None,
    headers: Optional[Mapping[str, Any]] = None,
    rng: Optional[random.Random] = None,
) -> Outcome:
    store = store if store is not None else get_store()
    backend = backend if backend is not None else get_backend()

    requested_at = _now()
    props = coerce_props(props)
    fp = fingerprint(normalize(props), seed=props.seed, variations=props.variations, rng=rng)

    reservation = describe(fp)
    reservation.update(
        {
            "props": props.dump(),
            "input": fp.request.payload(),
            "headers": dict(headers or {}),
            "requestedAt": requested_at.isoformat(),
        }
    )
    prior = await store.reserve(
        fp.request_hash,
        reservation,
        on_insert={"status": STATUS_PENDING, "reservedAt": requested_at.isoformat()},
    )
    read_completed_at = _now()
    read_latency = _ms(requested_at, read_completed_at)

    if prior is not None and not _is_complete(prior):
        prior = await _await_peer(store, fp.request_hash, prior)

    if _is_complete(prior):
        log.info("memo.reserve: hit hash=%s seed=%s read_ms=%d", fp.request_hash[:12], fp.seed, read_latency)
        return Outcome(
            record=CompletionRecord.model_validate(prior),
            data=None,
            content=None,
            seed=fp.seed,
            cache_hit=True,
            fingerprint=fp,
        )

    log.info("memo.reserve: miss hash=%s seed=%s read_ms=%d", fp.request_hash[:12], fp.seed, read_latency)
    generation = await invoke(fp.request, backend)

    updated_at = _now()
    doc = await store.finalize(
        fp.request_hash,
        {
            "hash": fp.request_hash,
            "props": props.dump(),
            "status": STATUS_COMPLETE,
            "data": generation.data,
            "content": generation.content,
            "parseError": generation.parse_error,
            "completion": generation.completion,
            "cost": generation.cost,
            "requestedAt": requested_at.isoformat(),
            "createdAt": requested_at.isoformat(),
            "readCompletedAt": read_completed_at.isoformat(),
            "updatedAt": updated_at.isoformat(),
            "readLatency": read_latency,
            "completionLatency": _ms(read_completed_at, updated_at),
            "totalLatency": _ms(requested_at, updated_at),
        },
    )
    log.info(
        "memo.finalize: stored hash=%s cost=%s total_ms=%s",
        fp.request_hash[:12],
        generation.cost,
        doc.get("totalLatency"),
    )
    return Outcome(
        record=CompletionRecord.model_validate(doc),
        data=generation.data,
        content=generation.content,
        seed=fp.seed,
        cache_hit=False,
        fingerprint=fp,
    )


async def lookup(request_hash: str, *, store: Optional[MemoStore] = None) -> Optional[CompletionRecord]:
    store = store if store is not None else get_store()
    doc = await store.get(request_hash)
    return CompletionRecord.model_validate(doc) if doc else None


async def variations(
    prompt_hash: str,
    *,
    store: Optional[MemoStore] = None,
    limit: int = 10,
) -> List[CompletionRecord]:
    """Records sharing a prompt hash but differing by seed."""
    store = store if store is not None else get_store()
    docs = await store.variations(prompt_hash, limit=limit)
    return [CompletionRecord.model_validate(d) for d in docs]

"""Concurrent publish of signed events to a set of independent relays.

A publish succeeds when at least one relay acknowledges the event with
``["OK", <id>, true, ...]``. Every relay is awaited; the pool never races
to the first response. Relays that fail are reported alongside the
successes so callers can surface partial delivery.
"""

from __future__ import annotations

import asyncio
import ipaddress
import json
import logging
import time
from collections import defaultdict
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol
from urllib.parse import urlsplit

import aiohttp

from nostr_stage.core.errors import NoEndpointAccepted, PublishError
from nostr_stage.core.settings import settings
from nostr_stage.schemas.event import SignedEvent

logger = logging.getLogger(__name__)

_PRIVATE_SUFFIXES = (".localhost", ".local", ".home.arpa", ".internal")
_PRIVATE_NAMES = {"localhost", "local", "ip6-localhost", "::"}


@dataclass(frozen=True)
class RelayOutcome:
    """Result of sending one event to one relay."""

    relay: str
    accepted: bool
    message: str = ""


@dataclass(frozen=True)
class PublishResult:
    event_id: str
    succeeded: list[str]
    failed: list[RelayOutcome] = field(default_factory=list)

    @property
    def partial_failure(self) -> bool:
        return bool(self.succeeded) and bool(self.failed)

    @property
    def failed_relays(self) -> list[str]:
        return [outcome.relay for outcome in self.failed]


class RelayTransport(Protocol):
    async def send(self, relay: str, event: SignedEvent) -> RelayOutcome: ...


class AiohttpRelayTransport:
    """Open a WebSocket per relay, send ``EVENT`` and wait for the matching ``OK``."""

    async def send(self, relay: str, event: SignedEvent) -> RelayOutcome:
        async with aiohttp.ClientSession() as session:
            async with session.ws_connect(relay, autoclose=True, autoping=True) as ws:
                await ws.send_str(json.dumps(["EVENT", event.to_wire()], ensure_ascii=False))
                async for message in ws:
                    if message.type != aiohttp.WSMsgType.TEXT:
                        if message.type in (aiohttp.WSMsgType.CLOSED, aiohttp.WSMsgType.ERROR):
                            break
                        continue
                    outcome = _parse_ok(relay, event.id, message.data)
                    if outcome is not None:
                        return outcome
        return RelayOutcome(relay, False, "connection closed before acknowledgement")


def _parse_ok(relay: str, event_id: str, raw: str) -> RelayOutcome | None:
    try:
        data = json.loads(raw)
    except ValueError:
        return None
    if not isinstance(data, list) or len(data) < 3 or data[0] != "OK" or data[1] != event_id:
        return None
    message = data[3] if len(data) > 3 and isinstance(data[3], str) else ""
    return RelayOutcome(relay, data[2] is True, message)


@dataclass
class RelayMetrics:
    """Aggregate delivery counters across publishes."""

    publish_count: int = 0
    send_count: int = 0
    ack_count: int = 0
    failure_count: int = 0
    total_send_time: float = 0.0
    failures_by_relay: dict[str, int] = field(default_factory=lambda: defaultdict(int))

    def record_send(self, relay: str, elapsed: float, accepted: bool) -> None:
        self.send_count += 1
        self.total_send_time += elapsed
        if accepted:
            self.ack_count += 1
        else:
            self.failure_count += 1
            self.failures_by_relay[relay] += 1

    def get_ack_rate(self) -> float:
        return (self.ack_count / self.send_count * 100) if self.send_count > 0 else 0.0


class RelayPool:
    """Fan out signed events to relays with at-least-one-of-N semantics."""

    def __init__(
        self,
        transport: RelayTransport | None = None,
        ack_timeout: float | None = None,
    ) -> None:
        self._transport = transport or AiohttpRelayTransport()
        self.ack_timeout = ack_timeout if ack_timeout is not None else settings.relay_ack_timeout_seconds
        self._metrics = RelayMetrics()

    async def _send_one(self, relay: str, event: SignedEvent) -> RelayOutcome:
        started = time.perf_counter()
        try:
            outcome = await asyncio.wait_for(
                self._transport.send(relay, event),
                timeout=self.ack_timeout,
            )
        except asyncio.TimeoutError:
            outcome = RelayOutcome(relay, False, "timed out waiting for acknowledgement")
        except (aiohttp.ClientError, OSError, ValueError) as exc:
            outcome = RelayOutcome(relay, False, f"{exc.__class__.__name__}: {exc}")
        self._metrics.record_send(relay, time.perf_counter() - started, outcome.accepted)
        return outcome

    async def publish(self, relays: Sequence[str], event: SignedEvent) -> PublishResult:
        """Send ``event`` to every relay and wait for all outcomes.

        Raises:
            PublishError: ``NO_RELAYS`` when the relay list is empty.
            NoEndpointAccepted: When no relay acknowledged the event.
        """
        targets = list(dict.fromkeys(relay.strip() for relay in relays if relay and relay.strip()))
        if not targets:
            raise PublishError("No relays configured for publishing", code="NO_RELAYS")

        self._metrics.publish_count += 1
        tasks = {
            asyncio.ensure_future(self._send_one(relay, event)): relay for relay in targets
        }
        try:
            await asyncio.wait(tasks)
        except asyncio.CancelledError:
            pending = [task for task in tasks if not task.done()]
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
            result = self._collect(event, tasks)
            if not result.succeeded:
                raise
            logger.warning(
                "Publish of %s cancelled after %d acknowledgement(s); keeping delivery",
                event.id[:16],
                len(result.succeeded),
            )
            return result

        result = self._collect(event, tasks)
        if not result.succeeded:
            logger.error("No relay accepted event %s", event.id[:16])
            raise NoEndpointAccepted(
                "Failed to publish event to relays",
                details={"results": [outcome.__dict__ for outcome in result.failed]},
            )
        if result.partial_failure:
            logger.info(
                "Event %s accepted by %d/%d relays",
                event.id[:16],
                len(result.succeeded),
                len(targets),
            )
        return result

    @staticmethod
    def _collect(event: SignedEvent, tasks: dict[asyncio.Future[RelayOutcome], str]) -> PublishResult:
        succeeded: list[str] = []
        failed: list[RelayOutcome] = []
        for task, relay in tasks.items():
            if task.cancelled():
                failed.append(RelayOutcome(relay, False, "cancelled"))
                continue
            exc = task.exception()
            if exc is not None:
                failed.append(RelayOutcome(relay, False, f"{exc.__class__.__name__}: {exc}"))
                continue
            outcome = task.result()
            if outcome.accepted:
                succeeded.append(relay)
            else:
                failed.append(outcome)
        return PublishResult(event_id=event.id, succeeded=succeeded, failed=failed)

    def get_metrics(self) -> dict[str, Any]:
        return {
            "publish_count": self._metrics.publish_count,
            "send_count": self._metrics.send_count,
            "ack_count": self._metrics.ack_count,
            "failure_count": self._metrics.failure_count,
            "ack_rate": self._metrics.get_ack_rate(),
            "average_send_time": (
                self._metrics.total_send_time / self._metrics.send_count
                if self._metrics.send_count
                else 0.0
            ),
            "failures_by_relay": dict(self._metrics.failures_by_relay),
        }


def get_relays(relay_set: str = "default") -> list[str]:
    """Return the configured relays for a named set, falling back to ``default``."""
    sets = settings.relay_sets
    relays = sets.get(relay_set) or sets["default"]
    return list(dict.fromkeys(relays))


def relay_allowlist() -> set[str]:
    configured: list[str] = []
    for relays in settings.relay_sets.values():
        configured.extend(relays)
    configured.extend(settings.relays_custom)
    normalized = (_normalize_relay_url(url) for url in configured)
    return {url for url in normalized if url}


def _normalize_relay_url(raw: str) -> str | None:
    value = raw.strip()
    if not value:
        return None
    if "://" not in value:
        value = "wss://" + value.lstrip("/")
    try:
        parts = urlsplit(value)
        host = parts.hostname
        port = parts.port
    except ValueError:
        return None
    if not host:
        return None
    netloc = host if port is None else f"{host}:{port}"
    if ":" in host:
        netloc = f"[{host}]" if port is None else f"[{host}]:{port}"
    base = f"{parts.scheme.lower()}://{netloc.lower()}"
    return base + parts.path if parts.path and parts.path != "/" else base


def is_private_host(host: str) -> bool:
    lower = host.lower().strip("[]")
    if lower in _PRIVATE_NAMES or lower.endswith(_PRIVATE_SUFFIXES):
        return True
    try:
        address = ipaddress.ip_address(lower)
    except ValueError:
        return False
    if isinstance(address, ipaddress.IPv6Address) and address.ipv4_mapped is not None:
        address = address.ipv4_mapped
    return address.is_private or address.is_loopback or address.is_link_local or address.is_unspecified


def sanitize_relay_hints(
    hints: Iterable[str] | None,
    allowlist: Iterable[str] | None = None,
) -> list[str]:
    """Keep only ``wss://`` hints that are public and on the relay allowlist."""
    if not hints:
        return []
    allowed = (
        {url for url in (_normalize_relay_url(item) for item in allowlist) if url}
        if allowlist is not None
        else relay_allowlist()
    )
    safe: list[str] = []
    for hint in hints:
        if not isinstance(hint, str):
            continue
        normalized = _normalize_relay_url(hint)
        if normalized is None or not normalized.startswith("wss://"):
            continue
        host = urlsplit(normalized).hostname or ""
        if is_private_host(host) or normalized not in allowed:
            continue
        safe.append(normalized)
    return list(dict.fromkeys(safe))


class _Singleton:
    instance: RelayPool | None = None


def get_relay_pool() -> RelayPool:
    """Return a singleton relay pool instance."""
    if _Singleton.instance is None:
        _Singleton.instance = RelayPool()
    return _Singleton.instance

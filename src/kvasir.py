"""Kvasir collaborators: REST submit, SSE subscription and a polling variant."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime
import json
import logging
from typing import AsyncIterable, AsyncIterator, Awaitable, Callable

import aiohttp

from records import Measurement, Notification, SubmitResult
from runner import NotificationCallback, SubscriptionError


logger = logging.getLogger(__name__)

DEFAULT_KVASIR_URL = "http://localhost:8080"
DEFAULT_POD_NAME = "alice"
DATASET_IRI = "http://example.org/replayed-data"
JSON_LD_CONTEXT = {
    "@vocab": "http://example.org/",
    "kss": "https://kvasir.discover.ilabt.imec.be/vocab#",
    "saref": "https://saref.etsi.org/core/",
    "xsd": "http://www.w3.org/2001/XMLSchema#",
    "rdfs": "http://rdfs.org/ns/void#",
}


class KvasirError(Exception):
    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


def format_timestamp(timestamp: float) -> str:
    moment = datetime.fromtimestamp(timestamp, tz=UTC)
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_timestamp(value: object) -> float | None:
    if isinstance(value, dict):
        value = value.get("@value")
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int | float):
        # Epoch values above ~1973 in milliseconds are larger than any seconds value we expect.
        return float(value) / 1000.0 if value > 1e11 else float(value)
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        moment = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=UTC)
    return moment.timestamp()


def _as_text(value: object) -> str | None:
    if isinstance(value, dict):
        value = value.get("@id") or value.get("@value")
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def build_change_request(measurements: list[Measurement]) -> dict[str, object]:
    return {
        "@context": dict(JSON_LD_CONTEXT),
        "kss:insert": [
            {
                "@id": measurement.measurement_id,
                "@type": "saref:Measurement",
                "saref:hasValue": measurement.value,
                "saref:hasTimestamp": {
                    "@value": format_timestamp(measurement.timestamp),
                    "@type": "xsd:dateTime",
                },
                "saref:measurementMadeBy": measurement.sensor_id,
                "saref:relatesToProperty": measurement.property_type,
                "rdfs:inDataset": DATASET_IRI,
            }
            for measurement in measurements
        ],
    }


def parse_notifications(data: str) -> list[Notification]:
    try:
        payload = json.loads(data)
    except json.JSONDecodeError:
        logger.warning("Ignoring non-JSON event payload: %.200s", data)
        return []

    payload_size = len(data.encode("utf-8"))
    if isinstance(payload, list):
        items = payload
    elif isinstance(payload, dict):
        items = payload.get("kss:insert")
        if not isinstance(items, list):
            items = payload.get("measurements")
        if not isinstance(items, list):
            items = [payload]
    else:
        logger.warning("Ignoring event payload of type %s", type(payload).__name__)
        return []

    notifications: list[Notification] = []
    for item in items:
        if not isinstance(item, dict):
            logger.warning("Ignoring non-object measurement in event payload")
            continue
        timestamp_raw = item.get("timestamp", item.get("saref:hasTimestamp"))
        notifications.append(
            Notification(
                timestamp=parse_timestamp(timestamp_raw),
                measurement_id=_as_text(item.get("id") or item.get("@id")),
                sensor_id=_as_text(item.get("sensorId") or item.get("saref:measurementMadeBy")),
                payload_size=payload_size,
            )
        )
    return notifications


async def iter_sse_data(lines: AsyncIterable[bytes]) -> AsyncIterator[str]:
    """Yield the ``data`` of each server-sent event from a stream of raw lines."""
    data_lines: list[str] = []
    async for raw_line in lines:
        line = raw_line.decode("utf-8", errors="replace").rstrip("\r\n")
        if not line:
            if data_lines:
                yield "\n".join(data_lines)
                data_lines = []
            continue
        if line.startswith(":"):
            continue
        field_name, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if field_name == "data":
            data_lines.append(value)
    if data_lines:
        yield "\n".join(data_lines)


class StreamSubscription:
    """Handle returned by ``subscribe``; ``unsubscribe`` is idempotent."""

    def __init__(self) -> None:
        self._task: asyncio.Task[None] | None = None
        self._unsubscribed = False
        self._error_callbacks: list[Callable[[Exception], None]] = []
        self._reconnect_callbacks: list[Callable[[], None]] = []
        self._disconnect_callbacks: list[Callable[[], None]] = []

    @property
    def active(self) -> bool:
        return not self._unsubscribed and self._task is not None and not self._task.done()

    def unsubscribe(self) -> None:
        if self._unsubscribed:
            return
        self._unsubscribed = True
        if self._task is not None and not self._task.done():
            self._task.cancel()
        logger.debug("Subscription cancelled")

    def on_error(self, callback: Callable[[Exception], None]) -> None:
        self._error_callbacks.append(callback)

    def on_reconnect(self, callback: Callable[[], None]) -> None:
        self._reconnect_callbacks.append(callback)

    def on_disconnect(self, callback: Callable[[], None]) -> None:
        self._disconnect_callbacks.append(callback)

    def _attach(self, task: asyncio.Task[None]) -> None:
        self._task = task

    def _notify_error(self, error: Exception) -> None:
        for callback in self._error_callbacks:
            _safe_call(callback, error)

    def _notify_reconnect(self) -> None:
        for callback in self._reconnect_callbacks:
            _safe_call(callback)

    def _notify_disconnect(self) -> None:
        for callback in self._disconnect_callbacks:
            _safe_call(callback)


def _safe_call(callback: Callable[..., None], *args: object) -> None:
    try:
        callback(*args)
    except Exception:  # noqa: BLE001
        logger.warning("Subscription callback %r failed", callback, exc_info=True)


def _deliver(on_notification: NotificationCallback, notifications: list[Notification]) -> None:
    for notification in notifications:
        try:
            on_notification(notification)
        except Exception:  # noqa: BLE001
            logger.warning("Notification handler failed for %r", notification, exc_info=True)


class KvasirClient:
    def __init__(
        self,
        base_url: str = DEFAULT_KVASIR_URL,
        pod_name: str = DEFAULT_POD_NAME,
        timeout_s: float = 30.0,
        stream_path: str | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        if not self.base_url.startswith(("http://", "https://")):
            raise ValueError(f"Kvasir URL must start with http:// or https://, got: {base_url!r}")
        if not pod_name.strip():
            raise ValueError("pod_name cannot be empty")
        self.pod_name = pod_name
        self.timeout_s = timeout_s
        self.stream_path = stream_path or f"/{pod_name}/changes/stream"
        self._session: aiohttp.ClientSession | None = None

    async def __aenter__(self) -> "KvasirClient":
        self._ensure_session()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:  # noqa: ANN001
        await self.close()

    def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            # No total timeout on the session: the event stream stays open for the whole run.
            self._session = aiohttp.ClientSession(
                headers={
                    "Content-Type": "application/ld+json",
                    "X-User-ID": self.pod_name,
                },
                timeout=aiohttp.ClientTimeout(total=None, sock_connect=self.timeout_s),
            )
        return self._session

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    def _url(self, path: str) -> str:
        return f"{self.base_url}/{path.lstrip('/')}"

    async def submit(self, measurement: Measurement) -> SubmitResult:
        session = self._ensure_session()
        url = self._url(f"/{self.pod_name}/changes")
        body = json.dumps(build_change_request([measurement]))
        try:
            async with session.post(
                url, data=body, timeout=aiohttp.ClientTimeout(total=self.timeout_s)
            ) as response:
                if response.status >= 400:
                    detail = await response.text()
                    raise KvasirError(
                        f"Insert failed: {response.status} {response.reason}: {detail[:200]}",
                        status_code=response.status,
                    )
                location = response.headers.get("Location", "")
                success = response.status == 201
        except (aiohttp.ClientError, TimeoutError) as exc:
            raise KvasirError(f"Insert failed: {type(exc).__name__}: {exc}") from exc

        change_id = location.rstrip("/").rsplit("/", 1)[-1] if location else None
        # No opaque identifier: arrivals are matched on (sensor, timestamp), which
        # every change notification carries.
        return SubmitResult(success=success, change_id=change_id or None)

    async def health_check(self) -> bool:
        session = self._ensure_session()
        try:
            async with session.get(
                self._url(f"/{self.pod_name}"),
                timeout=aiohttp.ClientTimeout(total=self.timeout_s),
            ) as response:
                return response.status == 200
        except (aiohttp.ClientError, TimeoutError):
            logger.debug("Health check failed for %s", self.base_url, exc_info=True)
            return False

    async def subscribe(
        self,
        on_notification: NotificationCallback,
        reconnect_attempts: int = 5,
        reconnect_interval_s: float = 3.0,
    ) -> StreamSubscription:
        response = await self._open_stream()
        subscription = StreamSubscription()
        subscription._attach(
            asyncio.create_task(
                self._consume(
                    response,
                    on_notification,
                    subscription,
                    reconnect_attempts,
                    reconnect_interval_s,
                ),
                name="kvasir-sse",
            )
        )
        logger.info("Subscribed to %s", self._url(self.stream_path))
        return subscription

    async def _open_stream(self) -> aiohttp.ClientResponse:
        session = self._ensure_session()
        url = self._url(self.stream_path)
        try:
            response = await session.get(url, headers={"Accept": "text/event-stream"})
        except (aiohttp.ClientError, TimeoutError) as exc:
            raise SubscriptionError(f"Failed to open event stream {url}: {exc}") from exc
        if response.status != 200:
            response.release()
            raise SubscriptionError(f"Event stream {url} returned HTTP {response.status}")
        return response

    async def _read_stream(
        self, response: aiohttp.ClientResponse, on_notification: NotificationCallback
    ) -> int:
        events = 0
        async for data in iter_sse_data(response.content):
            events += 1
            _deliver(on_notification, parse_notifications(data))
        return events

    async def _consume(
        self,
        response: aiohttp.ClientResponse,
        on_notification: NotificationCallback,
        subscription: StreamSubscription,
        reconnect_attempts: int,
        reconnect_interval_s: float,
    ) -> None:
        current: aiohttp.ClientResponse | None = response
        failures = 0
        while True:
            if current is not None:
                try:
                    if await self._read_stream(current, on_notification):
                        failures = 0
                    logger.info("Event stream closed by server")
                except (aiohttp.ClientError, TimeoutError) as exc:
                    logger.warning("Event stream interrupted: %s", exc)
                finally:
                    current.release()
                current = None

            if failures >= reconnect_attempts:
                error = SubscriptionError(
                    f"Event stream lost after {reconnect_attempts} reconnect attempt(s)"
                )
                logger.error("%s", error)
                subscription._notify_error(error)
                subscription._notify_disconnect()
                return

            failures += 1
            await asyncio.sleep(reconnect_interval_s)
            try:
                current = await self._open_stream()
            except SubscriptionError as exc:
                logger.warning(
                    "Reconnect attempt %d/%d failed: %s", failures, reconnect_attempts, exc
                )
                continue
            logger.info("Reconnected to event stream (attempt %d)", failures)
            subscription._notify_reconnect()


class PollingSubscriber:
    """Subscriber that polls ``fetch`` on a fixed interval instead of streaming."""

    def __init__(
        self,
        fetch: Callable[[], Awaitable[list[Notification]]],
        interval_s: float = 1.0,
    ) -> None:
        if interval_s <= 0:
            raise ValueError("interval_s must be > 0")
        self.fetch = fetch
        self.interval_s = interval_s

    async def subscribe(self, on_notification: NotificationCallback) -> StreamSubscription:
        try:
            initial = await self.fetch()
        except Exception as exc:
            raise SubscriptionError(f"Initial poll failed: {exc}") from exc

        subscription = StreamSubscription()
        _deliver(on_notification, initial)
        subscription._attach(
            asyncio.create_task(self._poll(on_notification), name="kvasir-poll")
        )
        return subscription

    async def _poll(self, on_notification: NotificationCallback) -> None:
        while True:
            await asyncio.sleep(self.interval_s)
            try:
                notifications = await self.fetch()
            except Exception as exc:  # noqa: BLE001
                logger.warning("Poll failed, retrying next interval: %s", exc)
                continue
            _deliver(on_notification, notifications)

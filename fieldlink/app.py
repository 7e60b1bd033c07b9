"""Main application entry-point for fieldlink."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import random
from datetime import datetime
from typing import Any, Callable, List, Mapping, Optional

from . import constants
from .acknowledgments import AcknowledgmentMatcher
from .adapters import MQTTClient, MQTTConnectionError
from .alarms import RuleConfigurationError, RuleStore, ThresholdEvaluator, load_rules
from .commands import CommandDispatcher
from .config import FieldlinkConfig, load_config
from .core import CommandRegistry
from .events import EventBus
from .forwarder import EventForwarder
from .health import HealthReporter, HealthServer
from .liveness import LivenessMonitor
from .logging import configure_logging
from .router import InboundRouter

LOGGER = logging.getLogger(__name__)


class FieldlinkApp:
    """Coordinates application startup and shutdown.

    The component graph is built eagerly in ``__init__`` so embedding callers
    can subscribe to :attr:`bus` before :meth:`run` connects to the broker.
    The MQTT client can be injected for testing.
    """

    def __init__(
        self,
        config: Optional[FieldlinkConfig] = None,
        *,
        mqtt_client: Optional[MQTTClient] = None,
        rules: Optional[RuleStore] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._config = config or load_config()
        cfg = self._config

        self._mqtt_client = mqtt_client or MQTTClient(
            cfg.broker, client_id=_build_client_id(cfg.broker.client_id)
        )
        self._health = HealthReporter()
        self._health_server: Optional[HealthServer] = None
        self._connect_task: Optional[asyncio.Task[None]] = None
        self._shutdown_event: Optional[asyncio.Event] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._stopping = False
        self._rules_error: Optional[str] = None

        self.bus = EventBus()
        self.registry = CommandRegistry(
            history_size=cfg.commands.history_size, clock=clock
        )
        self.dispatcher = CommandDispatcher(
            self.registry,
            self._mqtt_client,
            self.bus,
            default_timeout_ms=cfg.commands.timeout_ms,
            topic_for=cfg.topics.command_topic,
            clock=clock,
        )
        self.matcher = AcknowledgmentMatcher(self.registry, self.dispatcher, self.bus)

        self.rules = rules if rules is not None else self._load_rules()
        self.evaluator = ThresholdEvaluator(
            self.rules,
            self.bus,
            cooldown_ms=cfg.alarms.cooldown_ms,
            nominal_event_code=cfg.alarms.nominal_event_code,
            missing_value_policy=cfg.alarms.missing_value_policy,
            clock=clock,
        )
        self.liveness = LivenessMonitor(
            self.bus,
            warning_threshold_ms=cfg.liveness.warning_threshold_ms,
            offline_threshold_ms=cfg.liveness.offline_threshold_ms,
            sweep_interval_ms=cfg.liveness.sweep_interval_ms,
            device_source=self._provisioned_devices,
            clock=clock,
        )
        self.router = InboundRouter(
            data_topic=cfg.topics.data,
            response_topic=cfg.topics.responses,
            liveness=self.liveness,
            evaluator=self.evaluator,
            matcher=self.matcher,
        )
        self.forwarder = EventForwarder(
            self._mqtt_client, topic_prefix=cfg.topics.events_prefix
        )

        self._health.add_detail_provider(
            "pendingCommands", lambda: self.registry.pending_count
        )
        self._health.add_detail_provider("devices", self.liveness.summary)

    @property
    def health(self) -> HealthReporter:
        return self._health

    async def send_command(
        self,
        device_id: str,
        command_type: str,
        payload: Optional[Mapping[str, Any]] = None,
        timeout_ms: Optional[int] = None,
    ) -> str:
        return await self.dispatcher.dispatch(
            device_id, command_type, payload, timeout_ms=timeout_ms
        )

    async def run(self) -> None:
        """Connect, serve until shutdown is requested, then clean up."""

        self._loop = asyncio.get_running_loop()
        self._shutdown_event = asyncio.Event()

        LOGGER.info("fieldlink starting with config: %s", self._config.path)
        started = await self._start_services()
        if not started:
            LOGGER.warning("MQTT unavailable; retrying in the background")

        try:
            await self._idle_loop()
        except asyncio.CancelledError:
            LOGGER.info("fieldlink received shutdown signal")
            raise
        finally:
            await self._stop_services()

    def request_shutdown(self) -> None:
        if self._shutdown_event is not None:
            self._shutdown_event.set()

    @classmethod
    def start(cls, config: Optional[FieldlinkConfig] = None) -> None:
        instance = cls(config=config)
        configure_logging(
            instance._config.logging.level,
            log_path=instance._config.logging.path,
            log_network=instance._config.logging.log_network,
        )
        try:
            asyncio.run(instance.run())
        except KeyboardInterrupt:
            LOGGER.info("fieldlink received shutdown signal")

    async def _idle_loop(self) -> None:
        LOGGER.info("fieldlink supervisor active; awaiting shutdown signal")
        if self._shutdown_event is None:
            self._shutdown_event = asyncio.Event()

        interval = self._config.liveness.sweep_interval_ms / 1000.0
        while not self._shutdown_event.is_set():
            try:
                await asyncio.wait_for(self._shutdown_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pruned = self.evaluator.prune_cooldowns()
                if pruned:
                    LOGGER.debug("Pruned %d expired alarm cooldown(s)", pruned)

    async def _start_services(self) -> bool:
        self._stopping = False

        await self._health.update("mqtt", False, "initialising")
        if self._rules_error is not None:
            await self._health.update("alarms", False, self._rules_error)
        else:
            await self._health.update("alarms", True, f"{len(self.rules)} alarm(s)")

        self._mqtt_client.register_disconnect_handler(self._on_mqtt_disconnect)
        self._mqtt_client.register_connect_handler(self._on_mqtt_connect)
        self._mqtt_client.set_message_handler(self.router.handle_message)

        await self._start_health_server()

        if not await self._connect_mqtt():
            self._connect_task = asyncio.create_task(self._connect_with_backoff())
            return False

        await self._start_pipeline()
        return True

    async def _start_pipeline(self) -> None:
        self.forwarder.attach(self.bus)
        self.liveness.start()
        await self._health.update("liveness", True, None)

    async def _connect_with_backoff(self) -> None:
        """Retry the initial broker connection until it succeeds or shutdown.

        paho only reconnects on its own after a first successful connect, so
        until then the retries happen here with exponential backoff and jitter.
        """
        resilience = self._config.resilience
        delay = max(0.01, resilience.reconnect_initial_seconds)
        max_delay = max(delay, resilience.reconnect_max_seconds)
        jitter_ratio = max(0.0, min(1.0, resilience.reconnect_jitter_ratio))

        shutdown = self._shutdown_event or asyncio.Event()
        attempt = 1
        while not self._stopping:
            sleep_for = delay
            if jitter_ratio > 0.0:
                jitter = delay * jitter_ratio
                sleep_for = random.uniform(max(0.01, delay - jitter), delay + jitter)

            LOGGER.info("Retrying MQTT connection in %.1fs", sleep_for)
            try:
                await asyncio.wait_for(shutdown.wait(), timeout=sleep_for)
                return
            except asyncio.TimeoutError:
                pass

            attempt += 1
            if await self._connect_mqtt():
                LOGGER.info("MQTT connected after %d attempt(s)", attempt)
                await self._start_pipeline()
                return
            delay = min(delay * 2, max_delay)

    async def _stop_connect_task(self) -> None:
        task = self._connect_task
        self._connect_task = None
        if task is None or task.done():
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def _connect_mqtt(self) -> bool:
        topics = self._config.topics
        try:
            await self._mqtt_client.connect()
            self._mqtt_client.subscribe(topics.data)
            self._mqtt_client.subscribe(topics.responses)
        except MQTTConnectionError as exc:
            await self._health.update("mqtt", False, str(exc))
            LOGGER.error("MQTT connection failed: %s", exc)
            if self._mqtt_client.is_connected():
                await self._mqtt_client.disconnect()
            return False

        LOGGER.info(
            "Subscribed to telemetry on %s and responses on %s",
            topics.data,
            topics.responses,
        )
        await self._health.update("mqtt", True, None)
        return True

    async def _start_health_server(self) -> None:
        health = self._config.health
        if not health.enabled or health.port <= 0:
            return

        server = HealthServer(self._health, health.host, health.port)
        try:
            await server.start()
        except OSError as exc:
            LOGGER.error("Failed to start health endpoint: %s", exc)
            await self._health.update("health-endpoint", False, str(exc))
        else:
            self._health_server = server
            await self._health.update("health-endpoint", True, None)

    async def _stop_health_server(self) -> None:
        if self._health_server is None:
            return
        await self._health_server.stop()
        self._health_server = None
        await self._health.update("health-endpoint", False, "shutdown")

    async def _stop_services(self) -> None:
        self._stopping = True
        await self._stop_connect_task()

        await self.dispatcher.abandon_pending("shutdown")
        await self.bus.drain()

        await self.liveness.stop()
        await self._health.update("liveness", False, "shutdown")
        self.forwarder.detach()
        await self._stop_health_server()

        if self._mqtt_client.is_connected():
            await self._mqtt_client.disconnect()
        await self._health.update("mqtt", False, "shutdown")

        if self._shutdown_event is not None:
            self._shutdown_event.set()

    def _load_rules(self) -> RuleStore:
        path = self._config.alarms.rules_path
        if path is None:
            return RuleStore()
        try:
            return load_rules(path)
        except RuleConfigurationError as exc:
            LOGGER.error("Alarm rules disabled: %s", exc)
            self._rules_error = str(exc)
            return RuleStore()

    def _provisioned_devices(self) -> List[str]:
        devices = list(self._config.liveness.devices)
        for device_id in self.rules.device_ids():
            if device_id not in devices:
                devices.append(device_id)
        return devices

    def _schedule_health_update(
        self, name: str, healthy: bool, detail: Optional[str]
    ) -> None:
        loop = self._loop
        if loop is None:
            return

        async def _runner() -> None:
            await self._health.update(name, healthy, detail)

        loop.call_soon_threadsafe(lambda: asyncio.create_task(_runner()))

    def _on_mqtt_disconnect(self, rc: int) -> None:
        if self._stopping:
            return
        LOGGER.warning("MQTT connection lost (rc=%s); paho will reconnect", rc)
        self._schedule_health_update("mqtt", False, f"disconnected (rc={rc})")

    def _on_mqtt_connect(self, rc: int) -> None:
        if self._stopping:
            return
        self._schedule_health_update("mqtt", True, None)


def _build_client_id(configured: Optional[str]) -> str:
    if configured:
        return configured
    return f"{constants.APP_NAME}-{os.getpid()}"

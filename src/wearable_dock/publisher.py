"""MQTT publisher: one broker connection per processing cycle, QoS 0."""

from __future__ import annotations

import logging
import time
from typing import Callable, Iterable, Optional

import paho.mqtt.client as mqtt

from wearable_dock.retry import PollPolicy
from wearable_dock.telemetry import TelemetryRecord


def _default_client_factory() -> mqtt.Client:
    kwargs = {}
    if hasattr(mqtt, "CallbackAPIVersion"):
        kwargs["callback_api_version"] = mqtt.CallbackAPIVersion.VERSION2
    return mqtt.Client(**kwargs)


class MqttPublisher:
    def __init__(self,
                 host: str = "localhost",
                 port: int = 1883,
                 topic: str = "BORUS/extf",
                 keepalive: int = 60,
                 throttle: float = 0.001,
                 connect_policy: Optional[PollPolicy] = None,
                 client_factory: Callable[[], mqtt.Client] = _default_client_factory,
                 sleep: Callable[[float], None] = time.sleep):
        self.host = host
        self.port = port
        self.topic = topic
        self.keepalive = keepalive
        self.throttle = throttle
        self.connect_policy = connect_policy or PollPolicy(interval=0.05, timeout=3.0)
        self._client_factory = client_factory
        self._sleep = sleep

    @classmethod
    def from_settings(cls, cfg: dict, **kwargs) -> "MqttPublisher":
        return cls(
            host=cfg["host"],
            port=int(cfg["port"]),
            topic=cfg["topic"],
            keepalive=int(cfg["keepalive"]),
            throttle=float(cfg["throttle"]),
            connect_policy=PollPolicy.from_settings(cfg["connect"]),
            **kwargs,
        )

    def publish_all(self, records: Iterable[TelemetryRecord]) -> int:
        """
        Publish every record fire-and-forget. Returns how many the client
        accepted; records it refused are logged and dropped.
        """
        client = self._client_factory()
        try:
            client.connect_async(self.host, self.port, self.keepalive)
        except (OSError, ValueError) as exc:
            logging.error("MQTT connect to %s:%s failed: %s", self.host, self.port, exc)
            return 0

        client.loop_start()
        published = dropped = 0
        try:
            if not self.connect_policy.until(client.is_connected):
                logging.warning("MQTT broker %s:%s not reachable yet, publishing anyway",
                                self.host, self.port)

            for record in records:
                payload = record.to_json().encode()
                info = client.publish(self.topic, payload, qos=0, retain=False)
                if info.rc == mqtt.MQTT_ERR_SUCCESS:
                    published += 1
                else:
                    dropped += 1
                    logging.debug("publish ts=%s dropped (rc=%s)", record.timestamp_ms, info.rc)
                self._sleep(self.throttle)
        finally:
            client.loop_stop()
            client.disconnect()

        if dropped:
            logging.warning("%d record(s) could not be published to %s", dropped, self.topic)
        logging.info("Published %d record(s) to %s", published, self.topic)
        return published

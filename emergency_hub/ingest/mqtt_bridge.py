"""
Emergency Hub - MQTT Trigger Bridge

Lets upstream producers (weather poller, request service, operator
consoles) trigger broadcasts by publishing JSON on MQTT instead of calling
the hub in-process.

Topics (``<prefix>`` defaults to ``emergency-hub``):
    <prefix>/emergency  -> broadcast_emergency(body)
    <prefix>/weather    -> broadcast_weather_warning(body)
    <prefix>/targeted   -> send_targeted_notifications(body["criteria"],
                                                       body["message"])

Dependency (optional -- start() returns False if missing):
  - paho-mqtt: MQTT client library
"""

import json
import logging
import threading
from typing import Any, Dict, List, Optional

from ..broadcast.envelope import PayloadError

logger = logging.getLogger(__name__)

DEFAULT_BROKER = "localhost"
DEFAULT_PORT = 1883
DEFAULT_TOPIC_PREFIX = "emergency-hub"

# Maximum trigger payload size to process (bytes)
MAX_PAYLOAD_SIZE = 65536  # 64 KB

# paho's built-in reconnect backoff bounds (seconds)
RECONNECT_MIN_DELAY = 2
RECONNECT_MAX_DELAY = 120


def _try_import_paho():
    """Try to import paho-mqtt. Returns (module, CallbackAPIVersion) or (None, None)."""
    try:
        import paho.mqtt.client as mqtt
        api_version = getattr(mqtt, "CallbackAPIVersion", None)
        return mqtt, api_version
    except ImportError:
        return None, None


class MQTTTriggerBridge:
    """Subscribes to trigger topics and forwards them into the hub.

    Args:
        hub: Object exposing the hub's public broadcast API.
        broker / port: MQTT broker address.
        topic_prefix: Root of the trigger topic tree.
        username / password: Optional broker credentials.
        tls: Force TLS on/off; defaults to on when credentials are set.
    """

    def __init__(
        self,
        hub: Any,
        broker: str = DEFAULT_BROKER,
        port: int = DEFAULT_PORT,
        topic_prefix: str = DEFAULT_TOPIC_PREFIX,
        username: Optional[str] = None,
        password: Optional[str] = None,
        tls: Optional[bool] = None,
    ):
        self._hub = hub
        self._broker = broker
        self._port = port
        self._prefix = topic_prefix.rstrip("/")
        self._username = username
        self._password = password
        # Default to TLS when credentials are provided (protect passwords)
        self._tls = tls if tls is not None else (username is not None)
        self._client = None
        self._thread: Optional[threading.Thread] = None
        self._running = threading.Event()
        self._connected = threading.Event()
        self._stats_lock = threading.Lock()
        self._triggers_handled = 0
        self._rejected = 0

        mqtt_mod, api_version = _try_import_paho()
        self._mqtt_mod = mqtt_mod
        self._api_version = api_version

        self._routes = {
            f"{self._prefix}/emergency": self._on_emergency,
            f"{self._prefix}/weather": self._on_weather,
            f"{self._prefix}/targeted": self._on_targeted,
        }

    @classmethod
    def from_config(cls, hub: Any, config: Any) -> "MQTTTriggerBridge":
        return cls(
            hub,
            broker=config.get("mqtt_broker", DEFAULT_BROKER),
            port=int(config.get("mqtt_port", DEFAULT_PORT)),
            topic_prefix=config.get("mqtt_topic_prefix", DEFAULT_TOPIC_PREFIX),
            username=config.get("mqtt_username"),
            password=config.get("mqtt_password"),
        )

    @property
    def available(self) -> bool:
        """Whether paho-mqtt is available."""
        return self._mqtt_mod is not None

    @property
    def topics(self) -> List[str]:
        return list(self._routes)

    def start(self) -> bool:
        """Connect in a background thread. False if paho-mqtt is missing."""
        if not self._mqtt_mod:
            logger.info("paho-mqtt not installed; MQTT trigger bridge disabled")
            return False

        if self._running.is_set():
            return True

        try:
            mqtt = self._mqtt_mod
            if self._api_version and hasattr(self._api_version, "VERSION2"):
                self._client = mqtt.Client(self._api_version.VERSION2)
            else:
                self._client = mqtt.Client()

            if self._username:
                self._client.username_pw_set(self._username, self._password or "")

            if self._tls:
                import ssl
                self._client.tls_set(cert_reqs=ssl.CERT_REQUIRED,
                                     tls_version=ssl.PROTOCOL_TLS_CLIENT)
                logger.info("MQTT TLS enabled for %s:%d", self._broker, self._port)

            self._client.reconnect_delay_set(RECONNECT_MIN_DELAY, RECONNECT_MAX_DELAY)
            self._client.on_connect = self._on_connect
            self._client.on_message = self._on_message
            self._client.on_disconnect = self._on_disconnect

            self._running.set()
            self._thread = threading.Thread(
                target=self._run_loop,
                name="emergency-hub-mqtt",
                daemon=True,
            )
            self._thread.start()
            logger.info("MQTT trigger bridge starting: %s:%d prefix=%s",
                        self._broker, self._port, self._prefix)
            return True
        except Exception as e:
            logger.error("Failed to start MQTT trigger bridge: %s", e)
            self._running.clear()
            return False

    def stop(self) -> None:
        self._running.clear()
        client = self._client
        if client:
            try:
                client.disconnect()
            except Exception as e:
                logger.debug("MQTT disconnect error: %s", e)
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=5)
            if self._thread.is_alive():
                logger.warning("MQTT bridge thread did not exit within 5s")
        self._client = None
        self._thread = None
        self._connected.clear()
        logger.info("MQTT trigger bridge stopped")

    def get_stats(self) -> Dict[str, Any]:
        with self._stats_lock:
            handled = self._triggers_handled
            rejected = self._rejected
        return {
            "broker": self._broker,
            "port": self._port,
            "topic_prefix": self._prefix,
            "connected": self._connected.is_set(),
            "running": self._running.is_set(),
            "triggers_handled": handled,
            "rejected": rejected,
        }

    def _run_loop(self) -> None:
        """Blocking network loop; paho handles reconnect backoff."""
        try:
            self._client.connect(self._broker, self._port, keepalive=60)
        except Exception as e:
            logger.warning("MQTT initial connect to %s:%d failed: %s (retrying)",
                           self._broker, self._port, e)
        try:
            self._client.loop_forever(retry_first_connection=True)
        except Exception:
            if self._running.is_set():
                logger.exception("MQTT trigger bridge loop error")

    def _on_connect(self, client: Any, userdata: Any, flags: Any,
                    rc: Any, *args: Any) -> None:
        self._connected.set()
        logger.info("MQTT connected to %s (rc=%s)", self._broker, rc)
        for topic in self._routes:
            client.subscribe(topic, qos=1)

    def _on_disconnect(self, client: Any, userdata: Any, *args: Any) -> None:
        self._connected.clear()
        if self._running.is_set():
            logger.warning("MQTT disconnected (%s), will reconnect", args)

    def _on_message(self, client: Any, userdata: Any, msg: Any) -> None:
        handler = self._routes.get(msg.topic)
        if handler is None:
            return
        if len(msg.payload) > MAX_PAYLOAD_SIZE:
            logger.warning("MQTT: rejected oversized trigger (%d bytes) on %s",
                           len(msg.payload), msg.topic)
            self._inc_rejected()
            return
        try:
            body = json.loads(msg.payload)
            if not isinstance(body, dict):
                raise PayloadError("trigger body must be a JSON object")
            handler(body)
        except (json.JSONDecodeError, UnicodeDecodeError, PayloadError) as e:
            logger.warning("MQTT: dropped malformed trigger on %s: %s", msg.topic, e)
            self._inc_rejected()
            return
        except Exception:
            logger.exception("MQTT: trigger on %s failed", msg.topic)
            self._inc_rejected()
            return
        with self._stats_lock:
            self._triggers_handled += 1

    def _inc_rejected(self) -> None:
        with self._stats_lock:
            self._rejected += 1

    def _on_emergency(self, body: Dict[str, Any]) -> None:
        self._hub.broadcast_emergency(body)

    def _on_weather(self, body: Dict[str, Any]) -> None:
        self._hub.broadcast_weather_warning(body)

    def _on_targeted(self, body: Dict[str, Any]) -> None:
        if "criteria" not in body or "message" not in body:
            raise PayloadError("targeted trigger needs 'criteria' and 'message'")
        self._hub.send_targeted_notifications(body["criteria"], body["message"])

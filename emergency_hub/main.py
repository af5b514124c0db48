"""
Emergency Hub - Standalone Entry Point

Constructs the hub service once and keeps it running until interrupted.
Route handlers embedding the hub in a larger process should construct
``EmergencyHubService`` themselves and pass the instance to whoever needs
to trigger broadcasts.

Usage:
  python -m emergency_hub.main
  EMERGENCY_HUB_PORT=9090 python -m emergency_hub.main
"""

import logging
import sys
import time
from typing import Optional

from .hub_service import EmergencyHubService
from .ingest.mqtt_bridge import MQTTTriggerBridge
from .utils.config import HubConfig
from .utils.event_bus import Event, EventBus

logger = logging.getLogger(__name__)


def _log_event(event: Event) -> None:
    logger.debug("hub event %s %s", event.event_type.value, event.data)


def build_hub(config: Optional[HubConfig] = None) -> EmergencyHubService:
    """Wire a hub with an event bus that logs every lifecycle event."""
    bus = EventBus()
    bus.subscribe(None, _log_event)
    return EmergencyHubService(config or HubConfig(), event_bus=bus)


def main() -> None:
    """Standalone entry point."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    )

    config = HubConfig()
    hub = build_hub(config)
    bridge: Optional[MQTTTriggerBridge] = None
    exit_code = 0
    try:
        if not hub.start():
            print("ERROR: Failed to start emergency hub. Check if the port is available.")
            exit_code = 1
            return

        if config.get("mqtt_enabled"):
            bridge = MQTTTriggerBridge.from_config(hub, config)
            if not bridge.start():
                logger.warning("MQTT trigger bridge not started")
                bridge = None

        print(f"Emergency hub running at ws://{hub.host}:{hub.port}")
        print("Press Ctrl+C to stop")

        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        print("\nShutting down...")
    except Exception:
        logger.exception("Emergency hub encountered a fatal error")
        exit_code = 1
    finally:
        if bridge:
            bridge.stop()
        hub.stop()
        sys.exit(exit_code)


if __name__ == "__main__":
    main()

import json
import logging
from app.platform.ports.event_bus import EventBusPort

log = logging.getLogger("bus.noop")

class NoopEventBus(EventBusPort):
    def __init__(self):
        self.published: list[tuple[str, str, dict]] = []

    async def publish(self, topic: str, key: str, value: dict, headers: dict | None = None) -> None:
        self.published.append((topic, key, value))
        log.info(f"[NOOP BUS] topic={topic} key={key} value={json.dumps(value, default=str)} headers={headers or {}}")

    async def close(self) -> None:
        return None

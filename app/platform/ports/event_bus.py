from typing import Protocol, runtime_checkable

MEDIA_TOPIC = "media.events"

@runtime_checkable
class EventBusPort(Protocol):
    """Completion signal for background media jobs (media.asset.ready / media.asset.failed)."""

    async def publish(self, topic: str, key: str, value: dict, headers: dict | None = None) -> None: ...

    async def close(self) -> None: ...

"""CLI demonstration of a content item flowing through the creation and optimisation agents."""
from __future__ import annotations

import asyncio

from contentops.config import ContainerConfig, default_mapping
from contentops.core.envelope import CommandEnvelope, EventEnvelope
from contentops.runtime import build_container


async def main() -> None:
    config = ContainerConfig.from_mapping({**default_mapping(), "logging": {"level": "WARNING"}})
    container = build_container(config)
    await container.start()
    print(f"Container health: {container.health().status}")

    seen: "asyncio.Queue[EventEnvelope]" = asyncio.Queue()

    async def record(delivery) -> None:
        await seen.put(EventEnvelope.from_json(delivery.body))

    listeners = [
        await container.bus.subscribe_events(pattern, record, consumer="demo")
        for pattern in ("creation.*", "optimisation.*")
    ]
    try:
        command = CommandEnvelope(
            type="create_content",
            target_agent="creation",
            payload={"title": "Spring launch checklist", "keywords": ["launch", "checklist"]},
        )
        await container.bus.publish_command(command)
        print(f"Published {command.type} with correlation {command.correlation_id}")
        for _ in range(2):
            event = await asyncio.wait_for(seen.get(), timeout=5)
            print(f"Received {event.type}: {event.payload}")
    finally:
        for listener in listeners:
            await listener.stop()
        await container.stop()
    print("Container stopped")


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()

from __future__ import annotations

import asyncio

from teamauth.persistence.db import create_schema, engine


async def init() -> None:
    await create_schema()
    await engine.dispose()
    print("schema_ready=true")


if __name__ == "__main__":
    asyncio.run(init())

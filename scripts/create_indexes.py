import asyncio

from microdonate.core.db import get_client, get_db
from microdonate.core.indexes import ensure_indexes


async def main():
    await ensure_indexes(get_db())
    get_client().close()
    print("Indexes ensured")


if __name__ == "__main__":
    asyncio.run(main())

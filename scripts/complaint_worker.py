from __future__ import annotations

import asyncio

from complaintwatch.core.logging import configure_logging
from complaintwatch.workers.runtime import build_runtime, serve


async def _main() -> None:
    # One process hosts every tenant worker plus the ops surface.
    configure_logging()
    await serve(build_runtime())


if __name__ == "__main__":
    asyncio.run(_main())

"""
Exporter Module Entry Point

Allows execution via: python -m apps.exporter

Delegates to the invocation consumer (continuous and RUN_ONCE modes). The
stale-job sweeper runs separately via: python -m apps.exporter.scheduler
"""

import asyncio

from apps.exporter.consumer import main

if __name__ == "__main__":
    asyncio.run(main())

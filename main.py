"""
Chore Engine — Entry Point.

Single entry point: `python main.py` runs the periodic maintenance loop
(sweep overdue/expired work, then generate upcoming assignments).
"""

import asyncio
import logging

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)

from chore_engine.core.scheduler import maintenance_loop

if __name__ == "__main__":
    asyncio.run(maintenance_loop())

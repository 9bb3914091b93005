import asyncio
import sys
from habit_engine.db import get_session, init_db
from habit_engine.services.day_cycle_service import close_day, seed_day

async def main(step: str):
    if step not in ("seed", "close", "all"):
        raise SystemExit("usage: run_day_cycle.py [seed|close|all]")
    await init_db()
    async with get_session() as session:
        if step in ("seed", "all"):
            await seed_day(session)
        if step in ("close", "all"):
            await close_day(session)

if __name__ == "__main__":
    asyncio.run(main(sys.argv[1] if len(sys.argv) > 1 else "all"))

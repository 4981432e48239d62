"""
Initialize the database: create all tables, optionally seed demo users.
Run with: python -m scripts.init_db [--seed]
"""

import argparse
import asyncio
from medtrack.database import engine, Base
from medtrack.models import User, Appointment, UserSession  # noqa: F401  registers tables
from medtrack.main import seed_demo_users


async def init(seed: bool):
    print("Creating database tables...")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    print("All tables created successfully.")
    if seed:
        await seed_demo_users()
        print("Demo doctors and patient seeded.")
    await engine.dispose()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Create MedTrack tables")
    parser.add_argument("--seed", action="store_true", help="insert demo doctors and a demo patient")
    args = parser.parse_args()
    asyncio.run(init(args.seed))

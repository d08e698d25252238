"""
Database CLI Commands

Database operations: init, verify, seed-demo
"""
import asyncio
import json
from typing import Optional

from defense_eval.core.stages import EvaluationType
from defense_eval.database import build_engine, build_session_factory, init_db
from defense_eval.seed.demo_defense import seed_defense
from defense_eval.services.integrity_service import verify_integrity


class DbCommand:
    """Database CLI command handler."""

    def __init__(self, dry_run: bool = False, database_url: Optional[str] = None):
        self.dry_run = dry_run
        self.database_url = database_url

    def execute(self, args) -> int:
        """Execute database command."""
        if args.db_action == "init":
            return self._init(args)
        elif args.db_action == "verify":
            return self._verify(args)
        elif args.db_action == "seed-demo":
            return self._seed_demo(args)
        else:
            print("Error: Unknown database action")
            return 1

    def _init(self, args) -> int:
        """Create all tables."""
        print("=== Database Init ===")

        if self.dry_run:
            print("[DRY RUN] Would create missing tables")
            return 0

        asyncio.run(self._async_init())
        print("✓ Schema ready")
        return 0

    async def _async_init(self):
        engine = build_engine(self.database_url)
        try:
            await init_db(engine)
        finally:
            await engine.dispose()

    def _verify(self, args) -> int:
        """Verify completion invariants."""
        print("=== Database Integrity Verification ===")

        if self.dry_run:
            print("[DRY RUN] Would verify database integrity")
            return 0

        report = asyncio.run(self._async_verify())

        if args.json:
            print(json.dumps(report.to_dict(), indent=2))
        else:
            for name, count in sorted(report.checked.items()):
                print(f"  checked {name}: {count}")
            for violation in report.violations:
                print(f"  ✗ [{violation['check']}] {violation['entity']} {violation['id']}: {violation['detail']}")

        if report.ok:
            print("✓ No violations")
            return 0
        print(f"✗ {len(report.violations)} violations")
        return 1

    async def _async_verify(self):
        engine = build_engine(self.database_url)
        session_factory = build_session_factory(engine)
        try:
            async with session_factory() as db:
                return await verify_integrity(db)
        finally:
            await engine.dispose()

    def _seed_demo(self, args) -> int:
        """Seed a demo defense."""
        print("=== Seed Demo Defense ===")

        if self.dry_run:
            print(f"[DRY RUN] Would seed a {args.type} defense with {args.rooms} rooms")
            return 0

        seeded = asyncio.run(self._async_seed(args))
        print(f"✓ Defense {seeded.defense_id} ({seeded.evaluation_type.value})")
        for room in seeded.rooms:
            print(f"  room {room.room_id}: projects {room.project_ids}, evaluators {room.evaluator_ids}")
        return 0

    async def _async_seed(self, args):
        engine = build_engine(self.database_url)
        session_factory = build_session_factory(engine)
        try:
            await init_db(engine)
            async with session_factory() as db:
                async with db.begin():
                    return await seed_defense(
                        db,
                        evaluation_type=EvaluationType(args.type),
                        rooms=args.rooms,
                        projects_per_room=args.projects,
                        evaluators_per_room=args.evaluators,
                        members_per_project=args.members,
                    )
        finally:
            await engine.dispose()

"""
Database seeding script to populate tables with realistic test data.

Creates classes, children, discount codes, pending enrollments and a full
class with a waitlist. Enrollments go through the lifecycle manager so seat
counts, orders and waitlist positions are consistent.

Usage:
    uv run python scripts/seed_database.py
"""

import asyncio
import random
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.child import Child
from app.models.class_ import Class
from app.models.discount import DiscountCode, DiscountType
from app.services.context import CallerContext
from app.services.enrollment_service import EnrollmentLifecycleManager
from app.services.notifier import LoggingNotifier
from app.services.stripe_service import StripeGateway
from core.db import async_session_factory
from core.logging import get_logger

logger = get_logger(__name__)

PARENT_IDS = [f"seed-parent-{i:04d}" for i in range(1, 6)]

CHILD_NAMES = [
    ("Emma", "Johnson"),
    ("Liam", "Johnson"),
    ("Olivia", "Garcia"),
    ("Noah", "Martinez"),
    ("Ava", "Martinez"),
    ("Elijah", "Brown"),
    ("Sophia", "Davis"),
    ("Lucas", "Davis"),
    ("Mia", "Wilson"),
]


class DatabaseSeeder:
    """Database seeding utility."""

    def __init__(self):
        self.children = []
        self.classes = []

    async def clear_database(self, session: AsyncSession):
        """Clear all tables in reverse dependency order."""
        logger.info("Clearing existing data...")

        tables = [
            "attendances",
            "discount_code_usages",
            "installment_payments",
            "installment_plans",
            "waitlist_entries",
            "enrollment_history",
            "enrollments",
            "order_transactions",
            "order_line_items",
            "orders",
            "discount_codes",
            "children",
            "classes",
        ]
        for table in tables:
            await session.execute(text(f"DELETE FROM {table}"))
        await session.commit()

        logger.info("Database cleared successfully")

    async def seed_all(self):
        """Seed all tables with test data."""
        async with async_session_factory() as session:
            logger.info("Starting database seeding...")

            await self.clear_database(session)

            await self.seed_classes(session)
            await self.seed_children(session)
            await self.seed_discount_codes(session)
            await session.commit()

            await self.seed_enrollments(session)
            logger.info("Database seeding completed successfully!")

    async def seed_classes(self, session: AsyncSession):
        """Seed class offerings, including one with a single seat."""
        logger.info("Seeding classes...")

        offerings = [
            ("Soccer Fundamentals", 12, 15000, 10),
            ("Basketball Skills", 10, 18000, 12),
            ("Junior Chess Club", 8, 9000, 8),
            ("Swim Level 1", 1, 20000, 10),
        ]
        for name, capacity, price, sessions in offerings:
            start_date = date.today() + timedelta(days=random.randint(7, 30))
            cls = Class(
                name=name,
                description=f"{name} for ages 6 to 12",
                start_date=start_date,
                end_date=start_date + timedelta(weeks=sessions),
                session_count=sessions,
                capacity=capacity,
                price=price,
                installments_enabled=price >= 15000,
                is_active=True,
            )
            session.add(cls)
            self.classes.append(cls)

        await session.flush()
        logger.info(f"Created {len(self.classes)} classes")

    async def seed_children(self, session: AsyncSession):
        """Seed children spread across the seed parents."""
        logger.info("Seeding children...")

        for i, (first_name, last_name) in enumerate(CHILD_NAMES):
            child = Child(
                user_id=PARENT_IDS[i % len(PARENT_IDS)],
                first_name=first_name,
                last_name=last_name,
                is_active=True,
            )
            session.add(child)
            self.children.append(child)

        await session.flush()
        logger.info(f"Created {len(self.children)} children")

    async def seed_discount_codes(self, session: AsyncSession):
        """Seed discount codes."""
        logger.info("Seeding discount codes...")

        now = datetime.now(timezone.utc)
        discount_data = [
            ("SAVE20", DiscountType.PERCENTAGE, Decimal("20"), None, 10000, False),
            ("WELCOME10", DiscountType.PERCENTAGE, Decimal("10"), 500, None, True),
            ("FALL50", DiscountType.FIXED_AMOUNT, Decimal("5000"), 50, 20000, False),
            ("EARLYBIRD", DiscountType.PERCENTAGE, Decimal("15"), 200, None, False),
        ]
        for code, disc_type, value, max_uses, min_amount, first_time in discount_data:
            session.add(
                DiscountCode(
                    code=code,
                    discount_type=disc_type,
                    discount_value=value,
                    max_uses=max_uses,
                    min_order_amount=min_amount,
                    first_time_only=first_time,
                    valid_from=now - timedelta(days=30),
                    valid_until=now + timedelta(days=90),
                    applicable_class_ids=[],
                    applicable_program_ids=[],
                    is_active=True,
                )
            )

        await session.flush()
        logger.info(f"Created {len(discount_data)} discount codes")

    async def seed_enrollments(self, session: AsyncSession):
        """Enroll children; the single-seat class ends up with a waitlist."""
        logger.info("Seeding enrollments...")

        manager = EnrollmentLifecycleManager(
            session, StripeGateway(), notifier=LoggingNotifier()
        )
        ctx = CallerContext.system()
        open_classes = self.classes[:-1]
        single_seat = self.classes[-1]

        pending = 0
        for i, child in enumerate(self.children[:5]):
            await manager.create(ctx, child.id, open_classes[i % len(open_classes)].id)
            pending += 1

        waitlisted = 0
        for child in self.children[5:]:
            result = await manager.create(ctx, child.id, single_seat.id)
            if result.waitlist_position:
                waitlisted += 1

        logger.info(f"Created {pending} pending enrollments and {waitlisted} waitlisted")


async def main():
    """Main entry point for seeding."""
    seeder = DatabaseSeeder()
    await seeder.seed_all()


if __name__ == "__main__":
    asyncio.run(main())

"""
Create the KioskPay schema and seed billing reference data

Migration to:
- create every table registered on Base.metadata
- seed the monthly and yearly subscription plans
- seed the LEGACY30FREE promo code

Run with: python migrations/create_schema.py
"""

import sys
from pathlib import Path

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from sqlalchemy import text

from kioskpay import models, models_billing  # noqa: F401
from kioskpay.database import Base, engine
from kioskpay.domain.billing.pricing import DEFAULT_PLANS
from kioskpay.domain.billing.subscription_service import (
    DEFAULT_PLAN_VARIATIONS,
    LEGACY_PROMO_CODE,
    LEGACY_PROMO_VALIDITY,
    PLAN_NAMES,
)
from kioskpay.utils import utcnow


def seed_plans(conn):
    for plan_type, prices in DEFAULT_PLANS.items():
        existing = conn.execute(
            text("SELECT id FROM subscription_plans WHERE plan_type = :plan_type"),
            {"plan_type": plan_type},
        ).first()
        if existing:
            print(f"ℹ️  {plan_type} plan already exists")
            continue

        conn.execute(
            text("""
                INSERT INTO subscription_plans
                    (plan_type, name, base_price_cents, extra_device_price_cents, square_plan_variation_id, active)
                VALUES (:plan_type, :name, :base, :extra, :variation_id, :active)
            """),
            {
                "plan_type": plan_type,
                "name": PLAN_NAMES[plan_type],
                "base": prices["base"],
                "extra": prices["extra"],
                "variation_id": DEFAULT_PLAN_VARIATIONS.get(plan_type),
                "active": True,
            },
        )
        print(f"✅ Seeded {plan_type} plan")


def seed_legacy_promo(conn):
    existing = conn.execute(
        text("SELECT id FROM promo_codes WHERE code = :code"),
        {"code": LEGACY_PROMO_CODE},
    ).first()
    if existing:
        print(f"ℹ️  {LEGACY_PROMO_CODE} promo code already exists")
        return

    now = utcnow()
    conn.execute(
        text("""
            INSERT INTO promo_codes
                (code, discount_type, discount_value, max_uses, used_count, valid_until, active, created_at)
            VALUES (:code, 'percentage', 50, 1000, 0, :valid_until, :active, :created_at)
        """),
        {
            "code": LEGACY_PROMO_CODE,
            "valid_until": now + LEGACY_PROMO_VALIDITY,
            "active": True,
            "created_at": now,
        },
    )
    print(f"✅ Seeded {LEGACY_PROMO_CODE} promo code")


def upgrade():
    """Create tables and seed reference rows"""
    Base.metadata.create_all(bind=engine, checkfirst=True)
    print("✅ Tables created")

    with engine.connect() as conn:
        seed_plans(conn)
        seed_legacy_promo(conn)
        conn.commit()

    print("\n✅ Migration completed successfully!")


def downgrade():
    """Drop every KioskPay table"""
    Base.metadata.drop_all(bind=engine)
    print("✅ Tables dropped")


if __name__ == "__main__":
    if len(sys.argv) > 1 and sys.argv[1] == "downgrade":
        downgrade()
    else:
        upgrade()

"""Create the schema and load demo users, customers, orders and campaigns.

Usage: python scripts/seed_data.py --admin-password <password> [--reset]
"""

import argparse
import asyncio
import os
import pathlib
import random
import sys
from datetime import timedelta

sys.path.append(str(pathlib.Path(__file__).resolve().parents[1]))

from sqlalchemy import delete

from crm.core.db import SessionLocal, engine
from crm.core.security import get_password_hash
from crm.models import AuditLog, Base, Campaign, Customer, IdempotencyKey, Order, OrderItem, User
from crm.models.base import utcnow
from crm.services.audience import count_audience

CUSTOMER_NAMES = [
    "Rajesh Kumar", "Priya Sharma", "Amit Patel", "Sneha Gupta", "Vikram Singh",
    "Anita Verma", "Rohit Agarwal", "Kavya Reddy", "Suresh Nair", "Meera Joshi",
    "Arjun Mehta", "Divya Iyer", "Karan Malhotra", "Ritu Bansal", "Sanjay Rao",
    "Pooja Saxena", "Nikhil Jain", "Shreya Kapoor", "Manish Tiwari", "Nisha Agrawal",
]
CITIES = ["Mumbai", "Delhi", "Bangalore", "Chennai", "Kolkata", "Pune", "Hyderabad"]
PRODUCTS = ["Smartphone", "Laptop", "Headphones", "Watch", "Tablet", "Camera", "Speaker", "Keyboard", "Mouse", "Monitor"]

SAMPLE_CAMPAIGNS = [
    {
        "name": "High Value Customer Appreciation",
        "type": "email",
        "subject": "Thank you for being a valued customer!",
        "content": "Hi {{name}}, enjoy an exclusive 20% discount on your next purchase.",
        "rules": [{"field": "totalSpending", "operator": ">", "value": 50000, "logic": "AND"}],
    },
    {
        "name": "Win Back Inactive Shoppers",
        "type": "sms",
        "subject": None,
        "content": "We miss you {{name}}! Come back for 15% off.",
        "rules": [
            {"field": "visits", "operator": "<", "value": 5, "logic": "AND"},
            {"field": "totalSpending", "operator": "<", "value": 10000, "logic": "OR"},
        ],
    },
    {
        "name": "Metro Launch Push",
        "type": "push",
        "subject": None,
        "content": "New arrivals just landed in your city.",
        "rules": [
            {"field": "city", "operator": "=", "value": "Mumbai", "logic": "AND"},
            {"field": "city", "operator": "=", "value": "Delhi", "logic": "OR"},
            {"field": "city", "operator": "=", "value": "Bangalore", "logic": "OR"},
        ],
    },
]


async def main(admin_password: str, reset: bool) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    print("schema: ok")

    rng = random.Random(42)
    now = utcnow()
    async with SessionLocal() as s:
        async with s.begin():
            if reset:
                for model in (OrderItem, Order, Campaign, Customer, IdempotencyKey, AuditLog, User):
                    await s.execute(delete(model))
                print("cleared existing data")

            admin = User(
                name="Admin User",
                email="admin@xeno-crm.com",
                password_hash=get_password_hash(admin_password),
                role="admin",
            )
            s.add(admin)

            customers = []
            for name in CUSTOMER_NAMES:
                customer = Customer(
                    name=name,
                    email=f"{name.lower().replace(' ', '.')}@example.com",
                    phone=f"+91{rng.randint(1000000000, 9999999999)}",
                    total_spending=0,
                    visits=0,
                    registration_date=now - timedelta(days=rng.uniform(0, 365)),
                    status="active" if rng.random() > 0.1 else "inactive",
                    tags=["customer", "premium" if rng.random() > 0.5 else "regular"],
                    city=rng.choice(CITIES),
                    state="India",
                    country="India",
                )
                s.add(customer)
                customers.append(customer)
            await s.flush()
            print(f"customers: {len(customers)}")

            for seq in range(1, 51):
                customer = rng.choice(customers)
                items = []
                for line_no in range(1, rng.randint(1, 3) + 1):
                    quantity = rng.randint(1, 3)
                    price = float(rng.randint(1000, 50000))
                    items.append(
                        OrderItem(
                            line_no=line_no,
                            product_name=rng.choice(PRODUCTS),
                            quantity=quantity,
                            price=price,
                            total=quantity * price,
                        )
                    )
                total = sum(item.total for item in items)
                order_date = now - timedelta(days=rng.uniform(0, 180))
                s.add(
                    Order(
                        order_number=f"ORD-{int(order_date.timestamp() * 1000)}-{seq:04d}",
                        customer_id=customer.id,
                        total_amount=total,
                        status=rng.choice(["pending", "confirmed", "shipped", "delivered"]),
                        payment_status="paid",
                        payment_method=rng.choice(["credit_card", "upi", "net_banking"]),
                        order_date=order_date,
                        items=items,
                    )
                )
                customer.total_spending = (customer.total_spending or 0) + total
                customer.visits = (customer.visits or 0) + 1
                if customer.last_purchase_date is None or customer.last_purchase_date < order_date:
                    customer.last_purchase_date = order_date
            await s.flush()
            print("orders: 50")

            for sample in SAMPLE_CAMPAIGNS:
                s.add(
                    Campaign(
                        name=sample["name"],
                        type=sample["type"],
                        message_subject=sample["subject"],
                        message_content=sample["content"],
                        audience_rules=sample["rules"],
                        audience_size=await count_audience(s, sample["rules"]),
                        created_by=admin.id,
                    )
                )
            print(f"campaigns: {len(SAMPLE_CAMPAIGNS)}")

    print("admin login: admin@xeno-crm.com")
    await engine.dispose()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--admin-password", default=os.environ.get("ADMIN_PASSWORD"))
    parser.add_argument("--reset", action="store_true", help="delete existing rows first")
    args = parser.parse_args()
    if not args.admin_password:
        parser.error("--admin-password (or ADMIN_PASSWORD) is required")
    asyncio.run(main(args.admin_password, args.reset))

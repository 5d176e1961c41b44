import uuid
from decimal import Decimal

from sqlalchemy.orm import Session
from sqlalchemy import text
from sqlalchemy.exc import ProgrammingError, OperationalError

from app.db.session import SessionLocal
from app.models.credit_package import CreditPackage
from app.models.user import User

# (name, price, credits, bonus %)
DEFAULT_PACKAGES = [
    ("Starter", Decimal("10.00"), 1000, 0),
    ("Boost", Decimal("25.00"), 2750, 10),
    ("Pro", Decimal("50.00"), 6000, 20),
    ("Captain", Decimal("100.00"), 13000, 30),
]


def ensure_package(db: Session, name: str, price: Decimal, credits: int, bonus: int):
    p = db.query(CreditPackage).filter(CreditPackage.name == name).first()
    if p:
        return
    db.add(
        CreditPackage(
            id=str(uuid.uuid4()),
            name=name,
            price=price,
            credits=credits,
            bonus_percentage=bonus,
            is_active=True,
        )
    )
    db.commit()


def ensure_user(db: Session, username: str, display_name: str, email: str = ""):
    u = db.query(User).filter(User.username == username).first()
    if u:
        return
    db.add(User(id=str(uuid.uuid4()), username=username, display_name=display_name, email=email))
    db.commit()


def run(db=None):
    if db is None:
        db = SessionLocal()
    try:
        # If migrations haven't been applied yet, seeding must not crash the API.
        try:
            db.execute(text("SELECT 1 FROM credit_packages LIMIT 1"))
        except (ProgrammingError, OperationalError):
            db.rollback()
            print("[seed] credit_packages table not found yet. Skipping seeding (run alembic upgrade head).")
            return

        for name, price, credits, bonus in DEFAULT_PACKAGES:
            ensure_package(db, name, price, credits, bonus)
        ensure_user(db, "demo", "Demo Player")
        print("[seed] done")
    finally:
        db.close()


if __name__ == "__main__":
    run()

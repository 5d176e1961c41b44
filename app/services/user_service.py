import re
from datetime import datetime, timezone
from decimal import Decimal
from sqlalchemy.orm import Session
from app.models.user import User

USERNAME_RE = re.compile(r"^[A-Za-z0-9_.\-]{1,64}$")


def is_valid_username(username: str) -> bool:
    return bool(USERNAME_RE.match(username or ""))


def get_user_by_username(db: Session, username: str) -> User | None:
    return db.query(User).filter(User.username == username).first()


def apply_credits(db: Session, username: str, credits: int, amount: Decimal) -> bool:
    """Credit a completed reload to the matching user row, if there is one. Caller commits."""
    user = get_user_by_username(db, username)
    if not user:
        return False
    user.current_credits = int(user.current_credits or 0) + int(credits)
    user.total_spent = Decimal(user.total_spent or 0) + Decimal(amount)
    user.updated_at = datetime.now(timezone.utc)
    return True

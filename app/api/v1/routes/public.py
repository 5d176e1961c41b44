import logging

from fastapi import APIRouter, Depends
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.errors import NotFoundError, StoreError
from app.db.session import get_db
from app.schemas.catalog import CreditPackageOut, TransactionOut, UserOut
from app.services.credit_catalog import CreditCatalog
from app.services.transaction_store import TransactionStore
from app.services.user_service import get_user_by_username, is_valid_username

logger = logging.getLogger(__name__)

router = APIRouter(tags=["public"])


@router.get("/users/{username}")
def get_user(username: str, db: Session = Depends(get_db)):
    if not is_valid_username(username):
        raise NotFoundError("User not found. Please check your username.")
    user = get_user_by_username(db, username)
    if not user:
        raise NotFoundError("User not found. Please check your username.")
    out = UserOut(username=user.username, displayName=user.display_name or user.username,
                  currentCredits=user.current_credits)
    return {"success": True, "user": out.model_dump()}


@router.get("/credit-packages")
def list_credit_packages(db: Session = Depends(get_db)):
    """Active packages, cheapest first."""
    try:
        packages = CreditCatalog(db).list()
    except SQLAlchemyError as e:
        raise StoreError(f"Failed to fetch credit packages: {e}")
    return {"success": True, "packages": [CreditPackageOut.from_model(p).model_dump() for p in packages]}


@router.get("/transactions/{transaction_id}")
def get_transaction(transaction_id: str, db: Session = Depends(get_db)):
    """Status lookup for the page the user returns to after a redirect payment."""
    tx = TransactionStore(db).get_by_id(transaction_id)
    if not tx:
        raise NotFoundError("Transaction not found")
    return {"success": True, "transaction": TransactionOut.from_model(tx).model_dump(mode="json")}

from sqlalchemy.orm import Session
from app.models.credit_package import CreditPackage


class CreditCatalog:
    """Read-only view of the purchasable credit packages."""

    def __init__(self, db: Session):
        self.db = db

    def list(self) -> list[CreditPackage]:
        return (
            self.db.query(CreditPackage)
            .filter(CreditPackage.is_active == True)
            .order_by(CreditPackage.price.asc())
            .all()
        )

    def get_by_id(self, package_id: str) -> CreditPackage | None:
        pkg = self.db.get(CreditPackage, package_id)
        if not pkg or not pkg.is_active:
            return None
        return pkg

from fastapi import BackgroundTasks, Depends
from sqlalchemy.orm import Session

from app.core.config import settings
from app.db.session import get_db
from app.models.transaction import PaymentMethod
from app.services.notifier import BackgroundNotifier, EmailNotifier, Notifier
from app.services.payment_orchestrator import PaymentOrchestrator
from app.services.providers.base import ProviderAdapter
from app.services.providers.registry import build_adapters

_adapters: dict[PaymentMethod, ProviderAdapter] | None = None


def get_adapters() -> dict[PaymentMethod, ProviderAdapter]:
    global _adapters
    if _adapters is None:
        _adapters = build_adapters(settings)
    return _adapters


def get_notifier() -> Notifier:
    return EmailNotifier()


def get_orchestrator(
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    adapters: dict[PaymentMethod, ProviderAdapter] = Depends(get_adapters),
    notifier: Notifier = Depends(get_notifier),
) -> PaymentOrchestrator:
    return PaymentOrchestrator(db, adapters, BackgroundNotifier(background_tasks, notifier), settings)

"""
Subscription records - upsert by (identity, product) and status queries.

Rows are only written from provider webhooks or direct provider queries.
Each write carries the provider's full current snapshot, so last write
wins.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Dict, Any, List

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from creditgate.entitlements.loader import PlanCatalogLoader, get_plan_catalog
from creditgate.entitlements.subscription_state import SubscriptionStatusView, describe
from creditgate.models.subscription import Subscription

logger = logging.getLogger(__name__)


@dataclass
class SubscriptionSnapshot:
    """Provider subscription state as carried by a webhook."""
    identity_id: str
    product: str
    plan: str
    status: str
    provider_subscription_id: Optional[str] = None
    provider_customer_id: Optional[str] = None
    provider_price_id: Optional[str] = None
    quantity: int = 1
    renews_at: Optional[datetime] = None
    canceled_at: Optional[datetime] = None
    trial_ends_at: Optional[datetime] = None
    provider_metadata: Dict[str, Any] = field(default_factory=dict)


class SubscriptionService:
    """Reads and upserts subscription records."""

    def __init__(self, db_session: Session, catalog: Optional[PlanCatalogLoader] = None):
        self.db = db_session
        self.catalog = catalog or get_plan_catalog()

    def get(self, identity_id: str, product: str) -> Optional[Subscription]:
        return self.db.query(Subscription).filter(
            Subscription.identity_id == identity_id,
            Subscription.product == product,
        ).first()

    def list_for_identity(self, identity_id: str) -> List[Subscription]:
        return self.db.query(Subscription).filter(
            Subscription.identity_id == identity_id
        ).order_by(Subscription.product).all()

    def get_status(
        self,
        identity_id: Optional[str],
        product: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> SubscriptionStatusView:
        """Canonical status, plan and limits for an identity on a product."""
        product = product or self.catalog.default_product
        record = self.get(identity_id, product) if identity_id else None
        return describe(record, product=product, now=now, catalog=self.catalog)

    def _apply(self, record: Subscription, snapshot: SubscriptionSnapshot) -> None:
        record.plan = snapshot.plan
        record.status = snapshot.status
        record.provider_subscription_id = snapshot.provider_subscription_id
        record.provider_customer_id = snapshot.provider_customer_id
        record.provider_price_id = snapshot.provider_price_id
        record.quantity = snapshot.quantity or 1
        record.renews_at = snapshot.renews_at
        record.canceled_at = snapshot.canceled_at
        record.trial_ends_at = snapshot.trial_ends_at
        record.provider_metadata = dict(snapshot.provider_metadata or {})

    def upsert(self, snapshot: SubscriptionSnapshot) -> Subscription:
        """
        Insert or overwrite the record for (identity, product).

        A concurrent insert for the same pair loses on the unique
        constraint and is retried as an update.
        """
        record = self.get(snapshot.identity_id, snapshot.product)
        created = record is None
        if created:
            record = Subscription(identity_id=snapshot.identity_id, product=snapshot.product)
            self.db.add(record)
        self._apply(record, snapshot)

        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            record = self.get(snapshot.identity_id, snapshot.product)
            if record is None:
                raise
            created = False
            self._apply(record, snapshot)
            self.db.commit()

        logger.info(
            "Subscription upserted",
            extra={
                "identity_id": snapshot.identity_id,
                "product": snapshot.product,
                "plan": snapshot.plan,
                "status": snapshot.status,
                "created": created,
            },
        )
        return record

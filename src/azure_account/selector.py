from __future__ import annotations

from typing import Optional, Sequence

from .audit import JsonAuditLogger
from .models import AccountEntity


class SubscriptionSelector:
    """Marks discovered subscriptions as selected.

    Selection is additive: subscriptions not named in a call keep whatever
    flag they already had. Start from a fresh entity to get a clean selection.
    """

    def __init__(self, audit_logger: Optional[JsonAuditLogger] = None):
        self.audit = audit_logger or JsonAuditLogger()

    def select(self, entity: AccountEntity, subscription_ids: Optional[Sequence[str]]) -> AccountEntity:
        if isinstance(subscription_ids, str):
            subscription_ids = [subscription_ids]
        builder = entity.to_builder()
        if subscription_ids and entity.subscriptions:
            builder.mark_selected(subscription_ids)
        snapshot = builder.build()

        unknown = [
            subscription_id
            for subscription_id in subscription_ids or ()
            if snapshot.find_subscription(subscription_id) is None
        ]
        if unknown:
            self.audit.warning("unknown_subscriptions_requested", subscription_ids=unknown)
        self.audit.info(
            "subscriptions_selected",
            selected=[s.id for s in snapshot.selected_subscriptions],
        )
        return snapshot

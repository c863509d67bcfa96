"""Subscription, metering and payment handling."""

from propnova.billing.entitlements import ConsumeResult, EntitlementGateway, QuotaStatus
from propnova.billing.gateway import PaymentGatewayAdapter
from propnova.billing.models import (
    PaymentSession,
    Subscription,
    SubscriptionStatus,
    TopUpCredit,
    UsageCounter,
)
from propnova.billing.plans import Plan, PlanCatalog, ResourceType, get_catalog
from propnova.billing.reconciler import ActivationReconciler, ReconcileOutcome, ReconcileResult
from propnova.billing.service import BillingService, ConfirmationResult, ConfirmationStatus
from propnova.billing.state_machine import SubscriptionStateMachine

__all__ = [
    "ActivationReconciler",
    "BillingService",
    "ConfirmationResult",
    "ConfirmationStatus",
    "ConsumeResult",
    "EntitlementGateway",
    "PaymentGatewayAdapter",
    "PaymentSession",
    "Plan",
    "PlanCatalog",
    "QuotaStatus",
    "ReconcileOutcome",
    "ReconcileResult",
    "ResourceType",
    "Subscription",
    "SubscriptionStateMachine",
    "SubscriptionStatus",
    "TopUpCredit",
    "UsageCounter",
    "get_catalog",
]

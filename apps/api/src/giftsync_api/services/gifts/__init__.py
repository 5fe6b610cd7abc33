"""Milestone gift workflow services."""

from .dispatch import DispatchResult, EmailDispatchGate  # noqa: F401
from .errors import (  # noqa: F401
    ConfigurationError,
    DuplicateEligibilityError,
    EligibilityNotFoundError,
    EligibilityStateError,
    GiftValidationCode,
    GiftValidationError,
)
from .milestones import (  # noqa: F401
    EvaluationResult,
    MilestoneCandidate,
    MilestoneEvaluator,
    MilestonePolicy,
    crossed_thresholds,
)
from .reconciler import ReconcileResult, SubscriberReconciler  # noqa: F401
from .redemption import (  # noqa: F401
    GiftRedemptionService,
    GiftVerification,
    RedemptionOutcome,
    SelectedProduct,
)
from .shop_settings import (  # noqa: F401
    ClientFactory,
    ShopSettingsService,
    default_client_factory,
    masked_api_key,
    parse_product_allow_list,
    parse_trigger_thresholds,
)
from .reporting import EligibilityPage, GiftReportingService, ShopOverview  # noqa: F401
from .webhooks import ShopifyWebhookHandler, WebhookOutcome, verify_webhook_signature  # noqa: F401

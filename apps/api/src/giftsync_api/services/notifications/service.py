"""Gift notification delivery over pluggable email backends."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional

from loguru import logger

from giftsync_api.core.settings import get_settings
from giftsync_api.models.gift import GiftEligibility, ensure_aware

from .backend import EmailBackend, InMemoryEmailBackend, SMTPConfig, SMTPEmailBackend
from .templates import RenderedTemplate, render_gift_invitation


@dataclass
class NotificationEvent:
    """A delivered notification, kept for inspection."""

    recipient: str
    subject: str
    body_text: str
    body_html: str | None
    event_type: str
    metadata: dict[str, Any]


def build_gift_link(shop: str, token: str, *, page_path: str | None = None) -> str:
    path = page_path or get_settings().gift_page_path
    if not path.startswith("/"):
        path = f"/{path}"
    return f"https://{shop}{path}?token={token}"


def _shop_display_name(shop: str) -> str:
    return shop.removesuffix(".myshopify.com").replace("-", " ").title()


class GiftNotificationService:
    """Coordinates gift email delivery via pluggable backends."""

    def __init__(self, backend: Optional[EmailBackend] = None) -> None:
        self._backend = backend or self._build_default_backend()
        self._events: list[NotificationEvent] = []

    @property
    def is_configured(self) -> bool:
        return self._backend is not None

    @property
    def sent_events(self) -> list[NotificationEvent]:
        """Expose events (useful for tests when using in-memory backend)."""
        return self._events

    def use_in_memory_backend(self) -> InMemoryEmailBackend:
        """Replace backend with in-memory implementation (dry runs and tests)."""
        backend = InMemoryEmailBackend()
        self._backend = backend
        return backend

    async def send_gift_invitation(self, eligibility: GiftEligibility, *, subject: str, max_gifts: int) -> None:
        """Email the gift link for ``eligibility``. Raises when delivery fails."""

        if self._backend is None:
            raise RuntimeError("No email backend configured")

        template = render_gift_invitation(
            subject=subject,
            customer_name=eligibility.customer_name,
            milestone=eligibility.order_number,
            gift_link=build_gift_link(eligibility.shop, eligibility.gift_token),
            max_gifts=max_gifts,
            expires_at=ensure_aware(eligibility.expires_at),
            shop_name=_shop_display_name(eligibility.shop),
        )
        await self._deliver(
            eligibility.customer_email,
            template,
            event_type="gift_invitation",
            metadata={
                "eligibility_id": str(eligibility.id),
                "shop": eligibility.shop,
                "milestone": eligibility.order_number,
            },
        )

    def _build_default_backend(self) -> Optional[EmailBackend]:
        config = SMTPConfig.from_settings(get_settings())
        return SMTPEmailBackend(config) if config else None

    async def _deliver(
        self,
        recipient: str,
        template: RenderedTemplate,
        *,
        event_type: str,
        metadata: dict[str, Any],
    ) -> None:
        event = NotificationEvent(
            recipient=recipient,
            subject=template.subject,
            body_text=template.text_body,
            body_html=template.html_body,
            event_type=event_type,
            metadata=metadata,
        )
        await self._backend.send_email(event.recipient, event.subject, event.body_text, body_html=event.body_html)
        self._events.append(event)
        logger.info("Gift email delivered", event_type=event_type, **metadata)

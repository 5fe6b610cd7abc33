"""Notification templates for gift emails."""

from __future__ import annotations

import html
from dataclasses import dataclass
from datetime import datetime


@dataclass
class RenderedTemplate:
    subject: str
    text_body: str
    html_body: str


def _ordinal(value: int) -> str:
    if 10 <= value % 100 <= 20:
        suffix = "th"
    else:
        suffix = {1: "st", 2: "nd", 3: "rd"}.get(value % 10, "th")
    return f"{value}{suffix}"


def render_gift_invitation(
    *,
    subject: str,
    customer_name: str | None,
    milestone: int,
    gift_link: str,
    max_gifts: int,
    expires_at: datetime,
    shop_name: str,
) -> RenderedTemplate:
    """Render the milestone email that carries a customer's gift link."""

    greeting = f"Hi {customer_name}," if customer_name else "Hi there,"
    expiry_label = expires_at.strftime("%B %d, %Y")
    gift_label = "gift" if max_gifts == 1 else "gifts"
    milestone_label = _ordinal(milestone)

    text_body = "\n".join(
        [
            greeting,
            "",
            f"Thank you for your {milestone_label} subscription order with {shop_name}!",
            f"To celebrate, you can choose up to {max_gifts} free {gift_label} to add to your next order.",
            "",
            f"Pick your {gift_label} here: {gift_link}",
            "",
            f"This link expires on {expiry_label}.",
            f"The {shop_name} Team",
        ]
    )

    safe_name = html.escape(shop_name)
    html_body = f"""<html>
  <body>
    <p>{html.escape(greeting)}</p>
    <p>Thank you for your <strong>{milestone_label}</strong> subscription order with {safe_name}!</p>
    <p>To celebrate, you can choose up to {max_gifts} free {gift_label} to add to your next order.</p>
    <p><a href="{html.escape(gift_link, quote=True)}">Choose your free {gift_label}</a></p>
    <p>This link expires on {expiry_label}.</p>
    <p>The {safe_name} Team</p>
  </body>
</html>"""

    return RenderedTemplate(subject=subject, text_body=text_body, html_body=html_body)

"""Gift notification delivery."""

from .backend import EmailBackend, InMemoryEmailBackend, SMTPConfig, SMTPEmailBackend  # noqa: F401
from .service import GiftNotificationService, NotificationEvent, build_gift_link  # noqa: F401
from .templates import RenderedTemplate, render_gift_invitation  # noqa: F401

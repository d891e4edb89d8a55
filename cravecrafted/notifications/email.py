import asyncio
import smtplib
from dataclasses import dataclass
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from html import escape
from typing import Any, Dict, Optional, Tuple
from fastapi import Request
from cravecrafted.background_workers.base_worker import BaseWorker
from cravecrafted.common.logging_setup import get_logger
from cravecrafted.common.utils import from_minor_units
from cravecrafted.config.settings import config_settings

logger = get_logger("cravecrafted.notifications")

ORDER_PLACED = "order_placed"
PAYMENT_CONFIRMED = "payment_confirmed"
PAYMENT_FAILED = "payment_failed"
ORDER_CANCELLED = "order_cancelled"
SUBSCRIPTION_RENEWED = "subscription_renewed"
SUBSCRIPTION_PAYMENT_FAILED = "subscription_payment_failed"


@dataclass
class SMTPConfig:
    host: str
    port: int
    username: str
    password: str
    use_tls: bool = True
    from_email: str = ""
    from_name: str = "CraveCrafted"

    @property
    def ready(self) -> bool:
        return bool(self.host and self.port and self.from_email)


def load_smtp_config() -> SMTPConfig:
    return SMTPConfig(
        host=config_settings.SMTP_HOST.strip(),
        port=config_settings.SMTP_PORT,
        username=config_settings.SMTP_USER.strip(),
        password=config_settings.SMTP_PASS,
        use_tls=config_settings.SMTP_TLS,
        from_email=config_settings.SMTP_FROM_EMAIL.strip(),
        from_name=config_settings.SMTP_FROM_NAME,
    )


class EmailService:
    """SMTP sender, a missing SMTP block turns every send into a logged no-op."""

    def __init__(self, cfg: Optional[SMTPConfig] = None):
        self.cfg = cfg or load_smtp_config()

    def ready(self) -> bool:
        return self.cfg.ready

    def send_html(self, to_email: str, subject: str, html: str) -> bool:
        if not self.ready():
            logger.warning("email.smtp_not_configured", extra={"subject": subject})
            return False

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.cfg.from_name} <{self.cfg.from_email}>"
        msg["To"] = to_email
        msg.attach(MIMEText(html, "html", "utf-8"))

        try:
            with smtplib.SMTP(self.cfg.host, self.cfg.port, timeout=20) as s:
                if self.cfg.use_tls:
                    s.starttls()
                if self.cfg.username:
                    s.login(self.cfg.username, self.cfg.password)
                s.sendmail(self.cfg.from_email, [to_email], msg.as_string())
            return True
        except (smtplib.SMTPException, OSError):
            logger.exception("email.send_failed", extra={"subject": subject})
            return False

    async def send_templated_email(self, to: str, subject: str, html_body: str) -> bool:
        # smtplib blocks, keep it off the event loop
        return await asyncio.to_thread(self.send_html, to, subject, html_body)


def order_context(order, **extra: Any) -> Dict[str, Any]:
    """Plain snapshot of the fields templates use, taken before the session goes away."""
    ctx = {
        "order_id": str(order.public_id),
        "status": order.status,
        "total": from_minor_units(order.total_price),
        "currency": (order.currency or "").upper(),
        "is_subscription": order.is_subscription,
        "subscription_name": order.subscription_name,
        "billing_cycle": order.current_billing_cycle,
    }
    ctx.update(extra)
    return ctx


def render(kind: str, ctx: Dict[str, Any]) -> Tuple[str, str]:
    oid = escape(str(ctx.get("order_id", "")))
    amount = f"{ctx.get('total')} {escape(str(ctx.get('currency', '')))}"
    if kind == ORDER_PLACED:
        return f"Order {oid} received", f"<p>Thanks for your order <b>{oid}</b>.</p><p>Total: {amount}</p>"
    if kind == PAYMENT_CONFIRMED:
        return f"Payment confirmed for order {oid}", f"<p>We received your payment of {amount} for order <b>{oid}</b>.</p>"
    if kind == PAYMENT_FAILED:
        reason = escape(str(ctx.get("reason") or "The payment could not be completed."))
        return f"Payment failed for order {oid}", f"<p>Payment for order <b>{oid}</b> failed.</p><p>{reason}</p>"
    if kind == ORDER_CANCELLED:
        reason = escape(str(ctx.get("reason") or ""))
        return f"Order {oid} cancelled", f"<p>Order <b>{oid}</b> has been cancelled.</p><p>{reason}</p>"
    if kind == SUBSCRIPTION_RENEWED:
        name = escape(str(ctx.get("subscription_name") or "Your subscription"))
        return (f"{name} renewed",
                f"<p>{name} was renewed, billing cycle {ctx.get('billing_cycle')}.</p><p>Charged: {amount}</p>")
    if kind == SUBSCRIPTION_PAYMENT_FAILED:
        name = escape(str(ctx.get("subscription_name") or "your subscription"))
        return (f"Payment failed for {name}",
                f"<p>We could not collect the payment for {name}. Please update your payment method.</p>")
    raise ValueError(f"unknown notification kind {kind}")


class EmailNotifier(BaseWorker):
    """Queues order emails, sends them from worker tasks so a slow SMTP server never holds a request."""

    def __init__(self, email_service: Optional[EmailService] = None, workers_count: int = 1):
        super().__init__(name="email", workers_count=workers_count, max_queue_size=1000)
        self.email_service = email_service or EmailService()

    def notify(self, kind: str, to: Optional[str], context: Dict[str, Any]) -> None:
        if not to:
            logger.info("email.no_recipient", extra={"kind": kind, "order_id": context.get("order_id")})
            return
        self.enqueue({"kind": kind, "to": to, "context": context})

    async def task_executor(self, task: Dict[str, Any], wname: str) -> None:
        subject, html = render(task["kind"], task["context"])
        sent = await self.email_service.send_templated_email(task["to"], subject, html)
        logger.info("email.processed", extra={"kind": task["kind"], "sent": sent, "worker": wname})


def get_notifier(request: Request) -> EmailNotifier:
    return request.app.state.notifier

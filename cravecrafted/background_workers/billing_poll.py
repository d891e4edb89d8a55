import asyncio
from dataclasses import asdict, dataclass
from typing import Any, Callable, Dict, List, Optional
from cravecrafted.common.logging_setup import get_logger
from cravecrafted.common.utils import now
from cravecrafted.notifications import email as notify
from cravecrafted.orders import repository as repo
from cravecrafted.orders.gateway import GatewayError, PaymentGateway
from cravecrafted.orders.reconciliation import invoice_subscription_id, record_cycle_renewal
from cravecrafted.orders.services import run_with_conflict_retry

logger = get_logger("cravecrafted.billing_poll")

DEFAULT_BATCH = 100
POLL_ACTOR = "billing_poll"


@dataclass
class PollSummary:
    checked: int = 0
    renewed: int = 0
    failed: int = 0


def renewal_invoices(invoices: List[Dict[str, Any]], subscription_id: str) -> List[Dict[str, Any]]:
    """Paid cycle invoices of one subscription, oldest first so cycles are booked in order."""
    picked = [
        inv for inv in invoices
        if inv.get("status") == "paid"
        and inv.get("billing_reason") != "subscription_create"
        and invoice_subscription_id(inv) in (None, subscription_id)
    ]
    return sorted(picked, key=lambda inv: inv.get("created") or 0)


async def _renew(session, anchor_id: int, invoice: Dict[str, Any]):
    # fresh read on every attempt, the previous attempt's objects are gone after a rollback
    anchor = await repo.find_by_id(session, anchor_id)
    if anchor is None:
        return None
    spawned = await record_cycle_renewal(session, anchor, invoice, actor=POLL_ACTOR)
    if spawned is None:
        return None
    return anchor.user_id, notify.order_context(spawned)


async def run_billing_poll(session_factory: Callable[[], Any], gateway: PaymentGateway,
                           notifier=None, *, batch_size: int = DEFAULT_BATCH) -> PollSummary:
    """One pass over due subscriptions. A failing subscription is logged and counted, the pass carries on."""
    summary = PollSummary()
    async with session_factory() as session:
        due = await repo.due_subscription_anchors(session, now(), limit=batch_size)
        targets = [(o.id, o.gateway_subscription_id) for o in due]

    for anchor_id, subscription_id in targets:
        summary.checked += 1
        try:
            invoices = await gateway.list_invoices(subscription_id, status="paid")
        except GatewayError as exc:
            summary.failed += 1
            logger.warning("billing_poll.list_invoices_failed",
                           extra={"order_id": anchor_id, "subscription_id": subscription_id, "error_type": type(exc).__name__})
            continue

        for invoice in renewal_invoices(invoices, subscription_id):
            try:
                async with session_factory() as session:
                    renewed = await run_with_conflict_retry(session, _renew, anchor_id, invoice)
                    if renewed is not None and notifier is not None:
                        user_id, ctx = renewed
                        notifier.notify(notify.SUBSCRIPTION_RENEWED, await repo.get_user_email(session, user_id), ctx)
            except Exception:
                summary.failed += 1
                logger.exception("billing_poll.renewal_failed",
                                 extra={"order_id": anchor_id, "invoice_id": invoice.get("id")})
                break
            if renewed is not None:
                summary.renewed += 1

    logger.info("billing_poll.pass_done", extra=asdict(summary))
    return summary


class BillingPoller:
    """Runs `run_billing_poll` every `interval` seconds until stopped."""

    def __init__(self, session_factory: Callable[[], Any], gateway: PaymentGateway, notifier=None,
                 *, interval: float = 3600.0, batch_size: int = DEFAULT_BATCH):
        self.session_factory = session_factory
        self.gateway = gateway
        self.notifier = notifier
        self.interval = interval
        self.batch_size = batch_size
        self._stop = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    def start(self):
        if self._task is None:
            self._task = asyncio.create_task(self.run())

    async def run(self):
        logger.info("billing_poll.started", extra={"interval": self.interval})
        while not self._stop.is_set():
            try:
                await run_billing_poll(self.session_factory, self.gateway, self.notifier, batch_size=self.batch_size)
            except Exception:
                logger.exception("billing_poll.pass_failed")
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass
        logger.info("billing_poll.stopped")

    async def shutdown(self, timeout: float = 10.0):
        self._stop.set()
        if self._task is not None:
            try:
                await asyncio.wait_for(self._task, timeout=timeout)
            except asyncio.TimeoutError:
                self._task.cancel()
            self._task = None

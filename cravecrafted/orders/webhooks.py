from fastapi import Depends, Request, status
from sqlalchemy.ext.asyncio import AsyncSession
from cravecrafted.common.constants import request_id_ctx
from cravecrafted.common.custom_exceptions import ConcurrencyConflict
from cravecrafted.common.retries import is_recoverable_exception
from cravecrafted.common.utils import build_error, json_error, success_response
from cravecrafted.config.settings import config_settings
from cravecrafted.db.dependencies import get_session
from cravecrafted.notifications.email import EmailNotifier, get_notifier
from cravecrafted.orders import repository as repo
from cravecrafted.orders.constants import GATEWAY_PROVIDER, logger
from cravecrafted.orders.gateway import verify_webhook_signature
from cravecrafted.orders.reconciliation import ReconcileResult, reconcile_event


async def send_notices(session, notifier: EmailNotifier, result: ReconcileResult) -> None:
    for kind, user_id, ctx in result.notices:
        email = await repo.get_user_email(session, user_id)
        notifier.notify(kind, email, ctx)


async def gateway_webhook(request: Request, session: AsyncSession = Depends(get_session),
                          notifier: EmailNotifier = Depends(get_notifier)):
    body = await request.body()
    # raises WebhookSignatureError (400) before anything is stored
    event = verify_webhook_signature(
        body,
        request.headers.get("Stripe-Signature"),
        config_settings.GATEWAY_WEBHOOK_SECRET,
        config_settings.GATEWAY_WEBHOOK_TOLERANCE_SECONDS,
    )
    event_id = event.get("id")
    event_type = event.get("type")

    if not event_id:
        # nothing to dedupe on, acknowledge so the provider stops resending
        logger.warning("orders.webhook.missing_event_id", extra={"event_type": event_type})
        return success_response({"note": "ignored: missing event id"})

    ledger = await repo.mark_webhook_received(session, GATEWAY_PROVIDER, event_id, event_type, event)
    await session.commit()
    if ledger["processed_at"] is not None:
        return success_response({"note": "already processed", "event_id": event_id})

    ev_id = ledger["id"]
    try:
        result = await reconcile_event(session, event, ev_id)
    except Exception as exc:
        rid = request_id_ctx.get(None)
        retry_later = isinstance(exc, ConcurrencyConflict) or is_recoverable_exception(exc)
        try:
            await session.rollback()
            await repo.webhook_error_recorded(
                session, ev_id, last_error=f"{type(exc).__name__}: {exc}", final=not retry_later)
            await session.commit()
        except Exception as rb_err:
            logger.error(
                "orders.webhook.record_error_failure",
                exc_info=(type(rb_err), rb_err, rb_err.__traceback__),
                extra={"request_id": rid, "webhook_event_id": ev_id},
            )

        if retry_later:
            # non 2xx makes the provider redeliver, the ledger row is still open
            logger.warning("orders.webhook.retry_later",
                           extra={"event_id": event_id, "event_type": event_type, "error_type": type(exc).__name__})
            payload = build_error(code="WEBHOOK_RETRY", details={"message": "temporary failure, retry"}, request_id=rid)
            return json_error(payload, status_code=status.HTTP_503_SERVICE_UNAVAILABLE)

        logger.exception("orders.webhook.processing_failed", extra={"event_id": event_id, "event_type": event_type})
        return success_response({"note": "error recorded", "event_id": event_id})

    await send_notices(session, notifier, result)
    return success_response({"note": result.note or result.status, "event_id": event_id})

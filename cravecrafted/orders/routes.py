from dataclasses import asdict
from datetime import datetime
from typing import Optional
from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession
from cravecrafted.common.constants import DEFAULT_PAGE_SIZE
from cravecrafted.common.custom_exceptions import OrderValidationError
from cravecrafted.common.utils import success_response
from cravecrafted.background_workers.billing_poll import run_billing_poll
from cravecrafted.db.dependencies import get_session, get_session_factory
from cravecrafted.notifications.email import EmailNotifier, get_notifier
from cravecrafted.orders import repository as repo
from cravecrafted.orders import services, subscriptions
from cravecrafted.orders.gateway import PaymentGateway, get_gateway
from cravecrafted.orders.models import (
    ConfirmCodIn, ConfirmPaymentIn, OrderCreateIn, ReasonIn, RefundIn, StatusUpdateIn, TrackingUpdateIn,
)
from cravecrafted.orders.status_machine import VALID_STATUSES, get_tracking_stage
from cravecrafted.orders.utils import billing_info, pagination, pagination_meta, serialize_order, serialize_status_history
from cravecrafted.schema.full_schema import Users
from cravecrafted.user.dependencies import get_current_user, require_admin

orders_router = APIRouter()


def _status_filter(value: Optional[str]) -> Optional[str]:
    if value and value not in VALID_STATUSES:
        raise OrderValidationError("Unknown order status", details={"status": value})
    return value


@orders_router.post("/orders")
async def create_order(payload: OrderCreateIn,
                       session: AsyncSession = Depends(get_session),
                       gateway: PaymentGateway = Depends(get_gateway),
                       notifier: EmailNotifier = Depends(get_notifier),
                       user: Users = Depends(get_current_user)):
    outcome = await services.create_order(session, gateway, notifier, user, payload)
    data = serialize_order(outcome.order)
    data.update(outcome.extra)
    return success_response(data, status_code=outcome.status_code)


@orders_router.get("/orders")
async def list_orders(status_filter: Optional[str] = Query(None, alias="status"),
                      created_from: Optional[datetime] = Query(None, alias="from"),
                      created_to: Optional[datetime] = Query(None, alias="to"),
                      page: int = Query(1, ge=1),
                      limit: int = Query(DEFAULT_PAGE_SIZE, ge=1),
                      session: AsyncSession = Depends(get_session),
                      _admin: Users = Depends(require_admin)):
    page, limit, offset = pagination(page, limit)
    rows, total = await repo.list_orders(
        session, status=_status_filter(status_filter), created_from=created_from, created_to=created_to,
        offset=offset, limit=limit,
    )
    return success_response({
        "orders": [serialize_order(o, include_history=False) for o in rows],
        "pagination": pagination_meta(page, limit, total),
    })


@orders_router.get("/orders/mine")
async def my_orders(status_filter: Optional[str] = Query(None, alias="status"),
                    page: int = Query(1, ge=1),
                    limit: int = Query(DEFAULT_PAGE_SIZE, ge=1),
                    session: AsyncSession = Depends(get_session),
                    user: Users = Depends(get_current_user)):
    page, limit, offset = pagination(page, limit)
    rows, total = await repo.list_orders(
        session, user_id=user.id, status=_status_filter(status_filter), offset=offset, limit=limit)
    return success_response({
        "orders": [serialize_order(o, include_history=False) for o in rows],
        "pagination": pagination_meta(page, limit, total),
    })


@orders_router.get("/orders/subscriptions/active")
async def active_subscriptions(page: int = Query(1, ge=1),
                               limit: int = Query(DEFAULT_PAGE_SIZE, ge=1),
                               session: AsyncSession = Depends(get_session),
                               _admin: Users = Depends(require_admin)):
    page, limit, offset = pagination(page, limit)
    rows, total = await subscriptions.active_subscriptions(session, offset, limit)
    return success_response({
        "subscriptions": [serialize_order(o, include_history=False) for o in rows],
        "pagination": pagination_meta(page, limit, total),
    })


@orders_router.get("/orders/subscriptions/revenue")
async def subscription_revenue(session: AsyncSession = Depends(get_session),
                               _admin: Users = Depends(require_admin)):
    return success_response(await subscriptions.subscription_revenue(session))


@orders_router.get("/orders/{order_id}")
async def get_order(order_id: str,
                    session: AsyncSession = Depends(get_session),
                    user: Users = Depends(get_current_user)):
    order = await services.load_order(session, order_id)
    services.ensure_owner_or_admin(order, user)
    return success_response(serialize_order(order))


@orders_router.get("/orders/{order_id}/tracking")
async def get_tracking(order_id: str,
                       session: AsyncSession = Depends(get_session),
                       user: Users = Depends(get_current_user)):
    order = await services.load_order(session, order_id)
    services.ensure_owner_or_admin(order, user)
    data = get_tracking_stage(order)
    data.update({
        "order_id": str(order.public_id),
        "tracking": order.tracking,
        "status_history": serialize_status_history(order),
    })
    return success_response(data)


@orders_router.get("/orders/{order_id}/billing")
async def get_billing(order_id: str,
                      session: AsyncSession = Depends(get_session),
                      user: Users = Depends(get_current_user)):
    order = await services.load_order(session, order_id)
    services.ensure_owner_or_admin(order, user)
    info = billing_info(order)
    if info is None:
        raise OrderValidationError("Order is not a subscription")
    return success_response({"order_id": str(order.public_id), **info})


@orders_router.put("/orders/{order_id}/status")
async def update_status(order_id: str, body: StatusUpdateIn,
                        session: AsyncSession = Depends(get_session),
                        gateway: PaymentGateway = Depends(get_gateway),
                        notifier: EmailNotifier = Depends(get_notifier),
                        admin: Users = Depends(require_admin)):
    order = await services.update_status(session, gateway, notifier, admin, order_id, body)
    return success_response(serialize_order(order))


@orders_router.put("/orders/{order_id}/tracking")
async def update_tracking(order_id: str, body: TrackingUpdateIn,
                          session: AsyncSession = Depends(get_session),
                          admin: Users = Depends(require_admin)):
    order = await services.update_tracking(session, admin, order_id, body)
    return success_response(serialize_order(order))


@orders_router.put("/orders/{order_id}/confirm-cod")
async def confirm_cod(order_id: str, body: Optional[ConfirmCodIn] = None,
                      session: AsyncSession = Depends(get_session),
                      admin: Users = Depends(require_admin)):
    order = await services.confirm_cod(session, admin, order_id, body or ConfirmCodIn())
    return success_response(serialize_order(order))


@orders_router.put("/orders/{order_id}/confirm-payment")
async def confirm_payment(order_id: str, body: ConfirmPaymentIn,
                          session: AsyncSession = Depends(get_session),
                          gateway: PaymentGateway = Depends(get_gateway),
                          notifier: EmailNotifier = Depends(get_notifier),
                          user: Users = Depends(get_current_user)):
    order = await services.confirm_payment(session, gateway, notifier, user, order_id, body)
    return success_response(serialize_order(order))


@orders_router.put("/orders/{order_id}/cancel")
async def cancel_order(order_id: str, body: Optional[ReasonIn] = None,
                       session: AsyncSession = Depends(get_session),
                       gateway: PaymentGateway = Depends(get_gateway),
                       notifier: EmailNotifier = Depends(get_notifier),
                       user: Users = Depends(get_current_user)):
    order = await services.cancel_order(session, gateway, notifier, user, order_id, body or ReasonIn())
    return success_response(serialize_order(order))


@orders_router.put("/orders/{order_id}/return")
async def request_return(order_id: str, body: ReasonIn,
                         session: AsyncSession = Depends(get_session),
                         user: Users = Depends(get_current_user)):
    order = await services.request_return(session, user, order_id, body)
    return success_response(serialize_order(order))


@orders_router.put("/orders/{order_id}/refund")
async def refund_order(order_id: str, body: Optional[RefundIn] = None,
                       session: AsyncSession = Depends(get_session),
                       admin: Users = Depends(require_admin)):
    order = await services.refund_order(session, admin, order_id, body or RefundIn())
    return success_response(serialize_order(order))


@orders_router.put("/orders/{order_id}/subscription/pause")
async def pause_subscription(order_id: str,
                             session: AsyncSession = Depends(get_session),
                             gateway: PaymentGateway = Depends(get_gateway),
                             user: Users = Depends(get_current_user)):
    order = await subscriptions.pause_subscription(session, gateway, user, order_id)
    return success_response(serialize_order(order))


@orders_router.put("/orders/{order_id}/subscription/resume")
async def resume_subscription(order_id: str,
                              session: AsyncSession = Depends(get_session),
                              gateway: PaymentGateway = Depends(get_gateway),
                              user: Users = Depends(get_current_user)):
    order = await subscriptions.resume_subscription(session, gateway, user, order_id)
    return success_response(serialize_order(order))


@orders_router.put("/orders/{order_id}/subscription/cancel")
async def cancel_subscription(order_id: str, body: Optional[ReasonIn] = None,
                              session: AsyncSession = Depends(get_session),
                              gateway: PaymentGateway = Depends(get_gateway),
                              notifier: EmailNotifier = Depends(get_notifier),
                              user: Users = Depends(get_current_user)):
    reason = body.reason if body else None
    order = await subscriptions.cancel_subscription(session, gateway, notifier, user, order_id, reason)
    return success_response(serialize_order(order))


@orders_router.delete("/orders/{order_id}")
async def delete_order(order_id: str,
                       session: AsyncSession = Depends(get_session),
                       gateway: PaymentGateway = Depends(get_gateway),
                       admin: Users = Depends(require_admin)):
    deleted = await services.delete_order(session, gateway, admin, order_id)
    return success_response({"id": deleted, "deleted": True}, status_code=status.HTTP_200_OK)


orders_admin_router = APIRouter()


@orders_admin_router.post("/subscriptions/billing-poll")
async def trigger_billing_poll(session_factory=Depends(get_session_factory),
                               gateway: PaymentGateway = Depends(get_gateway),
                               notifier: EmailNotifier = Depends(get_notifier),
                               _admin: Users = Depends(require_admin)):
    summary = await run_billing_poll(session_factory, gateway, notifier)
    return success_response(asdict(summary))

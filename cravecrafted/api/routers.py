from fastapi import APIRouter
from cravecrafted.api import version_prefix
from cravecrafted.common.routes import home_router
from cravecrafted.orders.routes import orders_admin_router, orders_router


public_routers = APIRouter(prefix=version_prefix)

public_routers.include_router(orders_router, tags=["orders"])
public_routers.include_router(home_router, tags=["home"])

#--------------------------------------------------------------------------------------------------------

admin_routers = APIRouter(prefix=f"{version_prefix}/admin")

admin_routers.include_router(orders_admin_router, tags=["orders-admin"])

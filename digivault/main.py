from fastapi import FastAPI

from digivault.core.errors import DeliveryError, delivery_error_handler
from digivault.core.settings import settings
from digivault.routers.auth import router as auth_router
from digivault.routers.content import router as content_router
from digivault.routers.downloads import router as downloads_router
from digivault.routers.grants import router as grants_router
from digivault.routers.licenses import router as licenses_router
from digivault.routers.me import router as me_router
from digivault.routers.orders import router as orders_router
from digivault.routers.products import router as products_router
from digivault.routers.users import router as users_router
from digivault.startup import register_startup

app = FastAPI(title=settings.app_name)

register_startup(app)
app.add_exception_handler(DeliveryError, delivery_error_handler)

app.include_router(auth_router, prefix="/auth", tags=["auth"])
app.include_router(products_router, prefix="/products", tags=["products"])
app.include_router(content_router, tags=["content"])
app.include_router(grants_router, prefix="/grants", tags=["grants"])
app.include_router(downloads_router, prefix="/downloads", tags=["downloads"])
app.include_router(licenses_router, prefix="/licenses", tags=["licenses"])
app.include_router(orders_router, tags=["orders"])
app.include_router(me_router, tags=["me"])
app.include_router(users_router, tags=["users"])


@app.get("/health")
def health_check():
    return {"status": "ok"}

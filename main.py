import asyncio
import logging
import os
import time
from typing import List, Optional

from fastapi import FastAPI, Depends, File, Form, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel, Field
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.sessions import SessionMiddleware

import accounts
import catalog
import config
import database
import lists
import orders
from errors import StoreError
from security import require_admin, resolve_identity

config.setup_logging()
logger = logging.getLogger("bookstore.api")

app = FastAPI(title="Bookstore API", version="1.0.0")

app.add_middleware(
    SessionMiddleware,
    secret_key=config.SESSION_SECRET,
    max_age=config.SESSION_MAX_AGE,
    same_site="lax",
)
app.add_middleware(
    CORSMiddleware,
    allow_origins=config.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization"],
)

os.makedirs(config.UPLOAD_DIR, exist_ok=True)
app.mount("/uploads", StaticFiles(directory=config.UPLOAD_DIR), name="uploads")


TIMED_METHODS = {"GET", "HEAD"}


@app.middleware("http")
async def log_and_time_requests(request: Request, call_next):
    started = time.perf_counter()
    # A timed out handler keeps running in the threadpool, so only reads may be cut off.
    timeout = config.REQUEST_TIMEOUT_SECONDS if request.method in TIMED_METHODS else None
    try:
        response = await asyncio.wait_for(call_next(request), timeout=timeout)
    except asyncio.TimeoutError:
        logger.error("Timeout: %s %s", request.method, request.url.path)
        return JSONResponse(status_code=408, content={"message": "Request timed out"})
    logger.info("%s %s -> %s (%.1f ms)", request.method, request.url.path, response.status_code,
                (time.perf_counter() - started) * 1000)
    return response


# ------------------------- Error handlers ---------------------
@app.exception_handler(StoreError)
async def store_error_handler(request: Request, exc: StoreError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"message": exc.message})


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(status_code=exc.status_code, content={"message": exc.detail}, headers=getattr(exc, "headers", None))


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    message = "Invalid request"
    if errors:
        first = errors[0]
        field = ".".join(str(p) for p in first.get("loc", ()) if p not in ("body", "query", "path"))
        message = f"{field}: {first.get('msg')}" if field else first.get("msg", message)
    return JSONResponse(status_code=400, content={"message": message})


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"message": str(exc) or "Something went wrong!"})


# ------------------------- Basic Routes -----------------------
@app.get("/")
def root():
    return {"message": "Bookstore API is alive"}


@app.get("/test")
def test_database():
    response = {
        "message": "ok",
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "✅ Set" if config.DATABASE_URL else "❌ Not Set",
        "database_name": None,
        "connection_status": "Not Connected",
        "collections": []
    }
    try:
        if database.db is not None:
            response["database"] = "✅ Available"
            response["database_name"] = database.db.name
            response["connection_status"] = "Connected"
            try:
                collections = database.db.list_collection_names()
                response["collections"] = collections[:10]
                response["database"] = "✅ Connected & Working"
            except Exception as e:
                response["database"] = f"⚠️  Connected but Error: {str(e)[:50]}"
        else:
            response["database"] = "⚠️  Available but not initialized"
    except Exception as e:
        response["database"] = f"❌ Error: {str(e)[:50]}"
    return response


# ------------------------- Auth Endpoints ---------------------
@app.post("/auth/register", status_code=201)
def register(payload: accounts.RegisterRequest, user_id: Optional[str] = Depends(resolve_identity)):
    return {"message": "User registered successfully", **accounts.register(payload, user_id)}


@app.post("/auth/login")
def login(payload: accounts.LoginRequest):
    return {"message": "Logged in successfully", **accounts.login(payload)}


@app.post("/auth/forgetpassword")
def forget_password(payload: accounts.ForgetPasswordRequest):
    accounts.forget_password(payload)
    return {"message": "Reset email sent"}


@app.put("/auth/resetpassword/{token}")
def reset_password(token: str, payload: accounts.ResetPasswordRequest):
    accounts.reset_password(token, payload)
    return {"message": "Password has been reset"}


# ------------------------- Books CRUD -------------------------
class OfferUpdate(BaseModel):
    offer: Optional[float] = None


class StockUpdate(BaseModel):
    quantity: Optional[int] = None


def book_form(
    name: Optional[str] = Form(None),
    title: Optional[str] = Form(None),
    category: Optional[str] = Form(None),
    code: Optional[str] = Form(None),
    price: Optional[str] = Form(None),
    quantity: Optional[str] = Form(None),
    description: Optional[str] = Form(None),
    offer: Optional[str] = Form(None),
):
    return {
        "name": name, "title": title, "category": category, "code": code,
        "price": price, "quantity": quantity, "description": description, "offer": offer,
    }


@app.get("/books")
def list_books():
    books = catalog.list_books()
    return {"message": "Books fetched", "books": books, "count": len(books)}


@app.post("/books", status_code=201)
def create_book(fields: dict = Depends(book_form), imgs: Optional[List[UploadFile]] = File(None),
                admin: dict = Depends(require_admin)):
    book = catalog.add_book(fields, imgs)
    return {"message": "Book added successfully", "book": book}


@app.get("/books/{book_id}")
def get_book(book_id: str):
    return {"message": "Book fetched", "book": catalog.public_book(catalog.get_book(book_id))}


@app.put("/books/{book_id}")
def update_book(book_id: str, fields: dict = Depends(book_form), imgs: Optional[List[UploadFile]] = File(None),
                admin: dict = Depends(require_admin)):
    book = catalog.update_book(book_id, fields, imgs)
    return {"message": "Book updated successfully", "book": book}


@app.delete("/books/{book_id}")
def delete_book(book_id: str, admin: dict = Depends(require_admin)):
    catalog.delete_book(book_id)
    return {"message": "Book deleted successfully"}


@app.patch("/books/{book_id}/offer")
def set_book_offer(book_id: str, payload: OfferUpdate, admin: dict = Depends(require_admin)):
    return {"message": "Offer added successfully", "book": catalog.set_offer(book_id, payload.offer)}


@app.patch("/books/{book_id}/stock")
def set_book_stock(book_id: str, payload: StockUpdate, admin: dict = Depends(require_admin)):
    return {"message": "Stock updated successfully", "book": catalog.set_stock(book_id, payload.quantity)}


# ------------------------- Cart -------------------------------
class CartItemIn(BaseModel):
    book_id: str = Field(..., min_length=1)
    quantity: int = Field(1, ge=1)


class CartItemUpdate(BaseModel):
    book_id: str = Field(..., min_length=1)
    quantity: int = Field(..., ge=1)


@app.get("/cart")
def get_cart(repo: lists.ListRepository = Depends(lists.cart_repository)):
    return {"message": "Cart loaded", "cart": lists.get_cart(repo)}


@app.post("/cart")
def add_to_cart(payload: CartItemIn, repo: lists.ListRepository = Depends(lists.cart_repository)):
    cart = lists.add_to_cart(repo, payload.book_id, payload.quantity)
    return {"message": "Added to cart successfully", "cart": cart}


@app.put("/cart")
def update_cart_item(payload: CartItemUpdate, repo: lists.ListRepository = Depends(lists.cart_repository)):
    cart = lists.update_cart_item(repo, payload.book_id, payload.quantity)
    return {"message": "Cart item updated successfully", "cart": cart}


@app.delete("/cart/{book_id}")
def remove_from_cart(book_id: str, repo: lists.ListRepository = Depends(lists.cart_repository)):
    cart = lists.remove_from_cart(repo, book_id)
    return {"message": "Item removed from cart successfully", "cart": cart}


@app.post("/cart/clear")
def clear_cart(repo: lists.ListRepository = Depends(lists.cart_repository)):
    lists.clear_cart(repo)
    return {"message": "Cart cleared successfully", "cart": []}


# ------------------------- Favorites --------------------------
class FavoriteIn(BaseModel):
    book_id: str = Field(..., min_length=1)


@app.get("/favorites")
def get_favorites(repo: lists.ListRepository = Depends(lists.favorites_repository)):
    return {"message": "Favorites loaded", "favorites": lists.get_favorites(repo)}


@app.post("/favorites")
def add_to_favorites(payload: FavoriteIn, repo: lists.ListRepository = Depends(lists.favorites_repository)):
    added, favorites = lists.add_to_favorites(repo, payload.book_id)
    return {
        "message": "Added to favorites successfully" if added else "Already in favorites",
        "is_added": added,
        "favorites": favorites,
    }


@app.delete("/favorites/{book_id}")
def remove_from_favorites(book_id: str, repo: lists.ListRepository = Depends(lists.favorites_repository)):
    removed, favorites = lists.remove_from_favorites(repo, book_id)
    return {
        "message": "Removed from favorites successfully" if removed else "Not in favorites",
        "is_removed": removed,
        "favorites": favorites,
    }


@app.post("/favorites/clear")
def clear_favorites(repo: lists.ListRepository = Depends(lists.favorites_repository)):
    lists.clear_favorites(repo)
    return {"message": "Favorites cleared successfully", "favorites": []}


# ------------------------- Orders -----------------------------
@app.post("/orders", status_code=201)
def create_order(payload: orders.CreateOrderRequest, user_id: Optional[str] = Depends(resolve_identity)):
    return {"message": "Order created successfully", "order": orders.create_order(payload, user_id)}


@app.get("/orders")
def list_orders(user_id: Optional[str] = Depends(resolve_identity)):
    found = orders.get_all_orders(user_id)
    return {"message": "Orders fetched", "orders": found, "count": len(found)}


@app.get("/orders/{order_id}")
def get_order(order_id: str, user_id: Optional[str] = Depends(resolve_identity)):
    return {"message": "Order fetched", "order": orders.get_order_by_id(order_id, user_id)}


@app.put("/orders/{order_id}/status")
def update_order_status(order_id: str, payload: orders.OrderStatusUpdate,
                        user_id: Optional[str] = Depends(resolve_identity)):
    order = orders.update_order_status(order_id, payload.status, user_id)
    return {"message": f"Order status updated to {payload.status}", "order": order}


@app.put("/orders/{order_id}")
def update_order(order_id: str, payload: orders.OrderUpdate, user_id: Optional[str] = Depends(resolve_identity)):
    return {"message": "Order updated successfully", "order": orders.update_order(order_id, payload, user_id)}


@app.delete("/orders/{order_id}")
def delete_order(order_id: str, user_id: Optional[str] = Depends(resolve_identity)):
    orders.delete_order(order_id, user_id)
    return {"message": "Order deleted successfully"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=config.PORT)

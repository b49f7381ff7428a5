import logging
import os
import re
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import Depends, FastAPI, File, Header, HTTPException, Query, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, EmailStr, Field
from passlib.context import CryptContext
from pymongo import ASCENDING, DESCENDING

import database
from cart import CartCorruptedError, CartStore, cart_key
from chat import ChatAssistant
from database import MongoKeyValue, create_document, ensure_indexes, get_db, get_documents
from schemas import ROLE_ADMIN, ROLE_USER, Book, BookUpdate, CartLineItem, Comment, OrderStatus, User as UserSchema
from services import (
    CheckoutError, InvalidTransition, NotFound, ReviewError,
    delete_book_cascade, delete_review, resume_pending_deletions, set_order_status,
    set_review_approval, submit_checkout, submit_review, to_object_id, to_str_id,
)
from uploads import UploadError, upload_image

logger = logging.getLogger(__name__)

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")


@asynccontextmanager
async def lifespan(app: FastAPI):
    if database.db is not None:
        ensure_indexes(database.db)
    yield


app = FastAPI(title="Bookstore API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Dependencies
def require_db(db=Depends(get_db)):
    if db is None:
        raise HTTPException(status_code=500, detail="Database not available")
    return db


def require_admin(x_user_email: str = Header(...), db=Depends(require_db)):
    user = db["users"].find_one({"_id": x_user_email})
    if not user or user.get("role") != ROLE_ADMIN:
        raise HTTPException(status_code=403, detail="Admin access required")
    return user


def get_assistant() -> ChatAssistant:
    return ChatAssistant()


def cart_for(client_id: str, db) -> CartStore:
    return CartStore(MongoKeyValue(db["cartstore"]), cart_key(client_id))


def load_cart(cart: CartStore) -> List[CartLineItem]:
    try:
        return cart.list()
    except CartCorruptedError as e:
        logger.error("%s", e)
        raise HTTPException(status_code=500, detail="Cart record is corrupted")


def get_book_or_404(db, book_id: str) -> dict:
    try:
        _id = to_object_id(book_id, "book")
    except NotFound:
        raise HTTPException(status_code=400, detail="Invalid book id")
    book = db["books"].find_one({"_id": _id, "deleting": {"$ne": True}})
    if not book:
        raise HTTPException(status_code=404, detail="Book not found")
    return book


# Helpers
class UserCreate(BaseModel):
    name: str
    email: EmailStr
    password: str


class UserLogin(BaseModel):
    email: EmailStr
    password: str


class AddToCart(BaseModel):
    book_id: str


class QuantityUpdate(BaseModel):
    quantity: int = Field(..., ge=1)


class CheckoutRequest(BaseModel):
    client_id: str
    user_email: str
    user_id: Optional[str] = None
    phone: str = ""
    address: str = ""
    payment_method: str = ""


class StatusUpdate(BaseModel):
    status: OrderStatus


class ReviewCreate(BaseModel):
    order_id: str
    book_id: str
    user_email: str
    user_name: str = ""
    user_id: Optional[str] = None
    rating: int
    comment: str


class ApprovalUpdate(BaseModel):
    approved: bool


class CommentCreate(BaseModel):
    book_title: str
    user_email: str
    content: str


class ChatRequest(BaseModel):
    question: str


def cart_summary(cart: CartStore) -> dict:
    items = load_cart(cart)
    return {"items": [it.model_dump() for it in items], "total": cart.total()}


# Health
@app.get("/")
def read_root():
    return {"message": "Bookstore Backend running"}


@app.get("/test")
def test_database(db=Depends(get_db)):
    try:
        collections = db.list_collection_names() if db is not None else []
        return {"backend": "ok", "db": "ok" if db is not None else "not_configured", "collections": collections}
    except Exception as e:
        return {"backend": "ok", "db": f"error: {str(e)[:80]}"}


# Auth (simple sessionless - return the user record)
@app.post("/api/auth/register")
def register(user: UserCreate, db=Depends(require_db)):
    if not user.name.strip():
        raise HTTPException(status_code=400, detail="Please fill in all fields")
    if len(user.password) < 6:
        raise HTTPException(status_code=400, detail="Password must be at least 6 characters")
    if db["users"].find_one({"_id": user.email}):
        raise HTTPException(status_code=400, detail="Email already registered")
    password_hash = pwd_context.hash(user.password)
    user_doc = UserSchema(name=user.name, email=user.email, password_hash=password_hash, role=ROLE_USER)
    create_document("users", {"_id": user.email, **user_doc.model_dump()}, database=db)
    return {"email": user.email, "name": user.name, "role": ROLE_USER}


@app.post("/api/auth/login")
def login(creds: UserLogin, db=Depends(require_db)):
    doc = db["users"].find_one({"_id": creds.email})
    if not doc:
        raise HTTPException(status_code=401, detail="Wrong email or password")
    if not pwd_context.verify(creds.password, doc.get("password_hash", "")):
        raise HTTPException(status_code=401, detail="Wrong email or password")
    return {"email": doc["_id"], "name": doc.get("name"), "role": doc.get("role", ROLE_USER)}


@app.get("/api/users/{email}")
def get_profile(email: str, db=Depends(require_db)):
    doc = db["users"].find_one({"_id": email}, {"password_hash": 0})
    if not doc:
        raise HTTPException(status_code=404, detail="User not found")
    return {"email": doc["_id"], "name": doc.get("name"), "role": doc.get("role", ROLE_USER)}


# Books
@app.get("/api/books")
def list_books(q: Optional[str] = None, category: Optional[str] = None, db=Depends(require_db)):
    filt = {"deleting": {"$ne": True}}
    if q:
        pattern = re.escape(q)
        filt["$or"] = [
            {"title": {"$regex": pattern, "$options": "i"}},
            {"author": {"$regex": pattern, "$options": "i"}},
        ]
    if category:
        filt["category"] = category
    return [to_str_id(b) for b in db["books"].find(filt).sort("title", ASCENDING)]


@app.get("/api/books/{book_id}")
def get_book(book_id: str, db=Depends(require_db)):
    return to_str_id(get_book_or_404(db, book_id))


@app.post("/api/books")
def create_book(book: Book, admin=Depends(require_admin), db=Depends(require_db)):
    book_id = create_document("books", book, database=db)
    logger.info("Book %s created by %s", book_id, admin["_id"])
    return {"id": book_id, **book.model_dump()}


@app.put("/api/books/{book_id}")
def update_book(book_id: str, payload: BookUpdate, admin=Depends(require_admin), db=Depends(require_db)):
    book = get_book_or_404(db, book_id)
    updates = payload.model_dump(exclude_none=True)
    if updates:
        db["books"].update_one({"_id": book["_id"]}, {"$set": updates})
        book.update(updates)
    return to_str_id(book)


@app.delete("/api/books/{book_id}")
def delete_book(book_id: str, admin=Depends(require_admin), db=Depends(require_db)):
    try:
        summary = delete_book_cascade(db, book_id)
    except NotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    return {"deleted": True, **summary}


@app.post("/api/admin/sweep")
def sweep_deletions(admin=Depends(require_admin), db=Depends(require_db)):
    return {"swept": resume_pending_deletions(db)}


@app.post("/api/uploads")
def upload_cover(file: UploadFile = File(...), admin=Depends(require_admin)):
    try:
        url = upload_image(file.file.read(), file.filename or "image.jpg", file.content_type or "image/*")
    except UploadError as e:
        raise HTTPException(status_code=502, detail=str(e))
    return {"secure_url": url}


# Cart
@app.get("/api/cart/{client_id}")
def get_cart(client_id: str, db=Depends(require_db)):
    return cart_summary(cart_for(client_id, db))


@app.post("/api/cart/{client_id}/items")
def add_to_cart(client_id: str, payload: AddToCart, db=Depends(require_db)):
    book = get_book_or_404(db, payload.book_id)
    cart = cart_for(client_id, db)
    load_cart(cart)
    line = CartLineItem(
        book_id=str(book["_id"]),
        title=book.get("title", ""),
        author=book.get("author", ""),
        price=float(book.get("price", 0)),
        image_url=book.get("image_url"),
    )
    cart.add(line)
    return cart_summary(cart)


@app.patch("/api/cart/{client_id}/items/{book_id}")
def update_cart_item(client_id: str, book_id: str, payload: QuantityUpdate, db=Depends(require_db)):
    cart = cart_for(client_id, db)
    items = load_cart(cart)
    line = next((it for it in items if it.book_id == book_id), None)
    if line is None:
        raise HTTPException(status_code=404, detail="Item not in cart")
    cart.update_quantity(line, payload.quantity)
    return cart_summary(cart)


@app.delete("/api/cart/{client_id}/items/{book_id}")
def remove_cart_item(client_id: str, book_id: str, db=Depends(require_db)):
    cart = cart_for(client_id, db)
    load_cart(cart)
    cart.remove_book(book_id)
    return cart_summary(cart)


@app.delete("/api/cart/{client_id}")
def clear_cart(client_id: str, db=Depends(require_db)):
    cart_for(client_id, db).clear()
    return {"items": [], "total": 0}


# Checkout -> create order and clear cart
@app.post("/api/checkout")
def checkout(req: CheckoutRequest, db=Depends(require_db)):
    cart = cart_for(req.client_id, db)
    try:
        order = submit_checkout(db, cart, phone=req.phone, address=req.address,
                                payment_method=req.payment_method, user_email=req.user_email,
                                user_id=req.user_id)
    except CheckoutError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except CartCorruptedError:
        raise HTTPException(status_code=500, detail="Cart record is corrupted")
    return order


# Orders
@app.get("/api/orders")
def list_user_orders(email: str = Query(...), db=Depends(require_db)):
    docs = db["orders"].find({"user_email": email}).sort("timestamp", DESCENDING)
    return [to_str_id(o) for o in docs]


@app.get("/api/orders/{order_id}")
def get_order(order_id: str, db=Depends(require_db)):
    try:
        _id = to_object_id(order_id, "order")
    except NotFound:
        raise HTTPException(status_code=400, detail="Invalid order id")
    doc = db["orders"].find_one({"_id": _id})
    if not doc:
        raise HTTPException(status_code=404, detail="Order not found")
    return to_str_id(doc)


@app.get("/api/admin/orders")
def list_all_orders(status: Optional[OrderStatus] = None, admin=Depends(require_admin), db=Depends(require_db)):
    filt = {"status": status.value} if status else {}
    return [to_str_id(o) for o in db["orders"].find(filt).sort("timestamp", DESCENDING)]


@app.patch("/api/admin/orders/{order_id}/status")
def update_order_status(order_id: str, payload: StatusUpdate, admin=Depends(require_admin), db=Depends(require_db)):
    try:
        return set_order_status(db, order_id, payload.status)
    except NotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except InvalidTransition as e:
        raise HTTPException(status_code=409, detail=str(e))


# Reviews
@app.post("/api/reviews")
def create_review(req: ReviewCreate, db=Depends(require_db)):
    try:
        return submit_review(db, req.order_id, req.book_id, req.rating, req.comment,
                             user_email=req.user_email, user_name=req.user_name, user_id=req.user_id)
    except NotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ReviewError as e:
        raise HTTPException(status_code=400, detail=str(e))


@app.get("/api/books/{book_id}/reviews")
def list_book_reviews(book_id: str, db=Depends(require_db)):
    docs = db["reviews"].find({"book_id": book_id, "approved": True}).sort("timestamp", DESCENDING)
    return [to_str_id(r) for r in docs]


@app.get("/api/reviews")
def list_my_reviews(email: str = Query(...), db=Depends(require_db)):
    docs = db["reviews"].find({"user_email": email}).sort("timestamp", DESCENDING)
    return [to_str_id(r) for r in docs]


@app.get("/api/admin/reviews")
def list_all_reviews(admin=Depends(require_admin), db=Depends(require_db)):
    return [to_str_id(r) for r in db["reviews"].find().sort("timestamp", DESCENDING)]


@app.patch("/api/admin/reviews/{review_id}/approval")
def update_review_approval(review_id: str, payload: ApprovalUpdate, admin=Depends(require_admin), db=Depends(require_db)):
    try:
        return set_review_approval(db, review_id, payload.approved)
    except NotFound as e:
        raise HTTPException(status_code=404, detail=str(e))


@app.delete("/api/admin/reviews/{review_id}")
def remove_review(review_id: str, admin=Depends(require_admin), db=Depends(require_db)):
    try:
        delete_review(db, review_id)
    except NotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    return {"deleted": True}


# Comments
@app.get("/api/comments")
def list_comments(book_title: str = Query(...), db=Depends(require_db)):
    docs = db["comments"].find({"book_title": book_title}).sort("timestamp", ASCENDING)
    return [to_str_id(c) for c in docs]


@app.post("/api/comments")
def add_comment(req: CommentCreate, db=Depends(require_db)):
    if not req.content.strip():
        raise HTTPException(status_code=400, detail="Comment cannot be empty")
    comment = Comment(book_title=req.book_title, user_email=req.user_email, content=req.content.strip())
    comment_id = create_document("comments", comment, database=db)
    return {"id": comment_id, **comment.model_dump()}


@app.delete("/api/admin/comments/{comment_id}")
def remove_comment(comment_id: str, admin=Depends(require_admin), db=Depends(require_db)):
    try:
        _id = to_object_id(comment_id, "comment")
    except NotFound:
        raise HTTPException(status_code=400, detail="Invalid comment id")
    res = db["comments"].delete_one({"_id": _id})
    if res.deleted_count == 0:
        raise HTTPException(status_code=404, detail="Comment not found")
    return {"deleted": True}


# Users (admin)
@app.get("/api/admin/users")
def list_users(admin=Depends(require_admin), db=Depends(require_db)):
    docs = db["users"].find({}, {"password_hash": 0}).sort("role", ASCENDING)
    return [{"email": d["_id"], "name": d.get("name"), "role": d.get("role", ROLE_USER)} for d in docs]


@app.post("/api/admin/users/{email}/promote")
def promote_user(email: str, admin=Depends(require_admin), db=Depends(require_db)):
    res = db["users"].update_one({"_id": email}, {"$set": {"role": ROLE_ADMIN}})
    if res.matched_count == 0:
        raise HTTPException(status_code=404, detail="User not found")
    logger.info("User %s promoted to admin by %s", email, admin["_id"])
    return {"email": email, "role": ROLE_ADMIN}


@app.delete("/api/admin/users/{email}")
def delete_user(email: str, admin=Depends(require_admin), db=Depends(require_db)):
    target = db["users"].find_one({"_id": email})
    if not target:
        raise HTTPException(status_code=404, detail="User not found")
    if target.get("role") == ROLE_ADMIN:
        raise HTTPException(status_code=400, detail="Admins cannot be deleted")
    db["users"].delete_one({"_id": email})
    return {"deleted": True}


# Store assistant
@app.post("/api/chat")
def chat(req: ChatRequest, db=Depends(require_db), assistant: ChatAssistant = Depends(get_assistant)):
    books = get_documents("books", {"deleting": {"$ne": True}}, database=db)
    return {"answer": assistant.ask(req.question, books)}


if __name__ == "__main__":
    import uvicorn
    logging.basicConfig(level=logging.INFO)
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)

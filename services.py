"""
Bookstore business rules

Plain functions over an explicit database handle. Routes in main.py call
these and translate the exceptions below into HTTP errors.
"""
import logging
from typing import Any, Dict, List, Optional

from bson import ObjectId
from bson.errors import InvalidId
from pymongo import ReturnDocument

from cart import CartStore
from database import create_document
from schemas import Order, OrderItem, OrderStatus, Review

logger = logging.getLogger(__name__)


class NotFound(Exception):
    pass


class CheckoutError(Exception):
    pass


class ReviewError(Exception):
    pass


class InvalidTransition(Exception):
    pass


ALLOWED_TRANSITIONS = {
    OrderStatus.PENDING: {OrderStatus.APPROVED, OrderStatus.REJECTED},
    OrderStatus.APPROVED: {OrderStatus.DELIVERED},
    OrderStatus.REJECTED: set(),
    OrderStatus.DELIVERED: set(),
}

REVIEWABLE_STATUSES = {OrderStatus.APPROVED.value, OrderStatus.DELIVERED.value}


def to_object_id(value: str, what: str = "document") -> ObjectId:
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        raise NotFound(f"Invalid {what} id: {value}")


def to_str_id(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not doc:
        return doc
    d = {**doc}
    if "_id" in d:
        d["id"] = str(d.pop("_id"))
    return d


# Rating aggregation

def recompute_book_rating(db, book_id: str) -> Optional[float]:
    """Write the mean rating of the book's approved reviews onto the book.

    Returns the new rating, or None when the book has no approved reviews,
    in which case nothing is written and the stored rating is left as is.
    """
    ratings = [r["rating"] for r in db["reviews"].find({"book_id": book_id, "approved": True}, {"rating": 1})]
    if not ratings:
        return None
    avg = sum(ratings) / len(ratings)
    db["books"].update_one({"_id": to_object_id(book_id, "book")}, {"$set": {"rating": avg}})
    logger.info("Book %s rating set to %.2f from %d review(s)", book_id, avg, len(ratings))
    return avg


# Cascade delete

def _sweep_book(db, book_id: str) -> Dict[str, int]:
    removed_reviews = db["reviews"].delete_many({"book_id": book_id}).deleted_count

    orders_deleted = 0
    orders_updated = 0
    for order in db["orders"].find({"items.book_id": book_id}):
        items = order.get("items", [])
        kept = [it for it in items if it.get("book_id") != book_id]
        if not kept:
            db["orders"].delete_one({"_id": order["_id"]})
            orders_deleted += 1
        elif len(kept) < len(items):
            total = sum(it["price"] * it["quantity"] for it in kept)
            db["orders"].update_one({"_id": order["_id"]}, {"$set": {"items": kept, "total_amount": total}})
            orders_updated += 1

    db["books"].delete_one({"_id": to_object_id(book_id, "book")})
    return {"reviews_deleted": removed_reviews, "orders_deleted": orders_deleted, "orders_updated": orders_updated}


def delete_book_cascade(db, book_id: str) -> Dict[str, int]:
    """Delete a book along with its reviews and the order lines that reference it.

    The book is first marked `deleting` so it drops out of the catalog and
    checkout; each following step can be repeated safely, so an interrupted
    run is finished by `resume_pending_deletions`.
    """
    oid = to_object_id(book_id, "book")
    res = db["books"].update_one({"_id": oid}, {"$set": {"deleting": True}})
    if res.matched_count == 0:
        raise NotFound("Book not found")
    summary = _sweep_book(db, book_id)
    logger.info("Deleted book %s: %s", book_id, summary)
    return summary


def resume_pending_deletions(db) -> List[str]:
    swept = []
    for book in db["books"].find({"deleting": True}, {"_id": 1}):
        book_id = str(book["_id"])
        _sweep_book(db, book_id)
        swept.append(book_id)
    if swept:
        logger.info("Finished %d interrupted book deletion(s)", len(swept))
    return swept


# Checkout

def resolve_cart_lines(db, lines) -> List[OrderItem]:
    """Re-price cart lines against the current catalog."""
    items = []
    for line in lines:
        try:
            oid = ObjectId(line.book_id)
        except (InvalidId, TypeError):
            raise CheckoutError(f"'{line.title}' is no longer available")
        book = db["books"].find_one({"_id": oid, "deleting": {"$ne": True}})
        if not book:
            raise CheckoutError(f"'{line.title}' is no longer available")
        price = float(book.get("price", 0))
        if price <= 0:
            raise CheckoutError(f"'{line.title}' has no valid price")
        items.append(OrderItem(book_id=line.book_id, title=book.get("title", line.title),
                               price=price, quantity=line.quantity))
    return items


def submit_checkout(db, cart: CartStore, phone: str, address: str, payment_method: str,
                    user_email: str, user_id: Optional[str] = None) -> Dict[str, Any]:
    lines = cart.list()
    if not lines:
        raise CheckoutError("Cart is empty")
    if not phone.strip() or not address.strip():
        raise CheckoutError("Please enter a delivery phone and address")
    if not payment_method.strip():
        raise CheckoutError("Please choose a payment method")

    items = resolve_cart_lines(db, lines)
    total = sum(it.price * it.quantity for it in items)
    order = Order(user_id=user_id, user_email=user_email, phone=phone.strip(), address=address.strip(),
                  payment_method=payment_method, items=items, total_amount=total)
    order_id = create_document("orders", order, database=db)
    cart.clear()
    logger.info("Order %s created for %s: %d item(s), total %.0f", order_id, user_email, len(items), total)
    return {"id": order_id, **order.model_dump()}


# Orders

def set_order_status(db, order_id: str, status: OrderStatus) -> Dict[str, Any]:
    oid = to_object_id(order_id, "order")
    order = db["orders"].find_one({"_id": oid})
    if not order:
        raise NotFound("Order not found")
    current = OrderStatus(order.get("status", OrderStatus.PENDING.value))
    if status not in ALLOWED_TRANSITIONS[current]:
        raise InvalidTransition(f"Cannot move order from {current.value} to {status.value}")
    db["orders"].update_one({"_id": oid}, {"$set": {"status": status.value}})
    logger.info("Order %s: %s -> %s", order_id, current.value, status.value)
    order["status"] = status.value
    return to_str_id(order)


# Reviews

def submit_review(db, order_id: str, book_id: str, rating: int, comment: str,
                  user_email: str, user_name: str = "", user_id: Optional[str] = None) -> Dict[str, Any]:
    if not 1 <= rating <= 5:
        raise ReviewError("Please choose a rating between 1 and 5 stars")
    if not comment.strip():
        raise ReviewError("Please write a comment")

    order = db["orders"].find_one({"_id": to_object_id(order_id, "order")})
    if not order:
        raise NotFound("Order not found")
    if order.get("user_email") != user_email:
        raise ReviewError("This order belongs to another user")
    if order.get("status") not in REVIEWABLE_STATUSES:
        raise ReviewError("Only approved or delivered orders can be reviewed")
    if order.get("reviewed"):
        raise ReviewError("This order has already been reviewed")
    line = next((it for it in order.get("items", []) if it.get("book_id") == book_id), None)
    if line is None:
        raise ReviewError("This book is not part of the order")

    review = Review(order_id=order_id, book_id=book_id, book_title=line.get("title", ""),
                    user_id=user_id, user_email=user_email, user_name=user_name,
                    rating=rating, comment=comment.strip())
    review_id = create_document("reviews", review, database=db)
    recompute_book_rating(db, book_id)
    db["orders"].update_one({"_id": order["_id"]}, {"$set": {"reviewed": True}})
    return {"id": review_id, **review.model_dump()}


def delete_review(db, review_id: str) -> None:
    review = db["reviews"].find_one_and_delete({"_id": to_object_id(review_id, "review")})
    if not review:
        raise NotFound("Review not found")
    recompute_book_rating(db, review["book_id"])


def set_review_approval(db, review_id: str, approved: bool) -> Dict[str, Any]:
    oid = to_object_id(review_id, "review")
    review = db["reviews"].find_one_and_update(
        {"_id": oid}, {"$set": {"approved": approved}}, return_document=ReturnDocument.AFTER
    )
    if review is None:
        raise NotFound("Review not found")
    recompute_book_rating(db, review["book_id"])
    return to_str_id(review)

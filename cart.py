"""
Cart store

A cart is one serialized JSON record (a list of line items) kept under a
single key in a string key-value backend. Lines are keyed by book id.
Every mutation is a read-modify-write of the whole record, so two writers
racing on the same key resolve as last write wins.
"""
import json
from collections.abc import MutableMapping
from typing import List

from pydantic import TypeAdapter, ValidationError

from schemas import CartLineItem

CART_KEY_PREFIX = "cart:"

_lines_adapter = TypeAdapter(List[CartLineItem])


class CartCorruptedError(Exception):
    """The persisted cart record could not be decoded."""


def cart_key(client_id: str) -> str:
    return f"{CART_KEY_PREFIX}{client_id}"


class CartStore:
    def __init__(self, backend: MutableMapping, key: str):
        self.backend = backend
        self.key = key

    def list(self) -> List[CartLineItem]:
        raw = self.backend.get(self.key)
        if raw is None:
            return []
        try:
            return _lines_adapter.validate_json(raw)
        except ValidationError as e:
            raise CartCorruptedError(f"Cart record {self.key!r} is unreadable: {e.error_count()} error(s)") from e

    def _save(self, items: List[CartLineItem]) -> None:
        self.backend[self.key] = json.dumps([it.model_dump() for it in items])

    def add(self, item: CartLineItem) -> CartLineItem:
        items = self.list()
        for i, existing in enumerate(items):
            if existing.book_id == item.book_id:
                items[i] = existing.model_copy(update={"quantity": existing.quantity + 1})
                self._save(items)
                return items[i]
        added = item.model_copy(update={"quantity": 1})
        items.append(added)
        self._save(items)
        return added

    def remove(self, item: CartLineItem) -> None:
        self.remove_book(item.book_id)

    def remove_book(self, book_id: str) -> None:
        items = [it for it in self.list() if it.book_id != book_id]
        self._save(items)

    def update_quantity(self, item: CartLineItem, quantity: int) -> bool:
        if quantity < 1:
            raise ValueError("Quantity must be at least 1")
        items = self.list()
        for i, existing in enumerate(items):
            if existing.book_id == item.book_id:
                items[i] = existing.model_copy(update={"quantity": quantity})
                self._save(items)
                return True
        return False

    def replace(self, item: CartLineItem) -> bool:
        items = self.list()
        for i, existing in enumerate(items):
            if existing.book_id == item.book_id:
                items[i] = item
                self._save(items)
                return True
        return False

    def clear(self) -> None:
        self.backend.pop(self.key, None)

    def total(self) -> float:
        return sum(it.price * it.quantity for it in self.list())

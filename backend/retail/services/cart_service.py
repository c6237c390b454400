# Overview: Service-layer operations for cart; per-user shopping cart persisted between checkouts.

from __future__ import annotations

from ..extensions import db
from ..models import Cart, CartItem, Product
from ..validation import coerce_positive_int


class CartError(Exception):
    """Raised for cart operation errors."""
    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}


class CartItemNotFound(CartError):
    pass


def get_or_create_cart(user_id: int) -> Cart:
    cart = db.session.query(Cart).filter_by(user_id=user_id).first()
    if cart is None:
        cart = Cart(user_id=user_id)
        db.session.add(cart)
        db.session.commit()
    return cart


def get_cart(user_id: int) -> dict:
    return get_or_create_cart(user_id).to_dict()


def _active_product(product_id: int) -> Product:
    product = db.session.get(Product, product_id)
    if product is None or not product.is_active:
        raise CartItemNotFound("Product not found")
    return product


def _check_availability(product: Product, quantity: int) -> None:
    # Advisory only: stock is re-checked under lock at checkout
    if quantity > product.stock_quantity:
        raise CartError(
            f"Only {product.stock_quantity} units of {product.name} available",
            details={"product_id": product.id, "available": product.stock_quantity, "requested": quantity},
        )


def add_to_cart(user_id: int, product_id, quantity=1) -> CartItem:
    """Add units of a product; an existing line for the product is increased."""
    pid = coerce_positive_int(product_id, "product_id")
    qty = coerce_positive_int(quantity, "quantity")
    product = _active_product(pid)
    cart = get_or_create_cart(user_id)

    item = db.session.query(CartItem).filter_by(cart_id=cart.id, product_id=pid).first()
    new_quantity = qty + (item.quantity if item is not None else 0)
    _check_availability(product, new_quantity)

    if item is None:
        item = CartItem(cart_id=cart.id, product_id=pid, quantity=new_quantity)
        db.session.add(item)
    else:
        item.quantity = new_quantity
    db.session.commit()
    return item


def _owned_item(user_id: int, item_id: int) -> CartItem:
    item = (
        db.session.query(CartItem)
        .join(Cart, Cart.id == CartItem.cart_id)
        .filter(CartItem.id == item_id, Cart.user_id == user_id)
        .first()
    )
    if item is None:
        raise CartItemNotFound("Cart item not found")
    return item


def update_cart_item(user_id: int, item_id: int, quantity) -> CartItem:
    qty = coerce_positive_int(quantity, "quantity")
    item = _owned_item(user_id, item_id)
    _check_availability(_active_product(item.product_id), qty)
    item.quantity = qty
    db.session.commit()
    return item


def remove_cart_item(user_id: int, item_id: int) -> None:
    item = _owned_item(user_id, item_id)
    db.session.delete(item)
    db.session.commit()


def clear_cart(user_id: int) -> int:
    """
    Delete every item in the user's cart without committing.

    Called from checkout so the cart is emptied in the order's transaction.
    """
    cart_ids = db.session.query(Cart.id).filter(Cart.user_id == user_id).scalar_subquery()
    return (
        db.session.query(CartItem)
        .filter(CartItem.cart_id.in_(cart_ids))
        .delete(synchronize_session=False)
    )

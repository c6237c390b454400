# Overview: Flask API routes for order operations; parses input and returns JSON responses.

"""
Order API Routes

- POST /api/orders/ places an online order (signed-in customer or guest)
  or a POS sale (staff only, "source": "pos").
- Money may be sent as integer cents (total_cents) or as a decimal amount
  (total_amount).
"""

from flask import Blueprint, current_app, g, jsonify, request

from ..decorators import optional_auth, require_auth, require_staff
from ..services import order_service
from ..services.order_service import (
    OrderAccessDenied,
    OrderNotFound,
    OrderStateError,
    SOURCE_ONLINE,
    SOURCE_POS,
)
from ..services.stock_service import StockError
from ..validation import ValidationError, parse_money


orders_bp = Blueprint("orders", __name__, url_prefix="/api/orders")


def _is_staff() -> bool:
    user = getattr(g, "current_user", None)
    return bool(user is not None and user.is_staff)


@orders_bp.post("")
@optional_auth
def create_order_route():
    """
    Request body:
    {
        "items": [{"product_id": 1, "quantity": 2}],
        "shipping_address": "...",           (online)
        "payment_intent_id": "pi_...",       (online card payments)
        "total_cents": 2500,                 (or "total_amount": "25.00")
        "discount_cents": 0,
        "source": "online" | "pos",
        "payment_method": "cash" | "card" | ...,
        "guest_info": {"name": "...", "email": "..."},  (guest checkout)
        "promo_code": "...",
        "amount_tendered_cents": 3000,       (POS cash)
        "change_due_cents": 500
    }

    Returns:
        201: order with items
        400: invalid input, unknown product, or insufficient stock
        403: POS sale attempted by a non-staff user
    """
    data = request.get_json(silent=True) or {}
    source = (data.get("source") or SOURCE_ONLINE).strip().lower()
    user = g.current_user

    if source == SOURCE_POS and not _is_staff():
        if user is None:
            return jsonify({"error": "Authentication required"}), 401
        return jsonify({"error": "Only staff can record POS sales"}), 403

    try:
        total_cents = parse_money(data, "total_cents", "total_amount", required=True)
        discount_cents = parse_money(data, "discount_cents", "discount_amount") or 0
        tendered = parse_money(data, "amount_tendered_cents", "amount_tendered")
        change_due = parse_money(data, "change_due_cents", "change_due")

        order = order_service.create_order(
            items=data.get("items"),
            shipping_address=data.get("shipping_address"),
            payment_intent_id=data.get("payment_intent_id"),
            total_cents=total_cents,
            discount_cents=discount_cents,
            source=source,
            payment_method=data.get("payment_method"),
            user_id=user.id if user is not None else None,
            guest_info=data.get("guest_info"),
            cashier_id=user.id if source == SOURCE_POS else None,
            promo_code=data.get("promo_code"),
            amount_tendered_cents=tendered,
            change_due_cents=change_due,
        )
        return jsonify({
            "message": "Order created successfully",
            "order": order.to_dict(include_items=True),
        }), 201

    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except StockError as e:
        return jsonify({"error": str(e), "details": e.details}), 400
    except Exception:
        current_app.logger.exception("Failed to create order")
        return jsonify({"error": "Failed to create order"}), 500


@orders_bp.get("")
@require_auth
@require_staff
def list_orders_route():
    try:
        limit = request.args.get("limit", 100, type=int)
        orders = order_service.list_orders(
            status=request.args.get("status"),
            source=request.args.get("source"),
            limit=limit,
        )
        return jsonify({"orders": [o.to_dict(include_items=True) for o in orders]}), 200
    except Exception:
        current_app.logger.exception("Failed to list orders")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.get("/mine")
@require_auth
def list_my_orders_route():
    orders = order_service.list_user_orders(g.current_user.id)
    return jsonify({"orders": [o.to_dict(include_items=True) for o in orders]}), 200


@orders_bp.get("/<int:order_id>")
@require_auth
def get_order_route(order_id: int):
    try:
        order = order_service.get_order(order_id, user_id=g.current_user.id, is_staff=_is_staff())
        return jsonify({"order": order.to_dict(include_items=True)}), 200
    except OrderNotFound as e:
        return jsonify({"error": str(e)}), 404
    except OrderAccessDenied as e:
        return jsonify({"error": str(e)}), 403


@orders_bp.post("/<int:order_id>/cancel")
@require_auth
def cancel_order_route(order_id: int):
    try:
        order = order_service.cancel_order(order_id, user_id=g.current_user.id, is_staff=_is_staff())
        return jsonify({"message": "Order cancelled", "order": order.to_dict()}), 200
    except OrderNotFound as e:
        return jsonify({"error": str(e)}), 404
    except OrderAccessDenied as e:
        return jsonify({"error": str(e)}), 403
    except OrderStateError as e:
        return jsonify({"error": str(e), "details": e.details}), 400
    except Exception:
        current_app.logger.exception("Failed to cancel order")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.put("/<int:order_id>/status")
@require_auth
@require_staff
def update_order_status_route(order_id: int):
    try:
        data = request.get_json(silent=True) or {}
        order = order_service.update_order_status(order_id, (data.get("status") or "").strip().lower())
        return jsonify({"message": "Order status updated", "order": order.to_dict()}), 200
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except OrderNotFound as e:
        return jsonify({"error": str(e)}), 404
    except Exception:
        current_app.logger.exception("Failed to update order status")
        return jsonify({"error": "Internal server error"}), 500

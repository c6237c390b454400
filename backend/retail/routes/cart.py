# Overview: Flask API routes for cart operations; parses input and returns JSON responses.

from flask import Blueprint, current_app, g, jsonify, request

from ..decorators import require_auth
from ..services import cart_service
from ..services.cart_service import CartError, CartItemNotFound
from ..validation import ValidationError

cart_bp = Blueprint("cart", __name__, url_prefix="/api/cart")


@cart_bp.get("")
@require_auth
def get_cart_route():
    return jsonify({"cart": cart_service.get_cart(g.current_user.id)}), 200


@cart_bp.post("/items")
@require_auth
def add_cart_item_route():
    try:
        data = request.get_json(silent=True) or {}
        product_id = data.get("product_id", data.get("productId"))
        cart_service.add_to_cart(g.current_user.id, product_id, data.get("quantity", 1))
        return jsonify({"cart": cart_service.get_cart(g.current_user.id)}), 201
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except CartItemNotFound as e:
        return jsonify({"error": str(e)}), 404
    except CartError as e:
        return jsonify({"error": str(e), "details": e.details}), 400
    except Exception:
        current_app.logger.exception("Failed to add cart item")
        return jsonify({"error": "Internal server error"}), 500


@cart_bp.put("/items/<int:item_id>")
@require_auth
def update_cart_item_route(item_id: int):
    try:
        data = request.get_json(silent=True) or {}
        cart_service.update_cart_item(g.current_user.id, item_id, data.get("quantity"))
        return jsonify({"cart": cart_service.get_cart(g.current_user.id)}), 200
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except CartItemNotFound as e:
        return jsonify({"error": str(e)}), 404
    except CartError as e:
        return jsonify({"error": str(e), "details": e.details}), 400
    except Exception:
        current_app.logger.exception("Failed to update cart item")
        return jsonify({"error": "Internal server error"}), 500


@cart_bp.delete("/items/<int:item_id>")
@require_auth
def remove_cart_item_route(item_id: int):
    try:
        cart_service.remove_cart_item(g.current_user.id, item_id)
        return jsonify({"cart": cart_service.get_cart(g.current_user.id)}), 200
    except CartItemNotFound as e:
        return jsonify({"error": str(e)}), 404

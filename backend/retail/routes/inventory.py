# backend/retail/routes/inventory.py
"""
Inventory management routes.

All routes require an authenticated staff user. Stock levels change here
only through the stock service, which locks rows and emits inventory events.
"""
from flask import Blueprint, current_app, g, request

from ..decorators import require_auth, require_staff
from ..services import stock_service
from ..services.stock_service import NegativeStock, ProductNotFound, StockError
from ..validation import ValidationError, coerce_positive_int


inventory_bp = Blueprint("inventory", __name__, url_prefix="/api/inventory")


@inventory_bp.get("")
@require_auth
@require_staff
def list_inventory_route():
    products = stock_service.list_inventory()
    return {"products": [p.to_dict() for p in products], "count": len(products)}, 200


@inventory_bp.get("/low-stock")
@require_auth
@require_staff
def low_stock_route():
    products = stock_service.get_low_stock_products()
    return {"products": [p.to_dict() for p in products], "count": len(products)}, 200


@inventory_bp.get("/<int:product_id>")
@require_auth
@require_staff
def stock_level_route(product_id: int):
    try:
        return stock_service.get_stock_level(product_id), 200
    except ProductNotFound as e:
        return {"error": str(e)}, 404


@inventory_bp.get("/adjustments")
@require_auth
@require_staff
def list_adjustments_route():
    product_id = request.args.get("product_id", type=int)
    limit = request.args.get("limit", 200, type=int)
    adjustments = stock_service.list_stock_adjustments(product_id=product_id, limit=limit)
    return {"adjustments": [a.to_dict() for a in adjustments]}, 200


@inventory_bp.post("/adjustments")
@require_auth
@require_staff
def create_adjustment_route():
    """
    Manual stock correction.

    Request body:
    {
        "product_id": 1,
        "quantity_change": -2,
        "reason": "damaged" | "lost" | "correction" | "received" | ...,
        "note": "Dropped pallet"
    }
    """
    payload = request.get_json(silent=True) or {}

    try:
        if payload.get("product_id") is None or payload.get("quantity_change") is None:
            raise ValidationError("product_id and quantity_change required")
        change = stock_service.adjust_stock(
            product_id=coerce_positive_int(payload.get("product_id"), "product_id"),
            quantity_change=payload.get("quantity_change"),
            reason=payload.get("reason") or stock_service.REASON_MANUAL,
            note=payload.get("note"),
            adjusted_by=g.current_user.id,
        )
        return {"message": "Stock adjustment recorded", "change": change.to_dict()}, 201
    except ValidationError as e:
        return {"error": str(e)}, 400
    except ProductNotFound as e:
        return {"error": str(e)}, 404
    except NegativeStock as e:
        return {"error": str(e), "details": e.details}, 400
    except Exception:
        current_app.logger.exception("Failed to adjust stock")
        return {"error": "Internal server error"}, 500


@inventory_bp.put("/<int:product_id>/stock")
@require_auth
@require_staff
def set_stock_route(product_id: int):
    """Request body: {"stock_quantity": 10, "adjustment_type": "set" | "add" | "subtract", "note": "..."}"""
    payload = request.get_json(silent=True) or {}

    try:
        quantity = payload.get("stock_quantity", payload.get("quantity"))
        if quantity is None:
            raise ValidationError("stock_quantity required")
        change = stock_service.set_stock(
            product_id=product_id,
            quantity=quantity,
            adjustment_type=payload.get("adjustment_type") or "set",
            note=payload.get("note"),
            adjusted_by=g.current_user.id,
        )
        return {"message": "Stock updated", "change": change.to_dict()}, 200
    except ValidationError as e:
        return {"error": str(e)}, 400
    except ProductNotFound as e:
        return {"error": str(e)}, 404
    except StockError as e:
        return {"error": str(e), "details": e.details}, 400
    except Exception:
        current_app.logger.exception("Failed to update stock")
        return {"error": "Internal server error"}, 500


@inventory_bp.post("/bulk")
@require_auth
@require_staff
def bulk_update_route():
    """Request body: {"updates": [{"product_id": 1, "stock_quantity": 10}, ...]}"""
    payload = request.get_json(silent=True) or {}

    try:
        result = stock_service.bulk_update_stock(payload.get("updates"), adjusted_by=g.current_user.id)
        return result, 200
    except ValidationError as e:
        return {"error": str(e)}, 400
    except Exception:
        current_app.logger.exception("Failed to apply bulk stock update")
        return {"error": "Internal server error"}, 500

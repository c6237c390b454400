# Overview: Flask API routes for returns operations; parses input and returns JSON responses.

# backend/retail/routes/returns.py
"""
Return Processing API Routes

- Customers create returns against their own orders
- Staff approve or reject pending returns
- Managers/admins process refunds (original payment or store credit),
  which restocks the returned items
"""

from flask import Blueprint, current_app, g, jsonify, request

from ..decorators import require_auth, require_manager, require_staff
from ..services import return_service, store_credit_service
from ..services.order_service import OrderNotFound
from ..services.payment_gateway import PaymentGatewayError
from ..services.return_service import (
    ReturnAccessDenied,
    ReturnError,
    ReturnNotFound,
    ReturnStateError,
)
from ..services.stock_service import StockError
from ..validation import ValidationError, coerce_positive_int, parse_money


returns_bp = Blueprint("returns", __name__, url_prefix="/api/returns")


# =============================================================================
# RETURN CREATION
# =============================================================================

@returns_bp.post("")
@require_auth
def create_return_route():
    """
    Request body:
    {
        "order_id": 123,
        "items": [{"product_id": 1, "quantity": 1}],
        "reason": "Damaged on arrival",
        "refund_amount_cents": 1250,     (or "refund_amount": "12.50")
        "return_type": "online" | "in-store"
    }

    Returns:
        201: return created with pending status
        400: invalid input or quantity exceeds what is returnable
        403: order belongs to another user
        404: order not found
    """
    try:
        data = request.get_json(silent=True) or {}
        if data.get("order_id", data.get("orderId")) is None:
            return jsonify({"error": "order_id required"}), 400

        return_doc = return_service.create_return(
            order_id=coerce_positive_int(data.get("order_id", data.get("orderId")), "order_id"),
            user_id=g.current_user.id,
            items=data.get("items"),
            reason=data.get("reason"),
            refund_amount_cents=parse_money(data, "refund_amount_cents", "refund_amount", required=True),
            return_type=data.get("return_type") or "online",
        )
        return jsonify({"message": "Return request created", "return": return_doc.to_dict()}), 201

    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except OrderNotFound as e:
        return jsonify({"error": str(e)}), 404
    except ReturnAccessDenied as e:
        return jsonify({"error": str(e)}), 403
    except ReturnError as e:
        return jsonify({"error": str(e), "details": e.details}), 400
    except Exception:
        current_app.logger.exception("Failed to create return")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# QUERIES
# =============================================================================

@returns_bp.get("")
@require_auth
@require_staff
def list_returns_route():
    try:
        returns = return_service.list_returns(status=request.args.get("status"))
        return jsonify({"returns": [r.to_dict() for r in returns]}), 200
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400


@returns_bp.get("/mine")
@require_auth
def list_my_returns_route():
    returns = return_service.list_user_returns(g.current_user.id)
    return jsonify({"returns": [r.to_dict() for r in returns]}), 200


@returns_bp.get("/<int:return_id>")
@require_auth
def get_return_route(return_id: int):
    try:
        return_doc = return_service.get_return(
            return_id, user_id=g.current_user.id, is_staff=g.current_user.is_staff
        )
        return jsonify({"return": return_doc.to_dict()}), 200
    except ReturnNotFound as e:
        return jsonify({"error": str(e)}), 404
    except ReturnAccessDenied as e:
        return jsonify({"error": str(e)}), 403


# =============================================================================
# APPROVAL WORKFLOW
# =============================================================================

@returns_bp.post("/<int:return_id>/approve")
@require_auth
@require_staff
def approve_return_route(return_id: int):
    try:
        return_doc = return_service.approve_return(return_id, g.current_user.id)
        return jsonify({"message": "Return approved", "return": return_doc.to_dict()}), 200
    except ReturnNotFound as e:
        return jsonify({"error": str(e)}), 404
    except ReturnStateError as e:
        return jsonify({"error": str(e)}), 409
    except Exception:
        current_app.logger.exception("Failed to approve return")
        return jsonify({"error": "Internal server error"}), 500


@returns_bp.post("/<int:return_id>/reject")
@require_auth
@require_staff
def reject_return_route(return_id: int):
    """Request body (optional): {"reason": "Outside return window"}"""
    try:
        data = request.get_json(silent=True) or {}
        return_doc = return_service.reject_return(return_id, g.current_user.id, data.get("reason"))
        return jsonify({"message": "Return rejected", "return": return_doc.to_dict()}), 200
    except ReturnNotFound as e:
        return jsonify({"error": str(e)}), 404
    except ReturnStateError as e:
        return jsonify({"error": str(e)}), 409
    except Exception:
        current_app.logger.exception("Failed to reject return")
        return jsonify({"error": "Internal server error"}), 500


@returns_bp.post("/<int:return_id>/refund")
@require_auth
@require_manager
def process_refund_route(return_id: int):
    """
    Request body: {"refund_method": "original" | "store_credit"}

    Returns:
        200: refund recorded, items restocked
        404: return not found
        409: return is not in approved state
        502: payment gateway refused or was unreachable (return stays approved)
    """
    try:
        data = request.get_json(silent=True) or {}
        method = data.get("refund_method") or data.get("method") or return_service.REFUND_METHOD_ORIGINAL
        return_doc, refund = return_service.process_refund(return_id, method, g.current_user.id)
        return jsonify({
            "message": "Refund processed successfully",
            "return": return_doc.to_dict(),
            "refund": refund.to_dict(),
        }), 200

    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except ReturnNotFound as e:
        return jsonify({"error": str(e)}), 404
    except ReturnStateError as e:
        return jsonify({"error": str(e)}), 409
    except PaymentGatewayError as e:
        current_app.logger.warning("Gateway refund failed for return %s: %s", return_id, e)
        return jsonify({"error": f"Payment gateway error: {e}"}), 502
    except StockError as e:
        return jsonify({"error": str(e), "details": e.details}), 400
    except Exception:
        current_app.logger.exception("Failed to process refund")
        return jsonify({"error": "Failed to process refund"}), 500


# =============================================================================
# STORE CREDIT
# =============================================================================

@returns_bp.get("/store-credit")
@require_auth
def store_credit_balance_route():
    balance = store_credit_service.get_balance(g.current_user.id)
    return jsonify({"user_id": g.current_user.id, "store_credit_cents": balance}), 200


@returns_bp.get("/store-credit/history")
@require_auth
def store_credit_history_route():
    limit = request.args.get("limit", 100, type=int)
    entries = store_credit_service.get_history(g.current_user.id, limit=max(1, min(limit, 500)))
    return jsonify({"history": [e.to_dict() for e in entries]}), 200

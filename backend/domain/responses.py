"""
Response envelope helpers and order serializers.

- Success: { "success": true, "data": <payload>, "meta": {...} }
- Error:   { "success": false, "error": { "code": "...", "message": "...", "details": {...} } }
  (built by the exception handlers in main.py)
"""
from datetime import datetime
from typing import Any


def success_response(data: Any, meta: dict[str, Any] | None = None) -> dict[str, Any]:
    """
    Create a standardized success response.

    Returns:
        dict: { "success": true, "data": <data>, "meta": <meta> }
    """
    response = {"success": True, "data": data}
    if meta:
        response["meta"] = meta
    return response


def paginated_response(items: list[Any], limit: int, offset: int = 0, total: int | None = None) -> dict[str, Any]:
    """Success envelope with { limit, offset, total, hasMore } meta."""
    if total is None:
        total = len(items)

    meta = {
        "limit": limit,
        "offset": offset,
        "total": total,
        "hasMore": (offset + limit) < total,
    }
    return success_response(data=items, meta=meta)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def serialize_payment_attempt(attempt) -> dict:
    return {
        "attemptNumber": attempt.attempt_number,
        "status": attempt.status,
        "source": attempt.source,
        "gatewayPaymentId": attempt.gateway_payment_id,
        "amountMinor": attempt.amount_minor,
        "method": attempt.method,
        "signatureVerified": attempt.signature_verified,
        "errorCode": attempt.error_code,
        "errorDescription": attempt.error_description,
        "createdAt": _iso(attempt.created_at),
    }


def serialize_order(order, *, include_payments: bool = False) -> dict:
    data = {
        "id": order.id,
        "customerRef": order.customer_ref,
        "lifecycleStatus": order.lifecycle_status,
        "paymentSignal": order.payment_signal,
        "deliverySignal": order.delivery_signal,
        "shipmentProvider": order.shipment_provider,
        "trackingNumber": order.tracking_number,
        "expectedDeliveryDate": order.expected_delivery_date,
        "shipmentAttempts": order.shipment_attempts,
        "lastShipmentError": order.last_shipment_error,
        "currency": order.currency,
        "subtotal": order.subtotal,
        "tax": order.tax,
        "shippingCharge": order.shipping_charge,
        "grandTotal": order.grand_total,
        "logisticsLoss": order.logistics_loss,
        "gatewayOrderId": order.gateway_order_id,
        "address": {
            "consigneeName": order.consignee_name,
            "phone": order.phone,
            "addressLine": order.address_line,
            "city": order.city,
            "state": order.state,
            "postalCode": order.postal_code,
        },
        "items": [
            {
                "itemId": line.item_id,
                "name": line.name,
                "quantity": line.quantity,
                "unitPrice": line.unit_price,
            }
            for line in order.items
        ],
        "version": order.version,
        "createdAt": _iso(order.created_at),
        "confirmedAt": _iso(order.confirmed_at),
        "cancelledAt": _iso(order.cancelled_at),
        "deliveredAt": _iso(order.delivered_at),
    }
    if include_payments:
        data["paymentAttempts"] = [serialize_payment_attempt(a) for a in order.payment_attempts]
    return data

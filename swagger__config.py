"""
Swagger/OpenAPI configuration for the Salon Booking API
"""

SWAGGER_CONFIG = {
    "headers": [],
    "specs": [
        {
            "endpoint": "apispec",
            "route": "/apispec.json",
            "rule_filter": lambda rule: True,
            "model_filter": lambda tag: True,
        }
    ],
    "static_url_path": "/flasgger_static",
    "swagger_ui": True,
    "specs_route": "/api/docs",
}

SWAGGER_TEMPLATE = {
    "swagger": "2.0",
    "info": {
        "title": "Salon Booking API",
        "description": "Slot reservation, booking lifecycle, coupons and appointment reminders for a single salon",
        "contact": {"email": "support@salonapp.com"},
        "version": "1.0.0",
    },
    "host": "",
    "basePath": "/",
    "schemes": ["http", "https"],
    "securityDefinitions": {
        "ActorRole": {
            "type": "apiKey",
            "name": "X-Actor-Role",
            "in": "header",
            "description": (
                "Role recorded on booking transitions, admin or customer "
                '(default admin). Example: "X-Actor-Role: customer"'
            ),
        }
    },
    "tags": [
        {"name": "Bookings", "description": "Reservation and booking lifecycle"},
        {"name": "Coupons", "description": "Coupon preview"},
        {"name": "Settings", "description": "Booking and reminder policy"},
        {"name": "Notifications", "description": "Appointment reminders"},
        {"name": "Utility", "description": "Service status"},
    ],
    "definitions": {
        "Error": {
            "type": "object",
            "properties": {
                "error": {"type": "string"},
                "code": {
                    "type": "string",
                    "enum": [
                        "validation_error",
                        "not_found",
                        "conflict",
                        "lead_time_violation",
                        "coupon_rejected",
                        "invalid_transition",
                        "busy",
                        "database_error",
                    ],
                },
                "retryable": {"type": "boolean"},
            },
        },
        "BookedService": {
            "type": "object",
            "properties": {
                "serviceId": {"type": "integer"},
                "name": {"type": "string"},
                "price": {"type": "number", "format": "float"},
                "durationMinutes": {"type": "integer"},
            },
        },
        "Booking": {
            "type": "object",
            "properties": {
                "id": {"type": "integer"},
                "version": {"type": "integer"},
                "customer": {"type": "object"},
                "stylist": {"type": "object"},
                "services": {
                    "type": "array",
                    "items": {"$ref": "#/definitions/BookedService"},
                },
                "startTime": {"type": "string", "example": "2025-12-10T14:00:00"},
                "endTime": {"type": "string", "example": "2025-12-10T15:00:00"},
                "status": {
                    "type": "string",
                    "enum": [
                        "pending",
                        "confirmed",
                        "in-progress",
                        "completed",
                        "cancelled",
                    ],
                },
                "payment": {
                    "type": "object",
                    "properties": {
                        "method": {"type": "string"},
                        "subtotalAmount": {"type": "number"},
                        "discountAmount": {"type": "number"},
                        "dpAmount": {"type": "number"},
                        "totalAmount": {"type": "number"},
                        "status": {
                            "type": "string",
                            "enum": ["unpaid", "pending", "paid", "refunded"],
                        },
                        "invoiceNo": {"type": "string"},
                    },
                },
            },
        },
        "ReminderScanReport": {
            "type": "object",
            "properties": {
                "offsets": {"type": "array", "items": {"type": "integer"}},
                "candidates": {"type": "integer"},
                "sent": {"type": "integer"},
                "alreadySent": {"type": "integer"},
                "failures": {"type": "array", "items": {"type": "object"}},
                "deadlineReached": {"type": "boolean"},
            },
        },
    },
}

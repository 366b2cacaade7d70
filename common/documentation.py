"""
API Documentation utilities and enhanced OpenAPI configuration
"""
from fastapi import FastAPI
from fastapi.openapi.utils import get_openapi
from typing import Dict, Any

from common.error_handling import StandardErrorResponse

ERROR_STATUS_DESCRIPTIONS = {
    "400": "Bad Request (VALIDATION_ERROR)",
    "404": "Not Found (NOT_FOUND)",
    "409": "Conflict (CONFLICT)",
    "503": "Ledger unavailable (SERVICE_UNAVAILABLE, CIRCUIT_BREAKER_OPEN)",
    "500": "Internal Server Error",
}

def create_custom_openapi(app: FastAPI, title: str, version: str, description: str) -> Dict[str, Any]:
    """Create enhanced OpenAPI schema with the gateway's error envelope"""

    if app.openapi_schema:
        return app.openapi_schema

    openapi_schema = get_openapi(
        title=title,
        version=version,
        description=description,
        routes=app.routes,
    )

    schemas = openapi_schema.setdefault("components", {}).setdefault("schemas", {})
    error_schema = StandardErrorResponse.model_json_schema(ref_template="#/components/schemas/{model}")
    schemas.update(error_schema.pop("$defs", {}))
    schemas["ErrorResponse"] = error_schema

    standard_responses = {
        status: {
            "description": description_text,
            "content": {
                "application/json": {
                    "schema": {"$ref": "#/components/schemas/ErrorResponse"}
                }
            }
        }
        for status, description_text in ERROR_STATUS_DESCRIPTIONS.items()
    }

    for path_item in openapi_schema["paths"].values():
        for operation in path_item.values():
            if isinstance(operation, dict) and "responses" in operation:
                for status, response in standard_responses.items():
                    operation["responses"].setdefault(status, response)

    openapi_schema["tags"] = [
        {"name": "Agents", "description": "Registration, lookup, balances and spending caps"},
        {"name": "Payments", "description": "Transfers, batch and split payments, refunds"},
        {"name": "Subscriptions", "description": "Recurring payments and due-ness"},
        {"name": "Allowances", "description": "Approve / pull / revoke spending allowances"},
        {"name": "Invoices", "description": "Invoice lifecycle with lazy expiry"},
        {"name": "Reputation", "description": "Reputation scores and leaderboard"},
        {"name": "Webhooks", "description": "Signed event notifications"},
        {"name": "Health", "description": "Ledger connectivity"},
    ]

    app.openapi_schema = openapi_schema
    return app.openapi_schema

GATEWAY_DOCS = """
Off-chain gateway for name-based agent payments.

Write endpoints never sign or submit anything. They return an unsigned
instruction descriptor `{name, accounts: [{address, isSigner, isWritable}], args}`
for the client wallet to sign. Amounts in `args` are integer minor units
(1 USDC = 1,000,000).
"""

WEBHOOK_DOCS = """
## Webhooks

Register a URL per agent to receive events:
`payment_received`, `payment_sent`, `invoice_created`, `invoice_paid`,
`invoice_rejected`, `allowance_pulled`, `subscription_executed`.

The registration response carries a `secret`. It is shown once and never again.

### Delivery
One `POST` per event with a 5 second timeout. No retries and no queue.
The body is `{"event", "agent", "data", "timestamp"}`.

### Verifying
`X-SolClaw-Signature` is the hex HMAC-SHA256 of the raw request body keyed
with your secret. `X-SolClaw-Event` repeats the event name.
"""

"""
main.py

Entry point for the SoftwarePar billing API.

Configures logging, wires the in-memory infrastructure into the FastAPI app
and starts uvicorn.

Usage
-----
    # Option 1 - run directly
    python main.py

    # Option 2 - run via uvicorn CLI (recommended for development)
    uvicorn main:app --reload --port 8000

Configuration is read from config/billing.yml (override with CONFIG_PATH)
plus CONFIG__SECTION__KEY environment variables; secrets such as
MERCADO_PAGO_ACCESS_TOKEN or TWILIO_AUTH_TOKEN come from their own env vars.

Once running, open your browser at:
    http://localhost:8000/docs      ← Swagger UI
    http://localhost:8000/health    ← liveness check

Quick-start walkthrough (use Swagger UI or curl)
-------------------------------------------------
1.  POST /api/v1/users                 - create an admin and a client
                                         the returned "id" is that user's token
2.  POST /api/v1/projects              - as the client, create a project
                                         Authorization: Bearer <client-id>
3.  POST /api/v1/projects/{id}/budget-negotiations - propose a price
4.  PUT  /api/v1/budget-negotiations/{nid}/respond - as admin, accept it
5.  POST /api/v1/projects/{id}/payment-stages      - create the stage ledger
6.  PUT  /api/v1/projects/{id}/timeline/{item_id}  - complete milestones
7.  POST /api/v1/payment-stages/{sid}/generate-link - get a checkout link
8.  POST /api/v1/payments/webhook                   - gateway confirms payment

Authentication note
-------------------
get_current_user expects the raw user UUID as the Bearer token.  This is
for local testing only; the platform's auth service issues real tokens.
"""

import logging

import uvicorn

from api import app, get_uow
from config import get_config
from infrastructure import InMemoryUnitOfWork

logging.basicConfig(
    level=getattr(logging, get_config().log_level.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)


# ---------------------------------------------------------------------------
# Wire the concrete Unit of Work into the FastAPI dependency system.
# To swap databases, replace InMemoryUnitOfWork with your SQL implementation.
# ---------------------------------------------------------------------------

app.dependency_overrides[get_uow] = lambda: InMemoryUnitOfWork()


if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host="127.0.0.1",
        port=8000,
        reload=True,
        log_level=get_config().log_level.lower(),
    )

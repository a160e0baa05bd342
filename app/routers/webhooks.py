"""
Provider Webhook Router

One endpoint per provider: POST /webhooks/{provider}

The raw body is read before any parsing so the signature is checked over
the exact bytes the provider signed. Processing runs in the threadpool
(per-booking lock, transient retries) and the response status tells the
provider whether to redeliver:

- 200 applied / duplicate / ignored / rejected
- 202 deferred (buffered until the booking catches up)
- 400 malformed payload, 401 bad signature
- 503 dead-lettered after transient failures (provider should redeliver)
"""

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from ..schemas.webhook import WebhookResponse
from ..services.reconciliation import ReconciliationCoordinator
from ..services.signature_verifier import SignatureVerifier
from ..utils.dependencies import get_coordinator, get_signature_verifier
from ..utils.rate_limiter import limiter, get_rate_limit, get_real_client_ip

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])


@router.post("/{provider}", response_model=WebhookResponse)
@limiter.limit(get_rate_limit("webhook"))
async def receive_webhook(
    request: Request,
    provider: str,
    verifier: SignatureVerifier = Depends(get_signature_verifier),
    coordinator: ReconciliationCoordinator = Depends(get_coordinator)
):
    """Receive one signed provider delivery."""
    provider = provider.lower()
    if not verifier.supports(provider):
        raise HTTPException(status_code=404, detail=f"Unknown provider: {provider}")

    raw_body = await request.body()

    result = await run_in_threadpool(
        coordinator.handle_webhook,
        provider,
        raw_body,
        dict(request.headers),
        get_real_client_ip(request)
    )

    return JSONResponse(status_code=result.http_status, content=result.to_dict())

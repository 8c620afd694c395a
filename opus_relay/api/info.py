from fastapi import APIRouter, Request, Depends, HTTPException
from opus_relay.models.request import InfoRequest
from opus_relay.models.response import RelayInfo
from opus_relay.services.info import ResolutionService
from opus_relay.services.format import FormatDecision
from opus_relay.core.errors import RelayError
from opus_relay.core.security import SecurityValidator, UrlValidationResult
from opus_relay.core.logging import log_info, log_error
from opus_relay.infra.rate_limit import rate_limiter
from opus_relay.utils.urls import safe_url_for_log

router = APIRouter()

@router.post("/info", response_model=RelayInfo, dependencies=[Depends(rate_limiter)])
async def get_relay_info(request: Request, info_request: InfoRequest):
    """Resolve a URL and report which format would be relayed, and how"""

    url = str(info_request.url)
    validation_result = await SecurityValidator.validate_url(url)

    if validation_result == UrlValidationResult.BLOCKED:
        raise HTTPException(status_code=403, detail="Access to private or reserved addresses is not allowed")

    if validation_result == UrlValidationResult.INVALID:
        raise HTTPException(status_code=400, detail="Invalid URL")

    log_info(request, f"Fetching info for {safe_url_for_log(url)}")

    try:
        descriptor = await ResolutionService.resolve(url)
        selection = FormatDecision.decide(descriptor)
    except RelayError as e:
        log_error(request, f"Info error: {e.message}")
        raise HTTPException(status_code=e.status_code, detail=e.message)

    log_info(request, f"Info retrieved: {descriptor.title} ({selection.mode.value})")
    return RelayInfo.build(descriptor, selection.mode, selection.format)

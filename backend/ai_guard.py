"""
AI Guard gate (Trend Vision One applyGuardrails).

A guard call ends in one of three outcomes: Allowed, Blocked or Unreachable.
Unreachable collapses to an allow-with-warning verdict so a chat turn never
fails because the guard service is down.
"""
import logging
from dataclasses import dataclass, field
from typing import List, Optional, Union

import httpx

from config import get_config
from models import GuardConfig, GuardVerdict

logger = logging.getLogger(__name__)

GUARD_API_PATH = "/v3.0/aiSecurity/applyGuardrails"
APP_NAME_HEADER = "TMV1-Application-Name"
FAIL_OPEN_WARNING = "AI Guard validation failed - proceeding without validation"
# The US region is served from the bare domain
DEFAULT_REGION = "us"


@dataclass(frozen=True)
class Allowed:
    result_id: Optional[str] = None
    risk_score: Optional[float] = None
    warning: Optional[str] = None


@dataclass(frozen=True)
class Blocked:
    reasons: List[str] = field(default_factory=list)
    result_id: Optional[str] = None
    risk_score: Optional[float] = None
    categories: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class Unreachable:
    error: str


GuardOutcome = Union[Allowed, Blocked, Unreachable]


def guard_endpoint(region: str, base_domain: Optional[str] = None) -> str:
    """Build the region-qualified applyGuardrails URL."""
    domain = base_domain or get_config().guard_base_domain
    prefix = "" if region == DEFAULT_REGION else f".{region}"
    return f"https://api{prefix}.{domain}{GUARD_API_PATH}"


def _string_list(value) -> List[str]:
    if isinstance(value, list):
        return [str(item) for item in value if item is not None]
    if isinstance(value, str) and value:
        return [value]
    return []


def _risk_score(value) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    return None


def interpret_response(body) -> GuardOutcome:
    """Map a decoded guard response body to an outcome."""
    if not isinstance(body, dict):
        return Unreachable(error="AI Guard returned a malformed response")

    result_id = body.get("resultId") or body.get("id")
    result_id = str(result_id) if result_id is not None else None
    risk_score = _risk_score(body.get("riskScore"))

    if body.get("action") == "Block":
        return Blocked(
            reasons=_string_list(body.get("reasons")),
            result_id=result_id,
            risk_score=risk_score,
            categories=_string_list(body.get("categories")),
        )
    return Allowed(result_id=result_id, risk_score=risk_score)


async def check_content(text: str, guard_config: GuardConfig, client: httpx.AsyncClient) -> GuardOutcome:
    """Call the guard service. Never raises for transport or protocol errors."""
    url = guard_endpoint(guard_config.region)
    headers = {
        "Authorization": f"Bearer {guard_config.api_key}",
        APP_NAME_HEADER: guard_config.app_name,
        "Content-Type": "application/json",
    }
    try:
        response = await client.post(url, json={"prompt": text}, headers=headers)
        response.raise_for_status()
        body = response.json()
    except httpx.HTTPStatusError as exc:
        return Unreachable(error=f"HTTP {exc.response.status_code} from AI Guard")
    except (httpx.HTTPError, OSError) as exc:
        return Unreachable(error=str(exc) or exc.__class__.__name__)
    except ValueError:
        return Unreachable(error="AI Guard returned a non-JSON response")
    return interpret_response(body)


def to_verdict(outcome: GuardOutcome) -> GuardVerdict:
    """Collapse an outcome to the verdict returned to callers (fail-open for Unreachable)."""
    if isinstance(outcome, Blocked):
        return GuardVerdict(
            allowed=False,
            action="Block",
            reasons=outcome.reasons,
            result_id=outcome.result_id,
            risk_score=outcome.risk_score,
            categories=outcome.categories,
            message=f"AI Guard blocked this content: {', '.join(outcome.reasons)}",
        )
    if isinstance(outcome, Unreachable):
        return GuardVerdict(allowed=True, action="Allow", warning=FAIL_OPEN_WARNING)
    return GuardVerdict(
        allowed=True,
        action="Allow",
        result_id=outcome.result_id,
        risk_score=outcome.risk_score,
        warning=outcome.warning,
    )


async def validate(
    text: str,
    guard_config: Optional[GuardConfig],
    client: Optional[httpx.AsyncClient] = None,
) -> GuardVerdict:
    """
    Validate text with AI Guard.

    Disabled guarding or a missing API key allows immediately without any network I/O.
    """
    if guard_config is None or not guard_config.enabled or not guard_config.api_key:
        return GuardVerdict(allowed=True, action="Allow")

    if client is not None:
        outcome = await check_content(text, guard_config, client)
    else:
        timeout = get_config().guard_timeout_seconds
        async with httpx.AsyncClient(timeout=timeout) as owned_client:
            outcome = await check_content(text, guard_config, owned_client)

    if isinstance(outcome, Unreachable):
        logger.warning(f"AI Guard error ({guard_config.region}): {outcome.error}")
    elif isinstance(outcome, Blocked):
        logger.info(f"AI Guard blocked content: reasons={outcome.reasons} result_id={outcome.result_id}")
    return to_verdict(outcome)

"""Role health checks: ping each role's backend before relying on it."""

import asyncio
import logging

from llm_dispatch.models import ServiceKind, ServiceRequest
from llm_dispatch.orchestrator import ServiceOrchestrator
from llm_dispatch.roles import Role
from llm_dispatch.timeouts import with_hard_timeout

logger = logging.getLogger(__name__)

_PING_PROMPT = "Reply with the word OK only."
_TIMEOUT_MS = 15_000


async def _check_one(orchestrator: ServiceOrchestrator, role: Role) -> tuple[str, bool, str]:
    """Ping the backend configured for a single role. Returns (role, ok, error_message)."""
    try:
        backend = orchestrator.resolve_backend(role)
        request = ServiceRequest(role=role.value, prompt=_PING_PROMPT, command_label="healthcheck")
        params = orchestrator.build_call_params(backend, ServiceKind.TEXT, request)
        await with_hard_timeout(
            orchestrator.provider_for(backend).invoke(ServiceKind.TEXT, params),
            _TIMEOUT_MS,
            label=f"{role.value} health check",
        )
        return role.value, True, ""
    except Exception as exc:
        logger.debug("Health check failed for role %s: %s", role.value, exc)
        return role.value, False, str(exc)


async def run_health_checks(orchestrator: ServiceOrchestrator) -> dict[str, tuple[bool, str]]:
    """Ping every role's backend in parallel.

    Returns:
        Dict mapping role name -> (ok, error_message).
        error_message is "" when ok is True.
    """
    results = await asyncio.gather(*(_check_one(orchestrator, role) for role in Role))
    return {role: (ok, err) for role, ok, err in results}

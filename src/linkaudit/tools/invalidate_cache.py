"""Tool handler for invalidate_cache.

Routes to one of the InvalidationManager entry points: a single URL, a
whole domain, or an event run through the rule table.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog

from linkaudit.errors import ErrorCode, LinkAuditError
from linkaudit.models.invalidation import InvalidationEvent
from linkaudit.models.tools import InvalidateCacheInput, InvalidateCacheOutput

if TYPE_CHECKING:
    from linkaudit.state import AppState


async def handle(
    url: str | None,
    domain: str | None,
    event: str | None,
    affected_urls: list[str] | None,
    namespaces: list[str] | None,
    state: AppState,
) -> dict:
    """Handle an invalidate_cache tool call."""
    log = structlog.get_logger().bind(tool="invalidate_cache")
    log.info("handler_called", url=url, domain=domain, invalidation_event=event)

    try:
        validated = InvalidateCacheInput(
            url=url,
            domain=domain,
            event=event,
            affected_urls=affected_urls or [],
            namespaces=namespaces,
        )
    except ValueError as exc:
        raise LinkAuditError(
            code=ErrorCode.INVALID_INPUT,
            message=str(exc),
            suggestion=(
                "Pass exactly one of url, domain or event. Namespaces are links, sitemap "
                "and reports; events are content_change, deployment, manual, scheduled "
                "and error_recovery."
            ),
            recoverable=False,
        ) from exc

    manager = state.invalidation

    if validated.url:
        found = await manager.invalidate_url(validated.url, validated.namespaces)
        output = InvalidateCacheOutput(target=validated.url, invalidated=int(found))
    elif validated.domain:
        count = await manager.invalidate_domain(validated.domain)
        output = InvalidateCacheOutput(target=validated.domain, invalidated=count)
    elif validated.event is not None:
        outcome = await manager.process_event(
            InvalidationEvent(
                kind=validated.event,
                source="tool",
                occurred_at=state.clock(),
                affected_urls=tuple(validated.affected_urls),
                metadata={"trigger": "invalidate_cache"},
            )
        )
        output = InvalidateCacheOutput(
            target=validated.event.value,
            invalidated=outcome.total_invalidated,
            rules_applied=outcome.rules_applied,
            failed_namespaces=sorted(outcome.errors_by_namespace),
        )
    else:
        raise RuntimeError("invalidate_cache input validated without a target")

    log.info("invalidation_applied", target=output.target, invalidated=output.invalidated)
    return output.model_dump(mode="json")

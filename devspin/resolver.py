"""
Dependency ordering for project services.

Depth-first post-order traversal: every service is emitted after the
services it depends on. Declaration order is the tie-breaker, so the output
is deterministic for a fixed input. Unknown dependency names are ignored.
"""

import logging
from typing import Iterable, Optional

from .errors import ConfigurationError
from .project import Service

logger = logging.getLogger(__name__)

_VISITING = 1
_DONE = 2


def _walk(services: list[Service], on_cycle) -> list[Service]:
    by_name = {s.name: s for s in services}
    state: dict[str, int] = {}
    stack: list[str] = []
    ordered: list[Service] = []

    def visit(service: Service):
        # Marked before recursing so a cycle always terminates.
        state[service.name] = _VISITING
        stack.append(service.name)

        for dep_name in service.dependencies:
            dep = by_name.get(dep_name)
            if dep is None:
                continue
            dep_state = state.get(dep_name)
            if dep_state == _VISITING:
                on_cycle(stack[stack.index(dep_name):] + [dep_name])
                continue
            if dep_state is None:
                visit(dep)

        stack.pop()
        state[service.name] = _DONE
        ordered.append(service)

    for service in services:
        if service.name not in state:
            visit(service)

    return ordered


def find_cycle(services: Iterable[Service]) -> Optional[list[str]]:
    """Return the first dependency cycle found, as a path of names, or None."""
    cycles = []
    _walk(list(services), cycles.append)
    return cycles[0] if cycles else None


def resolve_order(services: Iterable[Service], allow_cycles: bool = False) -> list[Service]:
    """Order services so each one follows all of its resolvable dependencies.

    A dependency cycle raises ConfigurationError naming the cycle. With
    allow_cycles the back edge is dropped instead: the first service of the
    cycle reached in declaration order starts first.
    """
    services = list(services)

    def on_cycle(path: list[str]):
        if not allow_cycles:
            raise ConfigurationError(f"Dependency cycle detected: {' -> '.join(path)}")
        logger.warning(f"Ignoring dependency cycle: {' -> '.join(path)}")

    ordered = _walk(services, on_cycle)
    logger.debug(f"Resolved start order: {', '.join(s.name for s in ordered)}")
    return ordered

"""Role fallback order."""

import logging
from enum import Enum

logger = logging.getLogger(__name__)


class Role(str, Enum):
    MAIN = "main"
    RESEARCH = "research"
    FALLBACK = "fallback"


_SEQUENCES: dict[Role, tuple[Role, Role, Role]] = {
    Role.MAIN: (Role.MAIN, Role.FALLBACK, Role.RESEARCH),
    Role.RESEARCH: (Role.RESEARCH, Role.FALLBACK, Role.MAIN),
    Role.FALLBACK: (Role.FALLBACK, Role.MAIN, Role.RESEARCH),
}


def role_sequence(requested: Role | str) -> tuple[Role, Role, Role]:
    """Ordered roles to attempt for a request made under ``requested``."""
    try:
        return _SEQUENCES[Role(requested)]
    except ValueError:
        logger.warning(
            "Unknown initial role: %s. Defaulting to main -> fallback -> research sequence.",
            requested,
        )
        return _SEQUENCES[Role.MAIN]

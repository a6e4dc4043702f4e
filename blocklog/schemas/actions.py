"""
Action Vocabulary

The closed, versioned set of action tags that Event Producers record.

The ledger itself does not know what these actions mean. It only stores
them and hashes them. Producers own the vocabulary: you can add more
later, never remove or rename (old entries must stay verifiable).
"""

import re
from enum import Enum


# Increment when tags are added. Never reuse a retired tag.
ACTION_VOCABULARY_VERSION = 1

# Shape every action tag must have, whether or not it is in the enum
ACTION_TAG_PATTERN = re.compile(r"^[a-z][a-z0-9_]{0,63}$")


class Action(str, Enum):
    """Known action tags."""
    # User lifecycle
    USER_REGISTER = "user_register"
    USER_BAN = "user_ban"
    USER_UNBAN = "user_unban"
    ADMIN_GRANT = "admin_grant"
    ADMIN_REVOKE = "admin_revoke"

    # Domain lifecycle
    DOMAIN_REGISTER = "domain_register"
    DOMAIN_APPROVE = "domain_approve"
    DOMAIN_REJECT = "domain_reject"
    DOMAIN_SUSPEND = "domain_suspend"
    DOMAIN_ACTIVATE = "domain_activate"
    DOMAIN_DELETE = "domain_delete"

    # Appeals
    APPEAL_SUBMIT = "appeal_submit"
    APPEAL_APPROVE = "appeal_approve"
    APPEAL_REJECT = "appeal_reject"

    # Settings
    SETTING_UPDATE = "setting_update"


def normalize_action(action: "Action | str") -> str:
    """
    Return the plain string tag for an action, validating its shape.

    Raises:
        ValueError: If the tag is empty or not a lowercase snake_case token
    """
    tag = action.value if isinstance(action, Action) else action
    if not isinstance(tag, str) or not ACTION_TAG_PATTERN.match(tag):
        raise ValueError(
            f"Invalid action tag {tag!r}. Tags are lowercase snake_case, "
            "start with a letter, and are at most 64 characters."
        )
    return tag


def is_known_action(tag: str) -> bool:
    """Check whether a tag belongs to the current vocabulary."""
    return tag in Action._value2member_map_

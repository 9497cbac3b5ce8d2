"""
Customer details sent to FedaPay with each transaction.

Each field is resolved by an explicit, ordered list of sources: the
caller's value, then the stored profile, then a fixed placeholder. The
phone number only comes from the caller; without one the deposit is
rejected.
"""
from dataclasses import asdict, dataclass
from typing import TYPE_CHECKING, Any, Dict, List, Mapping, Optional, Tuple

import structlog

from deposit_gateway.core.exceptions import ValidationError

if TYPE_CHECKING:
    from deposit_gateway.database.models import User

logger = structlog.get_logger(__name__)

PLACEHOLDER_FIRSTNAME = "Client"
PLACEHOLDER_LASTNAME = "Inconnu"
PLACEHOLDER_EMAIL = "noemail@example.com"


@dataclass(frozen=True)
class CustomerSnapshot:
    """Customer details captured once, at deposit creation."""

    firstname: str
    lastname: str
    email: str
    phone_number: str
    country: str
    # Fields that fell back to a placeholder or the configured default
    placeholders: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["placeholders"] = list(self.placeholders)
        return data


def _present(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def first_present(*candidates: Any) -> Optional[str]:
    """Return the first candidate that is non-blank, stripped."""
    for candidate in candidates:
        value = _present(candidate)
        if value is not None:
            return value
    return None


def split_name(name: Optional[str]) -> Tuple[Optional[str], Optional[str]]:
    """Split a full name into (first word, remaining words)."""
    parts = (name or "").split()
    if not parts:
        return None, None
    return parts[0], " ".join(parts[1:]) or None


def resolve_customer(
    fields: Mapping[str, Any],
    user: "User",
    default_country: str,
) -> CustomerSnapshot:
    """
    Build the customer snapshot for a deposit.

    Args:
        fields: Customer fields supplied by the caller (any may be missing)
        user: Stored profile of the depositing user
        default_country: Configured fallback country code

    Returns:
        CustomerSnapshot: Fully populated snapshot

    Raises:
        ValidationError: If the caller supplied no phone number
    """
    profile_first, profile_last = split_name(user.name)
    placeholders: List[str] = []

    def pick(name: str, candidates: Tuple[Any, ...], fallback: str) -> str:
        value = first_present(*candidates)
        if value is None:
            placeholders.append(name)
            return fallback
        return value

    phone_number = first_present(fields.get("phone_number"))
    if phone_number is None:
        raise ValidationError(["Customer phone number is required"])

    snapshot = CustomerSnapshot(
        firstname=pick("firstname", (fields.get("firstname"), profile_first), PLACEHOLDER_FIRSTNAME),
        lastname=pick("lastname", (fields.get("lastname"), profile_last), PLACEHOLDER_LASTNAME),
        email=pick("email", (fields.get("email"), user.email), PLACEHOLDER_EMAIL),
        phone_number=phone_number,
        country=pick("country", (fields.get("country"), user.country), default_country).upper(),
        placeholders=tuple(placeholders),
    )

    if placeholders:
        logger.warning(
            "customer_placeholder_used",
            user_id=user.id,
            fields=placeholders,
        )
    return snapshot

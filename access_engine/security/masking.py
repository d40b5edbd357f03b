"""
Viewer-dependent attenuation of personal data in already-authorized results.

Masking is presentation, not authorization: it never decides whether a
record is returned, and it runs after filtering and pagination. Every
transform here is pure and idempotent (``mask(mask(x)) == mask(x)``).
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
import enum
import logging
from typing import Any, Iterable

from pydantic import BaseModel

logger = logging.getLogger(__name__)

LAST_NAME_FIELD = "last_name"
EMAIL_FIELD = "email"
PHONE_FIELD = "phone"


class ViewerCategory(str, enum.Enum):
    """Closed set of viewer categories, resolved once from the viewer's roles."""

    PRIVILEGED = "privileged"  # sees unmasked data
    MASKED_STAFF = "masked-staff"  # instructor / department-admin style roles
    OTHER = "other"  # anything else; masked, fail-safe


def mask_last_name(value: str | None) -> str | None:
    if not value:
        return value
    return f"{value[0]}."


def mask_email(value: str | None) -> str | None:
    if not value:
        return value
    local, sep, domain = value.partition("@")
    if len(local) > 2:
        masked_local = local[0] + "*" * (len(local) - 2) + local[-1]
    else:
        masked_local = "*" * len(local)
    return f"{masked_local}{sep}{domain}"


def mask_phone(value: str | None) -> str | None:
    if not value:
        return value
    digit_count = sum(ch.isdigit() for ch in value)
    to_mask = max(digit_count - 4, 0)
    out: list[str] = []
    for ch in value:
        if ch.isdigit() and to_mask > 0:
            out.append("*")
            to_mask -= 1
        else:
            out.append(ch)
    return "".join(out)


@dataclass(frozen=True)
class MaskingPolicy:
    unmasked_roles: frozenset[str]
    masked_roles: frozenset[str]
    mask_email: bool = False
    mask_phone: bool = False

    def categorize(self, role_names: Iterable[str]) -> ViewerCategory:
        roles = frozenset(role_names)
        if roles & self.unmasked_roles:
            return ViewerCategory.PRIVILEGED
        if roles & self.masked_roles:
            return ViewerCategory.MASKED_STAFF
        return ViewerCategory.OTHER

    def _updates(self, data: Mapping[str, Any]) -> dict[str, Any]:
        updates: dict[str, Any] = {}
        if LAST_NAME_FIELD in data:
            updates[LAST_NAME_FIELD] = mask_last_name(data[LAST_NAME_FIELD])
        if self.mask_email and EMAIL_FIELD in data:
            updates[EMAIL_FIELD] = mask_email(data[EMAIL_FIELD])
        if self.mask_phone and PHONE_FIELD in data:
            updates[PHONE_FIELD] = mask_phone(data[PHONE_FIELD])
        return updates

    def mask(self, subject: Any, viewer: ViewerCategory) -> Any:
        """
        Return a masked copy of ``subject`` (a mapping or a pydantic model).

        The input is never modified; the output has the same type.
        """

        if viewer == ViewerCategory.PRIVILEGED:
            return subject

        if isinstance(subject, BaseModel):
            return subject.model_copy(update=self._updates(subject.model_dump()))
        if isinstance(subject, Mapping):
            masked = dict(subject)
            masked.update(self._updates(subject))
            return masked

        logger.warning("Masking skipped for unsupported subject type=%s", type(subject).__name__)
        return subject

    def mask_many(self, subjects: Any, viewer: ViewerCategory) -> list[Any]:
        if subjects is None or isinstance(subjects, (str, bytes, Mapping, BaseModel)):
            return []
        try:
            items = list(subjects)
        except TypeError:
            return []
        return [self.mask(item, viewer) for item in items]

from __future__ import annotations

import uuid
from typing import Protocol

from sqlalchemy.orm import Session

from leadhub.crm.models import CRMLeadSource, CRMService, CRMUser


class DisplayNameResolver(Protocol):
    def user_name(self, user_id: uuid.UUID | str | None) -> str | None: ...

    def service_name(self, service_id: uuid.UUID | str | None) -> str | None: ...

    def source_name(self, source_id: uuid.UUID | str | None) -> str | None: ...


def _as_uuid(value: uuid.UUID | str | None) -> uuid.UUID | None:
    if value is None or isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None


class SqlDisplayNameResolver:
    """Looks up display names of users, services and sources in the same session as the write."""

    def __init__(self, session: Session) -> None:
        self.session = session

    def _name(self, model: type[CRMUser] | type[CRMService] | type[CRMLeadSource], raw_id: uuid.UUID | str | None) -> str | None:
        entity_id = _as_uuid(raw_id)
        if entity_id is None:
            return None
        entity = self.session.get(model, entity_id)
        return entity.name if entity is not None else None

    def user_name(self, user_id: uuid.UUID | str | None) -> str | None:
        return self._name(CRMUser, user_id)

    def service_name(self, service_id: uuid.UUID | str | None) -> str | None:
        return self._name(CRMService, service_id)

    def source_name(self, source_id: uuid.UUID | str | None) -> str | None:
        return self._name(CRMLeadSource, source_id)

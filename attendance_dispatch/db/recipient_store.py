from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from typing import Any, Protocol

from ..models.recipient_config import InvalidRecipientConfig, RecipientConfig, RecipientRole

"""Recipient configuration stores (read-only from the dispatcher's side).

- PostgresRecipientConfigStore: ``email_configs`` table via a psycopg2 cursor
- StaticRecipientConfigStore: ``recipients`` list from dispatch.yml, used when
  the database is disabled or unreachable
"""

__all__ = [
    "RecipientConfigStore",
    "PostgresRecipientConfigStore",
    "StaticRecipientConfigStore",
    "EMAIL_CONFIGS_DDL",
]

logger = logging.getLogger(__name__)

EMAIL_CONFIGS_DDL = """
CREATE TABLE IF NOT EXISTS email_configs (
    id          SERIAL PRIMARY KEY,
    role        TEXT NOT NULL,
    department  TEXT,
    emails      TEXT[] NOT NULL,
    is_active   BOOLEAN NOT NULL DEFAULT TRUE,
    created_at  TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at  TIMESTAMPTZ NOT NULL DEFAULT now(),
    CONSTRAINT email_configs_role_department_key UNIQUE (role, department),
    CONSTRAINT email_configs_hod_department CHECK (role <> 'HOD' OR department IS NOT NULL)
)
"""


class RecipientConfigStore(Protocol):
    def find_active(self, roles: Sequence[RecipientRole]) -> list[RecipientConfig]:
        """Active configs for the given roles, in role order."""
        ...


def _order(configs: Iterable[RecipientConfig], roles: Sequence[RecipientRole]) -> list[RecipientConfig]:
    rank = {role: i for i, role in enumerate(roles)}
    return sorted(configs, key=lambda c: (rank[c.role], (c.department or "").lower()))


class StaticRecipientConfigStore:
    def __init__(self, configs: Iterable[RecipientConfig]) -> None:
        self._configs = list(configs)
        seen: set[tuple[str, str | None]] = set()
        for cfg in self._configs:
            key = (cfg.role.value, (cfg.department or "").lower() or None)
            if key in seen:
                raise InvalidRecipientConfig(f"duplicate recipient configuration: {cfg.key}")
            seen.add(key)

    @classmethod
    def from_config(cls, raw_items: Iterable[dict[str, Any]]) -> StaticRecipientConfigStore:
        return cls(
            RecipientConfig.create(
                role=item["role"],
                emails=item.get("emails") or [],
                department=item.get("department"),
                is_active=item.get("is_active", True),
            )
            for item in raw_items
        )

    def find_active(self, roles: Sequence[RecipientRole]) -> list[RecipientConfig]:
        wanted = set(roles)
        return _order((c for c in self._configs if c.is_active and c.role in wanted), roles)


class PostgresRecipientConfigStore:
    def __init__(self, cursor: Any) -> None:
        self.cursor = cursor

    def find_active(self, roles: Sequence[RecipientRole]) -> list[RecipientConfig]:
        self.cursor.execute(
            "SELECT role, department, emails, is_active FROM email_configs "
            "WHERE is_active = TRUE AND role = ANY(%s)",
            ([r.value for r in roles],),
        )
        configs: list[RecipientConfig] = []
        for role, department, emails, is_active in self.cursor.fetchall():
            try:
                configs.append(RecipientConfig.create(role, list(emails or []), department, is_active))
            except InvalidRecipientConfig as e:
                # 管理画面側の不整合データは送信対象外として警告のみ
                logger.warning("ignoring invalid email config role=%s department=%s: %s", role, department, e)
        return _order(configs, roles)

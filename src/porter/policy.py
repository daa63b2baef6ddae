"""Per-table export policies and the registry the export pipeline reads them from."""

from collections.abc import Iterable, Mapping
from typing import Any, Optional

import structlog
from pydantic import BaseModel, ConfigDict, Field, field_validator

from porter.config import EntityPolicyConfig
from utils.logging import get_logger


class EntityPolicy(BaseModel):
    """Read-only export rules for one table.

    ``retained_row_keys`` are normalized to strings so that a key written as ``1``
    in YAML matches an integer primary key, and ``"1"`` matches it too.
    """

    model_config = ConfigDict(frozen=True)

    ignore: bool = False
    omitted_columns: frozenset[str] = Field(default_factory=frozenset)
    retained_row_keys: frozenset[str] = Field(default_factory=frozenset)

    @field_validator("retained_row_keys", mode="before")
    @classmethod
    def normalize_keys(cls, value: Any) -> frozenset[str]:
        if value is None:
            return frozenset()
        return frozenset(str(key) for key in value)

    def is_retained(self, primary_key_value: Any) -> bool:
        """Return True if the row with this primary key is exempt from redaction."""
        if primary_key_value is None or not self.retained_row_keys:
            return False
        return str(primary_key_value) in self.retained_row_keys

    @property
    def redacts(self) -> bool:
        return bool(self.omitted_columns)


DEFAULT_POLICY = EntityPolicy()


class PolicyRegistry:
    """Table name -> EntityPolicy mapping, built once at startup."""

    def __init__(self, logger: Optional[structlog.BoundLogger] = None) -> None:
        self.logger = logger or get_logger("policy")
        self._policies: dict[str, EntityPolicy] = {}

    def register_policy(self, entity_name: str, policy: EntityPolicy) -> None:
        """Attach a policy to a table, replacing any earlier registration."""
        if entity_name in self._policies:
            self.logger.warning("Replacing export policy", table=entity_name)
        self._policies[entity_name] = policy
        self.logger.debug(
            "Export policy registered",
            table=entity_name,
            ignore=policy.ignore,
            omitted_columns=sorted(policy.omitted_columns),
            retained_rows=len(policy.retained_row_keys),
        )

    def get(self, entity_name: str) -> EntityPolicy:
        """Policy for a table; tables without one are exported as-is."""
        return self._policies.get(entity_name, DEFAULT_POLICY)

    def is_ignored(self, entity_name: str) -> bool:
        return self.get(entity_name).ignore

    def __contains__(self, entity_name: object) -> bool:
        return entity_name in self._policies

    def __len__(self) -> int:
        return len(self._policies)

    def names(self) -> Iterable[str]:
        return self._policies.keys()

    @classmethod
    def from_config(
        cls,
        policies: Mapping[str, EntityPolicyConfig],
        logger: Optional[structlog.BoundLogger] = None,
    ) -> "PolicyRegistry":
        """Build a registry from the ``policies`` section of the configuration."""
        registry = cls(logger=logger)
        for name, declared in policies.items():
            registry.register_policy(
                name,
                EntityPolicy(
                    ignore=declared.ignore,
                    omitted_columns=frozenset(declared.omitted_columns),
                    retained_row_keys=declared.retained_row_keys,
                ),
            )
        return registry

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Literal

from oxusd_indexer.domain.entities import EntityType


class IntegrityCode(Enum):
    ENTITY_NOT_FOUND = "ENTITY_NOT_FOUND"
    NEGATIVE_RESULT = "NEGATIVE_RESULT"
    RECORD_KEY_COLLISION = "RECORD_KEY_COLLISION"


Severity = Literal["WARN", "ERROR"]


class NegativeBalancePolicy(Enum):
    REJECT = "reject"
    APPLY_AND_FLAG = "apply_and_flag"


@dataclass(frozen=True)
class IntegrityIssue:
    code: IntegrityCode
    severity: Severity
    entity_type: EntityType
    entity_key: str
    event_key: str
    details: dict[str, str] = field(default_factory=dict)


def entity_not_found(
    entity_type: EntityType, entity_key: str, event_key: str, *, action: str
) -> IntegrityIssue:
    return IntegrityIssue(
        code=IntegrityCode.ENTITY_NOT_FOUND,
        severity="WARN",
        entity_type=entity_type,
        entity_key=entity_key,
        event_key=event_key,
        details={"action": action},
    )


def negative_result(
    entity_type: EntityType,
    entity_key: str,
    event_key: str,
    *,
    field_name: str,
    current: int,
    delta: int,
    policy: NegativeBalancePolicy,
) -> IntegrityIssue:
    return IntegrityIssue(
        code=IntegrityCode.NEGATIVE_RESULT,
        severity="ERROR",
        entity_type=entity_type,
        entity_key=entity_key,
        event_key=event_key,
        details={
            "field": field_name,
            "current": str(current),
            "delta": str(delta),
            "result": str(current - delta),
            "policy": policy.value,
        },
    )
